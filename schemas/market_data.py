"""
Market Data Types

Core market data types used by the candle window synchronization layer.
These types travel over the stream transports, come back from snapshot
sources and are what the read model exposes to consumers.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Any
import json
import time


# Supported chart intervals (bucket length in seconds)
TIMEFRAMES = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
    "4h": 14400,
    "1d": 86400,
}


def interval_ms(interval: str) -> int:
    """Bucket length of an interval in milliseconds"""
    if interval not in TIMEFRAMES:
        raise ValueError(
            f"Invalid interval '{interval}'. Must be one of: {list(TIMEFRAMES.keys())}"
        )
    return TIMEFRAMES[interval] * 1000


def align_bucket(timestamp_ms: int, interval: str) -> int:
    """Align an epoch-ms timestamp to the start of its interval bucket"""
    size = interval_ms(interval)
    return (timestamp_ms // size) * size


def now_ms() -> int:
    return int(time.time() * 1000)


def _decimal(value: Any) -> Decimal:
    # str() first so floats keep their printed precision
    return Decimal(str(value))


@dataclass(frozen=True)
class Candle:
    """OHLCV bucket for one symbol/interval, keyed by bucket start time"""
    symbol: str
    interval: str  # '1m', '5m', '15m', '1h', '4h', etc.
    bucket_start_time: int  # epoch milliseconds, aligned to the interval
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal = Decimal("0")
    is_closed: bool = False  # upstream marked this bucket final

    def __post_init__(self):
        if self.volume < 0:
            raise ValueError(f"Negative volume for {self.symbol} @ {self.bucket_start_time}")

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization"""
        return {
            "symbol": self.symbol,
            "interval": self.interval,
            "bucket_start_time": self.bucket_start_time,
            "open": str(self.open),
            "high": str(self.high),
            "low": str(self.low),
            "close": str(self.close),
            "volume": str(self.volume),
            "is_closed": self.is_closed,
        }

    def to_json(self) -> str:
        """Serialize to JSON string"""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "Candle":
        """Create Candle from dictionary"""
        return cls(
            symbol=data["symbol"],
            interval=data["interval"],
            bucket_start_time=int(data["bucket_start_time"]),
            open=_decimal(data["open"]),
            high=_decimal(data["high"]),
            low=_decimal(data["low"]),
            close=_decimal(data["close"]),
            volume=_decimal(data.get("volume", "0")),
            is_closed=bool(data.get("is_closed", False)),
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Candle":
        """Deserialize from JSON string"""
        return cls.from_dict(json.loads(json_str))


@dataclass(frozen=True)
class Ticker:
    """Scalar price snapshot for one symbol"""
    symbol: str
    last_price: Decimal
    price_change_percent: Decimal
    updated_at: int = field(default_factory=now_ms)  # epoch milliseconds
    price_change: Optional[Decimal] = None
    high: Optional[Decimal] = None
    low: Optional[Decimal] = None
    volume: Optional[Decimal] = None

    @property
    def is_positive(self) -> bool:
        return self.price_change_percent >= 0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization"""
        def opt(value: Optional[Decimal]) -> Optional[str]:
            return str(value) if value is not None else None

        return {
            "symbol": self.symbol,
            "last_price": str(self.last_price),
            "price_change_percent": str(self.price_change_percent),
            "updated_at": self.updated_at,
            "price_change": opt(self.price_change),
            "high": opt(self.high),
            "low": opt(self.low),
            "volume": opt(self.volume),
        }

    def to_json(self) -> str:
        """Serialize to JSON string"""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "Ticker":
        """Create Ticker from dictionary"""
        def opt(key: str) -> Optional[Decimal]:
            value = data.get(key)
            return _decimal(value) if value is not None else None

        return cls(
            symbol=data["symbol"],
            last_price=_decimal(data["last_price"]),
            price_change_percent=_decimal(data["price_change_percent"]),
            updated_at=int(data.get("updated_at") or now_ms()),
            price_change=opt("price_change"),
            high=opt("high"),
            low=opt("low"),
            volume=opt("volume"),
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Ticker":
        """Deserialize from JSON string"""
        return cls.from_dict(json.loads(json_str))
