"""
Candle Window Merger

Folds live candle updates into a fixed-capacity, strictly ascending window.

Rules, applied against the last candle of the window:
- empty window: the candle becomes the only element
- same bucket: replace the last candle (in-progress bucket update)
- newer bucket: append, evicting the oldest candle when over capacity
- older bucket: discard, the window is returned untouched

The reducer knows nothing about reconnects or snapshots. Duplicate or
overlapping candles after a reconnect go through exactly the same rules.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Tuple
from decimal import Decimal

from schemas.market_data import Candle, TIMEFRAMES

DEFAULT_CAPACITY = 100


class MergeAction(Enum):
    """What the reducer did with an incoming candle"""
    SEEDED = "seeded"
    REPLACED = "replaced"
    APPENDED = "appended"
    EVICTED = "evicted"  # appended and dropped the oldest candle
    DISCARDED = "discarded"


@dataclass(frozen=True)
class CandleSeries:
    """
    Immutable candle window for one (symbol, interval) pair.

    Candles are strictly ascending by bucket_start_time with no duplicates and
    there are never more than `capacity` of them. Every merge produces a new
    series, so a consumer holding a reference never sees it change.
    """
    symbol: str
    interval: str
    capacity: int = DEFAULT_CAPACITY
    candles: Tuple[Candle, ...] = ()

    def __post_init__(self):
        if self.capacity < 1:
            raise ValueError(f"Series capacity must be positive, got {self.capacity}")
        if self.interval not in TIMEFRAMES:
            raise ValueError(
                f"Invalid interval '{self.interval}'. Must be one of: {list(TIMEFRAMES.keys())}"
            )

    @classmethod
    def empty(cls, symbol: str, interval: str, capacity: int = DEFAULT_CAPACITY) -> "CandleSeries":
        return cls(symbol=symbol, interval=interval, capacity=capacity)

    @classmethod
    def from_candles(
        cls,
        symbol: str,
        interval: str,
        candles: Iterable[Candle],
        capacity: int = DEFAULT_CAPACITY,
    ) -> "CandleSeries":
        """
        Build a series from candles in any order.

        Later candles for the same bucket win and only the newest `capacity`
        buckets are kept.
        """
        by_bucket = {}
        for candle in candles:
            if candle.symbol != symbol or candle.interval != interval:
                continue
            by_bucket[candle.bucket_start_time] = candle

        ordered = [by_bucket[t] for t in sorted(by_bucket)]
        return cls(
            symbol=symbol,
            interval=interval,
            capacity=capacity,
            candles=tuple(ordered[-capacity:]),
        )

    def __len__(self) -> int:
        return len(self.candles)

    def __iter__(self):
        return iter(self.candles)

    @property
    def last(self) -> Optional[Candle]:
        return self.candles[-1] if self.candles else None

    @property
    def bucket_times(self) -> list[int]:
        return [c.bucket_start_time for c in self.candles]

    @property
    def change_percent(self) -> Optional[Decimal]:
        """Percent change from the first close in the window to the last"""
        if len(self.candles) < 2:
            return None
        first = self.candles[0].close
        if first == 0:
            return None
        return (self.candles[-1].close - first) / first * 100

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "interval": self.interval,
            "capacity": self.capacity,
            "count": len(self.candles),
            "candles": [c.to_dict() for c in self.candles],
        }


@dataclass(frozen=True)
class MergeOutcome:
    """Result of folding one candle into a series"""
    series: CandleSeries
    action: MergeAction

    @property
    def changed(self) -> bool:
        return self.action is not MergeAction.DISCARDED


def merge_candle(series: CandleSeries, candle: Candle) -> MergeOutcome:
    """Fold one incoming candle into the window"""
    if candle.symbol != series.symbol or candle.interval != series.interval:
        return MergeOutcome(series, MergeAction.DISCARDED)

    last = series.last
    if last is None:
        return MergeOutcome(
            CandleSeries(series.symbol, series.interval, series.capacity, (candle,)),
            MergeAction.SEEDED,
        )

    if candle.bucket_start_time == last.bucket_start_time:
        candles = series.candles[:-1] + (candle,)
        return MergeOutcome(
            CandleSeries(series.symbol, series.interval, series.capacity, candles),
            MergeAction.REPLACED,
        )

    if candle.bucket_start_time > last.bucket_start_time:
        candles = series.candles + (candle,)
        action = MergeAction.APPENDED
        if len(candles) > series.capacity:
            candles = candles[len(candles) - series.capacity:]
            action = MergeAction.EVICTED
        return MergeOutcome(
            CandleSeries(series.symbol, series.interval, series.capacity, candles),
            action,
        )

    return MergeOutcome(series, MergeAction.DISCARDED)


def merge_candles(series: CandleSeries, candles: Iterable[Candle]) -> CandleSeries:
    """Fold candles into the window in the given order"""
    for candle in candles:
        series = merge_candle(series, candle).series
    return series
