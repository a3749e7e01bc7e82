"""
Config Loader

Loads the market sync configuration from YAML and applies environment
overrides. Every section has defaults, so an empty or missing file yields a
working Binance setup.
"""

import os
import yaml
from pathlib import Path
from typing import List, Literal, Optional
from pydantic import BaseModel, Field, ValidationError, field_validator
import logging

from dataflow.adapters.binance import DEFAULT_REST_URL, DEFAULT_WS_URL
from dataflow.adapters.pipeline import DEFAULT_DATABASE_URL
from dataflow.stream.backoff import BackoffPolicy
from schemas.market_data import TIMEFRAMES

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config") / "market_sync.yaml"

DEFAULT_SYMBOLS = [
    "BTCUSDT",
    "ETHUSDT",
    "BNBUSDT",
    "SOLUSDT",
    "LTCUSDT",
    "DOGEUSDT",
    "TRXUSDT",
    "SHIBUSDT",
]


class SnapshotSettings(BaseModel):
    """Historical snapshot request settings"""
    timeout: float = Field(default=10.0, gt=0)
    limit: int = Field(default=100, ge=1)


class BackoffSettings(BaseModel):
    """Stream reconnect schedule"""
    base_delay: float = Field(default=1.0, ge=0)
    factor: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)
    jitter: float = Field(default=0.2, ge=0, lt=1)
    degraded_after: int = Field(default=5, ge=1)

    def to_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            base_delay=self.base_delay,
            factor=self.factor,
            max_delay=self.max_delay,
            jitter=self.jitter,
            degraded_after=self.degraded_after,
        )


class ChartSettings(BaseModel):
    """Initial chart selection and window size"""
    symbol: str = "BTCUSDT"
    interval: str = "15m"
    capacity: int = Field(default=100, ge=1)
    fallback_poll_interval: Optional[float] = Field(default=3.0, gt=0)

    @field_validator("symbol")
    @classmethod
    def _upper_symbol(cls, v: str) -> str:
        return v.upper()

    @field_validator("interval")
    @classmethod
    def _known_interval(cls, v: str) -> str:
        if v not in TIMEFRAMES:
            raise ValueError(f"Invalid interval '{v}'. Must be one of: {list(TIMEFRAMES.keys())}")
        return v


class TickerSettings(BaseModel):
    """Tracked ticker symbols"""
    symbols: List[str] = Field(default_factory=lambda: list(DEFAULT_SYMBOLS))
    coalesce_interval: float = Field(default=0.25, gt=0)

    @field_validator("symbols")
    @classmethod
    def _upper_symbols(cls, v: List[str]) -> List[str]:
        return [s.strip().upper() for s in v if s.strip()]


class BinanceSettings(BaseModel):
    rest_url: str = DEFAULT_REST_URL
    ws_url: str = DEFAULT_WS_URL
    ping_interval: float = Field(default=20.0, gt=0)


class TimescaleSettings(BaseModel):
    database_url: str = DEFAULT_DATABASE_URL
    command_timeout: float = Field(default=10.0, gt=0)


class SyncConfig(BaseModel):
    """Complete market sync configuration"""
    feed: Literal["binance", "nats"] = "binance"
    snapshot: SnapshotSettings = Field(default_factory=SnapshotSettings)
    backoff: BackoffSettings = Field(default_factory=BackoffSettings)
    chart: ChartSettings = Field(default_factory=ChartSettings)
    tickers: TickerSettings = Field(default_factory=TickerSettings)
    binance: BinanceSettings = Field(default_factory=BinanceSettings)
    timescale: TimescaleSettings = Field(default_factory=TimescaleSettings)

    @classmethod
    def from_env(cls, base: Optional["SyncConfig"] = None) -> "SyncConfig":
        """
        Apply environment overrides on top of a base config.

        Environment Variables:
            MARKET_FEED: binance or nats
            BINANCE_REST_URL: Binance REST base URL
            BINANCE_WS_URL: Binance WebSocket base URL
            DATABASE_URL: TimescaleDB connection string
            CHART_CAPACITY: Candles kept in the chart window
            TICKER_SYMBOLS: Comma-separated tracked symbols

        Raises:
            ValueError: If an override is invalid
        """
        data = (base or cls()).model_dump()

        if os.getenv("MARKET_FEED"):
            data["feed"] = os.environ["MARKET_FEED"].lower()
        if os.getenv("BINANCE_REST_URL"):
            data["binance"]["rest_url"] = os.environ["BINANCE_REST_URL"]
        if os.getenv("BINANCE_WS_URL"):
            data["binance"]["ws_url"] = os.environ["BINANCE_WS_URL"]
        if os.getenv("DATABASE_URL"):
            data["timescale"]["database_url"] = os.environ["DATABASE_URL"]
        if os.getenv("CHART_CAPACITY"):
            data["chart"]["capacity"] = os.environ["CHART_CAPACITY"]
        if os.getenv("TICKER_SYMBOLS"):
            data["tickers"]["symbols"] = os.environ["TICKER_SYMBOLS"].split(",")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ValueError(f"Invalid environment override: {e}")


class ConfigLoader:
    """
    Loads and validates the market sync config from YAML.

    Example usage:
        loader = ConfigLoader(Path("config/market_sync.yaml"))
        config = SyncConfig.from_env(loader.load())
    """

    def __init__(self, path: Path = DEFAULT_CONFIG_PATH):
        """
        Initialize loader with a config file path.

        Args:
            path: YAML file to load
        """
        self.path = Path(path)
        logger.info(f"Initialized ConfigLoader with path: {self.path}")

    def load(self) -> SyncConfig:
        """
        Load the config file.

        Returns:
            Validated SyncConfig (defaults if the file does not exist)

        Raises:
            ValueError: If the file can't be parsed or fails validation
        """
        if not self.path.exists():
            logger.warning(f"Config file not found: {self.path}, using defaults")
            return SyncConfig()

        try:
            with open(self.path) as f:
                raw = yaml.safe_load(f) or {}
            if not isinstance(raw, dict):
                raise ValueError(f"expected a mapping, got {type(raw).__name__}")
            config = SyncConfig(**raw)
        except (yaml.YAMLError, ValidationError, ValueError) as e:
            logger.error(f"Failed to load {self.path}: {e}")
            raise ValueError(f"Failed to load {self.path}: {e}")

        logger.info(
            f"Loaded config from {self.path}: feed={config.feed}, "
            f"chart={config.chart.symbol}/{config.chart.interval}, "
            f"{len(config.tickers.symbols)} tickers"
        )
        return config
