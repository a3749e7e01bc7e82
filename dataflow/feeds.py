"""
Market Feeds

A feed bundles everything needed to follow one upstream: the snapshot
source, the push transport, channel naming and the message parsers.

Feeds:
- binance: Binance REST snapshots + WebSocket kline/ticker streams
- nats: TimescaleDB snapshots + NATS topics from the ingestion pipeline
"""

import logging
from typing import TYPE_CHECKING, Optional, Protocol

from dataflow.adapters import binance, pipeline
from dataflow.adapters.nats_client import NatsClient, NatsConfig, Topics
from dataflow.snapshot.fetcher import SnapshotSource
from dataflow.stream.transports import (
    NatsTransport,
    RawMessage,
    StreamTransport,
    WebSocketTransport,
)
from schemas.market_data import Candle, Ticker

if TYPE_CHECKING:
    from engine.config.loader import SyncConfig

logger = logging.getLogger(__name__)


class MarketFeed(Protocol):
    name: str
    snapshot_source: SnapshotSource
    transport: StreamTransport

    def kline_channel(self, symbol: str, interval: str) -> str:
        ...

    def parse_kline(self, raw: RawMessage, symbol: str, interval: str) -> Optional[Candle]:
        ...

    def ticker_channel(self, symbols: list[str]) -> str:
        ...

    def parse_ticker(self, raw: RawMessage) -> Optional[Ticker]:
        ...

    async def fetch_tickers(self, symbols: list[str]) -> list[Ticker]:
        ...

    async def close(self) -> None:
        ...


class BinanceFeed:
    """Binance spot market data over REST and WebSocket"""

    name = "binance"

    def __init__(
        self,
        rest_url: str = binance.DEFAULT_REST_URL,
        ws_url: str = binance.DEFAULT_WS_URL,
        request_timeout: float = 10.0,
        ping_interval: float = 20.0,
    ):
        self.rest = binance.BinanceRestClient(rest_url, request_timeout=request_timeout)
        self.snapshot_source = self.rest
        self.transport = WebSocketTransport(
            ws_url,
            ping_interval=ping_interval,
            ping_timeout=ping_interval,
        )

    def kline_channel(self, symbol: str, interval: str) -> str:
        return binance.kline_channel(symbol, interval)

    def parse_kline(self, raw: RawMessage, symbol: str, interval: str) -> Optional[Candle]:
        return binance.parse_kline_event(raw, symbol, interval)

    def ticker_channel(self, symbols: list[str]) -> str:
        return binance.ticker_channel(symbols)

    def parse_ticker(self, raw: RawMessage) -> Optional[Ticker]:
        return binance.parse_ticker_event(raw)

    async def fetch_tickers(self, symbols: list[str]) -> list[Ticker]:
        return await self.rest.fetch_tickers(symbols)

    async def close(self) -> None:
        await self.rest.close()


class PipelineFeed:
    """
    Market data produced by the ingestion pipeline.

    Historical candles come from TimescaleDB; live candles and tickers come
    from NATS. The pipeline has no ticker snapshot, so tickers fill in as
    they are published.
    """

    name = "nats"

    def __init__(
        self,
        db_url: str = pipeline.DEFAULT_DATABASE_URL,
        nats_config: Optional[NatsConfig] = None,
        command_timeout: float = 10.0,
    ):
        self.snapshot_source = pipeline.TimescaleSnapshotSource(db_url, command_timeout=command_timeout)
        self.nats = NatsClient(nats_config or NatsConfig.from_env())
        self.transport = NatsTransport(self.nats)

    def kline_channel(self, symbol: str, interval: str) -> str:
        return Topics.candles(symbol, interval)

    def parse_kline(self, raw: RawMessage, symbol: str, interval: str) -> Optional[Candle]:
        return pipeline.parse_pipeline_candle(raw, symbol, interval)

    def ticker_channel(self, symbols: list[str]) -> str:
        # One wildcard subscription; untracked symbols are filtered downstream
        return Topics.all_tickers()

    def parse_ticker(self, raw: RawMessage) -> Optional[Ticker]:
        return pipeline.parse_pipeline_ticker(raw)

    async def fetch_tickers(self, symbols: list[str]) -> list[Ticker]:
        logger.debug(f"No ticker snapshot for {len(symbols)} symbols on the pipeline feed")
        return []

    async def close(self) -> None:
        await self.snapshot_source.close()
        await self.nats.close()


def build_feed(config: "SyncConfig") -> MarketFeed:
    """
    Create the feed selected by config.feed.

    Raises:
        ValueError: If the feed name is unknown
    """
    if config.feed == "binance":
        feed = BinanceFeed(
            rest_url=config.binance.rest_url,
            ws_url=config.binance.ws_url,
            request_timeout=config.snapshot.timeout,
            ping_interval=config.binance.ping_interval,
        )
    elif config.feed == "nats":
        feed = PipelineFeed(
            db_url=config.timescale.database_url,
            command_timeout=config.timescale.command_timeout,
        )
    else:
        raise ValueError(f"Unknown feed '{config.feed}'. Must be one of: binance, nats")

    logger.info(f"Using {feed.name} feed")
    return feed
