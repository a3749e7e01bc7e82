"""
Snapshot Fetcher

Loads the bounded historical window that seeds a candle series.
"""

import asyncio
import logging
from typing import Protocol

from dataflow.candle_window.merger import CandleSeries, DEFAULT_CAPACITY
from dataflow.errors import FetchError
from schemas.market_data import Candle

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class SnapshotSource(Protocol):
    """Request/response market data source"""

    async def fetch_klines(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        ...


class SnapshotFetcher:
    """
    Fetches historical candles with a hard request timeout.

    The result is always a valid CandleSeries: ascending, de-duplicated and
    holding at most `limit` candles (the newest ones). Any source failure
    comes out as FetchError.
    """

    def __init__(self, source: SnapshotSource, timeout: float = DEFAULT_TIMEOUT):
        self.source = source
        self.timeout = timeout

    async def fetch(
        self,
        symbol: str,
        interval: str,
        limit: int,
        capacity: int = DEFAULT_CAPACITY,
    ) -> CandleSeries:
        """
        Fetch up to `limit` candles for a symbol/interval.

        Args:
            symbol: Trading symbol (e.g., BTCUSDT)
            interval: Candle interval (1m, 5m, 15m, 30m, 1h, 4h, 1d)
            limit: Maximum number of candles to return
            capacity: Capacity of the returned series

        Raises:
            FetchError: network, HTTP or parse failure, or timeout
        """
        if limit < 1:
            raise ValueError(f"Snapshot limit must be positive, got {limit}")

        try:
            candles = await asyncio.wait_for(
                self.source.fetch_klines(symbol, interval, limit),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Snapshot for {symbol} {interval} timed out after {self.timeout}s")
            raise FetchError(
                f"Snapshot for {symbol} {interval} timed out after {self.timeout}s",
                reason=FetchError.TIMEOUT,
            ) from e
        except FetchError as e:
            logger.error(f"Snapshot for {symbol} {interval} failed: {e}")
            raise
        except Exception as e:
            logger.error(f"Snapshot for {symbol} {interval} failed unexpectedly: {e!r}", exc_info=True)
            raise FetchError(
                f"Snapshot for {symbol} {interval} failed: {e!r}",
                reason=FetchError.PARSE,
            ) from e

        series = CandleSeries.from_candles(symbol, interval, candles, capacity=capacity)
        if len(series) > limit:
            series = CandleSeries(symbol, interval, capacity, series.candles[-limit:])

        logger.info(f"Snapshot for {symbol} {interval}: {len(series)} candles (limit={limit})")
        return series
