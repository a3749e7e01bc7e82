"""
Ticker Aggregator

Keeps last price and 24h change for a fixed set of symbols using one
multiplexed push subscription. Updates are coalesced so consumers see at most
one new mapping per coalesce interval.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Mapping, Optional

from dataflow.errors import FetchError
from dataflow.feeds import MarketFeed
from dataflow.stream.backoff import BackoffPolicy
from dataflow.stream.subscriber import StreamSubscriber
from schemas.market_data import Ticker

logger = logging.getLogger(__name__)

DEFAULT_COALESCE_INTERVAL = 0.25


class TickerAggregator:
    """
    Coalescing ticker board.

    The published mapping is replaced wholesale on every flush and never
    mutated afterwards, so a reference obtained from `tickers` is a
    consistent snapshot.
    """

    def __init__(
        self,
        feed: MarketFeed,
        symbols: List[str],
        coalesce_interval: float = DEFAULT_COALESCE_INTERVAL,
        backoff: Optional[BackoffPolicy] = None,
    ):
        if coalesce_interval <= 0:
            raise ValueError(f"Coalesce interval must be positive, got {coalesce_interval}")

        self.feed = feed
        self.symbols = [s.upper() for s in symbols]
        self.coalesce_interval = coalesce_interval
        self.backoff = backoff

        self._tracked = set(self.symbols)
        self._tickers: Dict[str, Ticker] = {}
        self._pending: Dict[str, Ticker] = {}
        self._flush_handle: Optional[asyncio.TimerHandle] = None
        self._subscriber: Optional[StreamSubscriber] = None
        self._seed_task: Optional[asyncio.Task] = None
        self._listeners: List[Callable[[Mapping[str, Ticker]], None]] = []
        self._closed = False
        self.flushes = 0

    @property
    def tickers(self) -> Mapping[str, Ticker]:
        return self._tickers

    @property
    def is_loading(self) -> bool:
        """True until every tracked symbol has been published at least once"""
        return not self._tracked.issubset(self._tickers)

    @property
    def subscriber(self) -> Optional[StreamSubscriber]:
        return self._subscriber

    def add_listener(self, listener: Callable[[Mapping[str, Ticker]], None]) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        """Open the ticker stream and seed from the snapshot source"""
        if self._closed:
            raise RuntimeError("TickerAggregator is closed")
        if self._subscriber is not None:
            return

        loop = asyncio.get_running_loop()
        self._subscriber = StreamSubscriber(
            transport=self.feed.transport,
            channel=self.feed.ticker_channel(self.symbols),
            parser=self.feed.parse_ticker,
            callback=self._on_ticker,
            backoff=self.backoff,
            name="tickers",
        )
        self._subscriber.start()
        self._seed_task = loop.create_task(self._seed())
        logger.info(f"Ticker aggregator started for {len(self.symbols)} symbols")

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        self._pending = {}

        if self._seed_task is not None and not self._seed_task.done():
            self._seed_task.cancel()
        if self._subscriber is not None:
            self._subscriber.unsubscribe()
            await self._subscriber.wait_closed()
        if self._seed_task is not None:
            await asyncio.gather(self._seed_task, return_exceptions=True)
        logger.info("Ticker aggregator closed")

    async def _seed(self) -> None:
        try:
            tickers = await self.feed.fetch_tickers(self.symbols)
        except FetchError as e:
            logger.warning(f"Ticker snapshot failed, waiting for stream updates: {e}")
            return

        for ticker in tickers:
            self._on_ticker(ticker)
        logger.info(f"Seeded {len(tickers)} tickers")

    def _on_ticker(self, ticker: Ticker) -> None:
        if self._closed:
            return
        if ticker.symbol not in self._tracked:
            logger.debug(f"Ignoring ticker for untracked symbol {ticker.symbol}")
            return

        current = self._pending.get(ticker.symbol) or self._tickers.get(ticker.symbol)
        if current is not None and ticker.updated_at < current.updated_at:
            return

        self._pending[ticker.symbol] = ticker
        if self._flush_handle is None:
            loop = asyncio.get_running_loop()
            self._flush_handle = loop.call_later(self.coalesce_interval, self._flush)

    def _flush(self) -> None:
        self._flush_handle = None
        if self._closed or not self._pending:
            return

        tickers = dict(self._tickers)
        tickers.update(self._pending)
        self._pending = {}
        self._tickers = tickers
        self.flushes += 1
        logger.debug(f"Published {len(tickers)} tickers")

        for listener in list(self._listeners):
            try:
                listener(tickers)
            except Exception as e:
                logger.error(f"Ticker listener failed: {e}", exc_info=True)
