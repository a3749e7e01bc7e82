"""
Chart Subscription Lifecycle

Owns the single active chart selection: its snapshot fetch, its stream
subscriber, its optional REST polling fallback and the candle series they
all feed.

Every selection gets a new generation number. Work started for an older
generation (a slow snapshot, a late stream message, a poll result) checks
the generation before touching state and is dropped if it has been
superseded. That fence is what keeps a stale symbol off the chart when the
transport cannot be torn down instantly.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from dataflow.candle_window.merger import (
    DEFAULT_CAPACITY,
    CandleSeries,
    merge_candle,
    merge_candles,
)
from dataflow.errors import FetchError
from dataflow.feeds import MarketFeed
from dataflow.snapshot.fetcher import DEFAULT_TIMEOUT, SnapshotFetcher
from dataflow.stream.backoff import BackoffPolicy
from dataflow.stream.subscriber import StreamState, StreamSubscriber
from schemas.market_data import Candle, interval_ms

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 3.0


@dataclass(frozen=True)
class ChartView:
    """Read model handed to consumers; always internally consistent"""
    symbol: str
    interval: str
    series: CandleSeries
    is_loading: bool
    error: Optional[FetchError]
    is_stale: bool
    stream_state: StreamState
    generation: int

    def to_dict(self) -> Dict[str, Any]:
        change = self.series.change_percent
        return {
            "symbol": self.symbol,
            "interval": self.interval,
            "generation": self.generation,
            "is_loading": self.is_loading,
            "error": (
                {"message": str(self.error), "reason": self.error.reason}
                if self.error is not None else None
            ),
            "is_stale": self.is_stale,
            "stream_state": self.stream_state.value,
            "change_percent": str(change) if change is not None else None,
            "series": self.series.to_dict(),
        }


@dataclass
class SubscriptionHandle:
    """Everything owned by one selection"""
    symbol: str
    interval: str
    generation: int
    subscriber: Optional[StreamSubscriber] = None
    tasks: List[asyncio.Task] = field(default_factory=list)
    snapshot_resolved: bool = False
    # Live candles received while the snapshot is in flight
    pending: Optional[CandleSeries] = None

    def cancel(self) -> None:
        if self.subscriber is not None:
            self.subscriber.unsubscribe()
        for task in self.tasks:
            if not task.done():
                task.cancel()

    @property
    def finished(self) -> bool:
        subscriber_done = self.subscriber is None or self.subscriber.finished
        return subscriber_done and all(t.done() for t in self.tasks)

    async def wait_closed(self) -> None:
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        if self.subscriber is not None:
            await self.subscriber.wait_closed()


class ChartSubscriptionManager:
    """
    Keeps one candle series in sync with the current symbol/interval.

    select() is synchronous and must be called from inside the running
    event loop. It tears down the previous selection before returning, so
    the caller can never observe candles from two selections at once.

    Example usage:
        manager = ChartSubscriptionManager(BinanceFeed())
        manager.add_listener(lambda view: render(view))

        manager.select("BTCUSDT", "15m")
        ...
        manager.select("ETHUSDT", "15m")
        ...
        await manager.aclose()
    """

    def __init__(
        self,
        feed: MarketFeed,
        capacity: int = DEFAULT_CAPACITY,
        snapshot_limit: Optional[int] = None,
        snapshot_timeout: float = DEFAULT_TIMEOUT,
        backoff: Optional[BackoffPolicy] = None,
        fallback_poll_interval: Optional[float] = DEFAULT_POLL_INTERVAL,
    ):
        """
        Args:
            feed: Upstream market feed
            capacity: Candles kept in the window
            snapshot_limit: Candles requested for the snapshot (defaults to capacity)
            snapshot_timeout: Snapshot request timeout in seconds
            backoff: Stream reconnect schedule
            fallback_poll_interval: Seconds between REST polls while the
                stream is down; None disables polling
        """
        if capacity < 1:
            raise ValueError(f"Capacity must be positive, got {capacity}")

        self.feed = feed
        self.capacity = capacity
        self.snapshot_limit = min(snapshot_limit or capacity, capacity)
        self.fetcher = SnapshotFetcher(feed.snapshot_source, timeout=snapshot_timeout)
        self.backoff = backoff or BackoffPolicy()
        self.fallback_poll_interval = fallback_poll_interval

        self._generation = 0
        self._handle: Optional[SubscriptionHandle] = None
        self._series: Optional[CandleSeries] = None
        self._is_loading = False
        self._error: Optional[FetchError] = None
        self._closed = False
        self._retired: List[SubscriptionHandle] = []
        self._listeners: List[Callable[[ChartView], None]] = []

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def handle(self) -> Optional[SubscriptionHandle]:
        return self._handle

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def view(self) -> Optional[ChartView]:
        """Current read model, or None before the first selection / after close"""
        handle = self._handle
        if handle is None or self._series is None:
            return None

        subscriber = handle.subscriber
        return ChartView(
            symbol=handle.symbol,
            interval=handle.interval,
            series=self._series,
            is_loading=self._is_loading,
            error=self._error,
            is_stale=subscriber.degraded if subscriber is not None else False,
            stream_state=subscriber.state if subscriber is not None else StreamState.CONNECTING,
            generation=handle.generation,
        )

    def add_listener(self, listener: Callable[[ChartView], None]) -> None:
        """Register a callable invoked with the new view after every change"""
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[ChartView], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def select(self, symbol: str, interval: str) -> SubscriptionHandle:
        """
        Switch the chart to a new symbol/interval.

        Args:
            symbol: Trading symbol (case-insensitive, e.g. "btcusdt")
            interval: One of 1m, 5m, 15m, 30m, 1h, 4h, 1d

        Returns:
            Handle for the new selection

        Raises:
            RuntimeError: If the manager has been closed
            ValueError: If the interval is not supported
        """
        if self._closed:
            raise RuntimeError("ChartSubscriptionManager is closed")
        interval_ms(interval)
        symbol = symbol.strip().upper()
        if not symbol:
            raise ValueError("Symbol must not be empty")
        loop = asyncio.get_running_loop()

        self._generation += 1
        generation = self._generation

        self._retire_current()

        self._series = CandleSeries.empty(symbol, interval, self.capacity)
        self._is_loading = True
        self._error = None

        handle = SubscriptionHandle(
            symbol=symbol,
            interval=interval,
            generation=generation,
            pending=CandleSeries.empty(symbol, interval, self.capacity),
        )
        self._handle = handle

        handle.tasks.append(loop.create_task(self._load_snapshot(handle)))

        handle.subscriber = StreamSubscriber(
            transport=self.feed.transport,
            channel=self.feed.kline_channel(symbol, interval),
            parser=lambda raw: self.feed.parse_kline(raw, symbol, interval),
            callback=lambda candle: self._on_live_candle(generation, candle),
            backoff=self.backoff,
            on_state_change=lambda _: self._on_stream_state(generation),
            name=f"{symbol}/{interval}",
        )
        handle.subscriber.start()

        if self.fallback_poll_interval:
            handle.tasks.append(loop.create_task(self._poll_fallback(handle)))

        logger.info(f"Selected {symbol} {interval} (generation {generation})")
        self._publish()
        return handle

    async def aclose(self) -> None:
        """Tear down the active selection; select() raises afterwards"""
        if self._closed:
            return
        self._closed = True
        self._retire_current()
        self._series = None

        retired, self._retired = self._retired, []
        for handle in retired:
            await handle.wait_closed()
        logger.info("Chart subscription manager closed")

    def get_metrics(self) -> Dict[str, Any]:
        handle = self._handle
        return {
            "generation": self._generation,
            "closed": self._closed,
            "selection": f"{handle.symbol}/{handle.interval}" if handle else None,
            "candles": len(self._series) if self._series is not None else 0,
            "stream": handle.subscriber.get_metrics() if handle and handle.subscriber else None,
        }

    def _is_current(self, generation: int) -> bool:
        return (
            not self._closed
            and self._handle is not None
            and self._handle.generation == generation
        )

    def _retire_current(self) -> None:
        handle = self._handle
        self._handle = None
        if handle is None:
            return
        handle.cancel()
        self._retired = [h for h in self._retired if not h.finished]
        self._retired.append(handle)
        logger.debug(f"Retired {handle.symbol} {handle.interval} (generation {handle.generation})")

    async def _load_snapshot(self, handle: SubscriptionHandle) -> None:
        try:
            snapshot = await self.fetcher.fetch(
                handle.symbol,
                handle.interval,
                self.snapshot_limit,
                capacity=self.capacity,
            )
        except FetchError as e:
            if not self._is_current(handle.generation):
                logger.debug(f"Ignoring failed snapshot for superseded generation {handle.generation}")
                return
            self._error = e
            self._is_loading = False
            self._resolve_snapshot(handle, self._series)
            return

        if not self._is_current(handle.generation):
            logger.debug(
                f"Dropping snapshot for {handle.symbol} {handle.interval}: "
                f"generation {handle.generation} superseded by {self._generation}"
            )
            return

        self._is_loading = False
        self._resolve_snapshot(handle, snapshot)

    def _resolve_snapshot(self, handle: SubscriptionHandle, base: CandleSeries) -> None:
        pending = handle.pending
        handle.pending = None
        handle.snapshot_resolved = True
        series = base
        if pending is not None and len(pending):
            series = merge_candles(series, pending.candles)
            logger.debug(f"Folded {len(pending)} live candles into {handle.symbol} {handle.interval} snapshot")
        self._series = series
        self._publish()

    def _on_live_candle(self, generation: int, candle: Candle) -> None:
        if not self._is_current(generation):
            logger.debug(f"Dropping {candle.symbol} {candle.interval} candle for stale generation {generation}")
            return

        handle = self._handle
        if not handle.snapshot_resolved:
            handle.pending = merge_candle(handle.pending, candle).series
            return

        self._apply(candle)

    def _apply(self, candle: Candle) -> None:
        outcome = merge_candle(self._series, candle)
        if not outcome.changed:
            logger.debug(
                f"Discarded out-of-order candle {candle.bucket_start_time} "
                f"for {candle.symbol} {candle.interval}"
            )
            return
        self._series = outcome.series
        self._publish()

    def _on_stream_state(self, generation: int) -> None:
        if self._is_current(generation):
            self._publish()

    async def _poll_fallback(self, handle: SubscriptionHandle) -> None:
        while self._is_current(handle.generation):
            await asyncio.sleep(self.fallback_poll_interval)
            if not self._is_current(handle.generation):
                return
            subscriber = handle.subscriber
            if not handle.snapshot_resolved or subscriber is None or subscriber.state == StreamState.OPEN:
                continue

            try:
                latest = await self.fetcher.fetch(handle.symbol, handle.interval, 1, capacity=self.capacity)
            except FetchError as e:
                logger.warning(f"Fallback poll for {handle.symbol} {handle.interval} failed: {e}")
                continue

            if not self._is_current(handle.generation):
                return
            for candle in latest:
                self._apply(candle)

    def _publish(self) -> None:
        view = self.view
        if view is None:
            return
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception as e:
                logger.error(f"Chart listener failed: {e}", exc_info=True)
