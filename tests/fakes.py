"""
In-memory feed, snapshot source and transport used by the tests.
"""

import asyncio
from decimal import Decimal
from typing import Optional

from dataflow.errors import FetchError, MalformedMessage, StreamClosed, StreamError
from schemas.market_data import Candle, Ticker, interval_ms

BASE_TIME = 1_700_000_100_000 // 900_000 * 900_000  # aligned to 15m


def make_candle(
    index: int,
    close="100",
    symbol: str = "BTCUSDT",
    interval: str = "15m",
    volume="1",
    is_closed: bool = False,
) -> Candle:
    close = Decimal(str(close))
    return Candle(
        symbol=symbol,
        interval=interval,
        bucket_start_time=BASE_TIME + index * interval_ms(interval),
        open=close,
        high=close,
        low=close,
        close=close,
        volume=Decimal(str(volume)),
        is_closed=is_closed,
    )


def make_ticker(symbol: str, price="100", change="1.5", updated_at: int = 1) -> Ticker:
    return Ticker(
        symbol=symbol,
        last_price=Decimal(str(price)),
        price_change_percent=Decimal(str(change)),
        updated_at=updated_at,
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


class FakeConnection:
    def __init__(self, channel: str):
        self.channel = channel
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    def push(self, item) -> None:
        """Queue a raw message, or an exception to raise from recv()"""
        self._queue.put_nowait(item)

    def drop(self) -> None:
        self.push(StreamClosed("remote closed"))

    async def recv(self):
        item = await self._queue.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


class FakeTransport:
    """Opens FakeConnections; the first `fail_opens` attempts are refused"""

    def __init__(self, fail_opens: int = 0):
        self.fail_opens = fail_opens
        self.opened: list[str] = []
        self.connections: list[FakeConnection] = []

    async def open(self, channel: str) -> FakeConnection:
        self.opened.append(channel)
        if self.fail_opens > 0:
            self.fail_opens -= 1
            raise StreamError(f"refused {channel}")
        conn = FakeConnection(channel)
        self.connections.append(conn)
        return conn

    def connection(self, channel: str) -> Optional[FakeConnection]:
        """Most recent open connection for a channel"""
        for conn in reversed(self.connections):
            if conn.channel == channel and not conn.closed:
                return conn
        return None


class FakeSource:
    """Snapshot source with per-pair results and optional gates"""

    def __init__(self):
        self.results: dict = {}
        self.gates: dict = {}
        self.calls: list = []

    def hold(self, symbol: str, interval: str) -> asyncio.Event:
        """Block fetches for a pair until the returned event is set"""
        gate = asyncio.Event()
        self.gates[(symbol, interval)] = gate
        return gate

    async def fetch_klines(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        self.calls.append((symbol, interval, limit))
        gate = self.gates.get((symbol, interval))
        if gate is not None:
            await gate.wait()
        result = self.results.get((symbol, interval), [])
        if isinstance(result, Exception):
            raise result
        return list(result)[-limit:]


def kline_message(candle: Candle) -> str:
    return candle.to_json()


class FakeFeed:
    """Feed speaking Candle/Ticker JSON over the fake transport"""

    name = "fake"

    def __init__(self, source: Optional[FakeSource] = None, transport: Optional[FakeTransport] = None):
        self.snapshot_source = source or FakeSource()
        self.transport = transport or FakeTransport()
        self.ticker_snapshot = []
        self.closed = False

    def kline_channel(self, symbol: str, interval: str) -> str:
        return f"kline:{symbol}:{interval}"

    def parse_kline(self, raw, symbol: str, interval: str) -> Optional[Candle]:
        if raw == "ping":
            return None
        try:
            candle = Candle.from_json(raw)
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedMessage(f"bad candle: {e!r}") from e
        if candle.symbol != symbol or candle.interval != interval:
            raise MalformedMessage("wrong channel")
        return candle

    def ticker_channel(self, symbols: list[str]) -> str:
        return "tickers"

    def parse_ticker(self, raw) -> Optional[Ticker]:
        try:
            return Ticker.from_json(raw)
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedMessage(f"bad ticker: {e!r}") from e

    async def fetch_tickers(self, symbols: list[str]) -> list[Ticker]:
        if isinstance(self.ticker_snapshot, Exception):
            raise self.ticker_snapshot
        return list(self.ticker_snapshot)

    async def close(self) -> None:
        self.closed = True


def fetch_error(reason: str = FetchError.HTTP) -> FetchError:
    return FetchError("upstream said no", reason=reason)
