"""
Tests for the snapshot fetcher.
"""

import asyncio
from decimal import InvalidOperation

import pytest

from dataflow.errors import FetchError
from dataflow.snapshot import SnapshotFetcher

from fakes import make_candle


class ListSource:
    def __init__(self, candles=None, delay: float = 0.0, error=None):
        self.candles = candles or []
        self.delay = delay
        self.error = error

    async def fetch_klines(self, symbol, interval, limit):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.candles)


def test_fetch_orders_dedups_and_limits():
    candles = [make_candle(3), make_candle(1), make_candle(2, close="5"), make_candle(0), make_candle(2, close="7")]
    fetcher = SnapshotFetcher(ListSource(candles))

    series = asyncio.run(fetcher.fetch("BTCUSDT", "15m", limit=3))

    assert series.bucket_times == [make_candle(i).bucket_start_time for i in (1, 2, 3)]
    assert str(series.candles[1].close) == "7"
    assert series.symbol == "BTCUSDT"
    assert series.capacity == 100


def test_fetch_returns_empty_series_for_no_data():
    series = asyncio.run(SnapshotFetcher(ListSource()).fetch("BTCUSDT", "1h", limit=10))

    assert len(series) == 0
    assert series.interval == "1h"


def test_fetch_timeout_is_fetch_error():
    fetcher = SnapshotFetcher(ListSource(delay=1.0), timeout=0.01)

    with pytest.raises(FetchError) as excinfo:
        asyncio.run(fetcher.fetch("BTCUSDT", "15m", limit=10))

    assert excinfo.value.reason == FetchError.TIMEOUT


def test_source_errors_propagate():
    fetcher = SnapshotFetcher(ListSource(error=FetchError("bad gateway", reason=FetchError.HTTP)))

    with pytest.raises(FetchError) as excinfo:
        asyncio.run(fetcher.fetch("BTCUSDT", "15m", limit=10))

    assert excinfo.value.reason == "http"
    assert "bad gateway" in str(excinfo.value)


@pytest.mark.parametrize("error", [KeyError("open"), InvalidOperation(), AttributeError("replace")])
def test_unexpected_source_errors_become_parse_errors(error):
    fetcher = SnapshotFetcher(ListSource(error=error))

    with pytest.raises(FetchError) as excinfo:
        asyncio.run(fetcher.fetch("BTCUSDT", "15m", limit=10))

    assert excinfo.value.reason == FetchError.PARSE
    assert excinfo.value.__cause__ is error


def test_limit_must_be_positive():
    with pytest.raises(ValueError):
        asyncio.run(SnapshotFetcher(ListSource()).fetch("BTCUSDT", "15m", limit=0))
