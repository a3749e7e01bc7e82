"""
Binance Adapter

REST snapshot client and stream payload parsers for Binance spot market data.

REST Endpoints:
- GET /klines          - Historical candles (symbol, interval, limit)
- GET /ticker/24hr     - 24h rolling tickers for one or more symbols

Stream Channels:
- ws/{symbol}@kline_{interval}          - Partial/closed candle updates
- stream?streams={s1}@ticker/{s2}@...   - Multiplexed 24h tickers
"""

import asyncio
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

import aiohttp

from dataflow.errors import FetchError, MalformedMessage
from schemas.market_data import Candle, Ticker, align_bucket, now_ms

logger = logging.getLogger(__name__)

DEFAULT_REST_URL = "https://api.binance.com/api/v3"
DEFAULT_WS_URL = "wss://stream.binance.com:9443"


def kline_channel(symbol: str, interval: str) -> str:
    """Single-stream channel for a symbol/interval pair"""
    return f"ws/{symbol.lower()}@kline_{interval}"


def ticker_channel(symbols: list[str]) -> str:
    """Combined-stream channel carrying tickers for all symbols"""
    streams = "/".join(f"{s.lower()}@ticker" for s in symbols)
    return f"stream?streams={streams}"


def _load(raw: Union[str, bytes, dict]) -> Any:
    if isinstance(raw, dict):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedMessage(f"Invalid JSON payload: {e}") from e


def _unwrap(payload: Any) -> Any:
    # Combined streams wrap each event as {"stream": ..., "data": {...}}
    if isinstance(payload, dict) and "stream" in payload and "data" in payload:
        return payload["data"]
    return payload


def parse_rest_kline(row: list, symbol: str, interval: str) -> Candle:
    """
    Convert one REST kline row to a Candle.

    Row layout: [open_time, open, high, low, close, volume, close_time, ...]
    """
    close_time = int(row[6])
    return Candle(
        symbol=symbol,
        interval=interval,
        bucket_start_time=int(row[0]),
        open=Decimal(str(row[1])),
        high=Decimal(str(row[2])),
        low=Decimal(str(row[3])),
        close=Decimal(str(row[4])),
        volume=Decimal(str(row[5])),
        is_closed=close_time < now_ms(),
    )


def parse_kline_event(raw: Union[str, bytes, dict], symbol: str, interval: str) -> Optional[Candle]:
    """
    Parse a kline stream event.

    Returns None for non-kline frames (subscription acks and the like) and
    raises MalformedMessage for kline frames that can't be read.
    """
    payload = _unwrap(_load(raw))
    if not isinstance(payload, dict):
        raise MalformedMessage(f"Unexpected kline payload type: {type(payload).__name__}")
    if payload.get("e") != "kline":
        return None

    try:
        k = payload["k"]
        candle = Candle(
            symbol=k["s"],
            interval=k["i"],
            bucket_start_time=int(k["t"]),
            open=Decimal(k["o"]),
            high=Decimal(k["h"]),
            low=Decimal(k["l"]),
            close=Decimal(k["c"]),
            volume=Decimal(k["v"]),
            is_closed=bool(k.get("x", False)),
        )
    except (KeyError, TypeError, ValueError, InvalidOperation) as e:
        raise MalformedMessage(f"Invalid kline event: {e!r}") from e

    if candle.symbol != symbol or candle.interval != interval:
        raise MalformedMessage(
            f"Kline for {candle.symbol}/{candle.interval} on {symbol}/{interval} channel"
        )
    start = candle.bucket_start_time
    if align_bucket(start, interval) != start:
        raise MalformedMessage(f"Kline start {start} is not aligned to {interval}")
    return candle


def parse_ticker_event(raw: Union[str, bytes, dict]) -> Optional[Ticker]:
    """Parse a 24hr ticker stream event (plain or combined-stream)"""
    payload = _unwrap(_load(raw))
    if not isinstance(payload, dict):
        raise MalformedMessage(f"Unexpected ticker payload type: {type(payload).__name__}")
    if payload.get("e") != "24hrTicker":
        return None

    try:
        return Ticker(
            symbol=payload["s"],
            last_price=Decimal(payload["c"]),
            price_change_percent=Decimal(payload["P"]),
            updated_at=int(payload.get("E") or now_ms()),
            price_change=Decimal(payload["p"]),
            high=Decimal(payload["h"]),
            low=Decimal(payload["l"]),
            volume=Decimal(payload["v"]),
        )
    except (KeyError, TypeError, ValueError, InvalidOperation) as e:
        raise MalformedMessage(f"Invalid ticker event: {e!r}") from e


def parse_rest_ticker(data: dict) -> Ticker:
    """Convert one /ticker/24hr entry to a Ticker"""
    return Ticker(
        symbol=data["symbol"],
        last_price=Decimal(data["lastPrice"]),
        price_change_percent=Decimal(data["priceChangePercent"]),
        updated_at=int(data.get("closeTime") or now_ms()),
        price_change=Decimal(data["priceChange"]),
        high=Decimal(data["highPrice"]),
        low=Decimal(data["lowPrice"]),
        volume=Decimal(data["volume"]),
    )


class BinanceRestClient:
    """
    Async REST client for Binance market data.

    Owns one aiohttp session, created on first use. Every failure is
    reported as FetchError with a reason the read model can show.
    """

    def __init__(self, rest_url: str = DEFAULT_REST_URL, request_timeout: float = 10.0):
        self.rest_url = rest_url.rstrip("/")
        self.request_timeout = request_timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get(self, path: str, params: dict) -> Any:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )

        url = f"{self.rest_url}/{path}"
        try:
            async with self._session.get(url, params=params) as response:
                if response.status != 200:
                    body = await response.text()
                    raise FetchError(
                        f"GET {path} returned {response.status}: {body[:200]}",
                        reason=FetchError.HTTP,
                    )
                return await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise FetchError(f"GET {path} timed out", reason=FetchError.TIMEOUT) from e
        except aiohttp.ClientError as e:
            raise FetchError(f"GET {path} failed: {e}", reason=FetchError.NETWORK) from e
        except ValueError as e:
            raise FetchError(f"GET {path} returned invalid JSON: {e}", reason=FetchError.PARSE) from e

    async def fetch_klines(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        """Fetch up to `limit` most recent candles"""
        rows = await self._get(
            "klines",
            {"symbol": symbol.upper(), "interval": interval, "limit": limit},
        )
        try:
            candles = [parse_rest_kline(row, symbol, interval) for row in rows]
        except (IndexError, KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise FetchError(f"Invalid kline rows for {symbol} {interval}: {e!r}", reason=FetchError.PARSE) from e

        logger.debug(f"Fetched {len(candles)} klines for {symbol} {interval} (limit={limit})")
        return candles

    async def fetch_tickers(self, symbols: list[str]) -> list[Ticker]:
        """Fetch 24h tickers for all given symbols in one request"""
        symbols_param = json.dumps([s.upper() for s in symbols], separators=(",", ":"))
        data = await self._get("ticker/24hr", {"symbols": symbols_param})
        if isinstance(data, dict):
            data = [data]
        try:
            return [parse_rest_ticker(item) for item in data]
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise FetchError(f"Invalid ticker payload: {e!r}", reason=FetchError.PARSE) from e

    async def close(self) -> None:
        """Close the HTTP session"""
        if self._session is not None and not self._session.closed:
            await self._session.close()
            logger.info("Binance REST session closed")
        self._session = None
