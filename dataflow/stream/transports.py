"""
Stream Transports

Push connections the stream subscriber reads from. A transport opens one
connection per channel; a connection yields raw messages until it fails.
Every transport-level failure is raised as StreamError; a remote close is the
StreamClosed subclass.
"""

import asyncio
import logging
from typing import Protocol, Union

import nats.errors
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from dataflow.adapters.nats_client import NatsClient
from dataflow.errors import StreamClosed, StreamError

logger = logging.getLogger(__name__)

RawMessage = Union[str, bytes]


class StreamConnection(Protocol):
    async def recv(self) -> RawMessage:
        """Next raw message; raises StreamError when the connection is gone"""
        ...

    async def close(self) -> None:
        ...


class StreamTransport(Protocol):
    async def open(self, channel: str) -> StreamConnection:
        """Open a connection for a channel; raises StreamError on failure"""
        ...


class WebSocketConnection:
    """Single WebSocket connection"""

    def __init__(self, ws, url: str):
        self._ws = ws
        self.url = url

    async def recv(self) -> RawMessage:
        try:
            return await self._ws.recv()
        except ConnectionClosed as e:
            raise StreamClosed(f"WebSocket closed: {e}") from e

    async def close(self) -> None:
        try:
            await self._ws.close()
        except WebSocketException as e:
            logger.debug(f"Error closing {self.url}: {e}")


class WebSocketTransport:
    """
    WebSocket transport (Binance-style endpoints).

    The channel is appended to the base URL, e.g. `ws/btcusdt@kline_15m`.
    """

    def __init__(
        self,
        base_url: str,
        ping_interval: float = 20.0,
        ping_timeout: float = 20.0,
        open_timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.open_timeout = open_timeout

    async def open(self, channel: str) -> WebSocketConnection:
        url = f"{self.base_url}/{channel}"
        try:
            ws = await websockets.connect(
                url,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
                open_timeout=self.open_timeout,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise StreamError(f"Failed to connect to {url}: {e}") from e
        logger.info(f"WebSocket connected: {url}")
        return WebSocketConnection(ws, url)


class NatsConnection:
    """Pull-style subscription on a NATS subject"""

    def __init__(self, subscription, subject: str):
        self._sub = subscription
        self.subject = subject

    async def recv(self) -> RawMessage:
        try:
            msg = await self._sub.next_msg(timeout=None)
        except nats.errors.Error as e:
            raise StreamClosed(f"NATS subscription {self.subject} ended: {e}") from e
        return msg.data

    async def close(self) -> None:
        try:
            await self._sub.unsubscribe()
        except nats.errors.Error as e:
            logger.debug(f"Error unsubscribing from {self.subject}: {e}")


class NatsTransport:
    """NATS transport; the channel is a subject such as candles.ES.5m"""

    def __init__(self, client: NatsClient):
        self.client = client

    async def open(self, channel: str) -> NatsConnection:
        try:
            sub = await self.client.subscribe(channel)
        except (OSError, nats.errors.Error) as e:
            raise StreamError(f"Failed to subscribe to {channel}: {e}") from e
        return NatsConnection(sub, channel)
