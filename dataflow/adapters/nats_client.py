"""
NATS Client Adapter

Async NATS client used when candles and tickers come from the ingestion
pipeline instead of an exchange WebSocket. Subscriptions are handed out as
pull-style objects so the stream subscriber can own the receive loop.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Optional
import nats
from nats.aio.client import Client as NatsConnection
from nats.aio.subscription import Subscription

logger = logging.getLogger(__name__)


@dataclass
class NatsConfig:
    """NATS connection configuration"""
    servers: list[str] = field(default_factory=lambda: ["nats://localhost:4222"])
    name: str = "kline-sync"
    reconnect_time_wait: float = 2.0
    max_reconnect_attempts: int = -1  # Infinite reconnects
    ping_interval: int = 20
    max_outstanding_pings: int = 3

    @classmethod
    def from_env(cls, prefix: str = "NATS") -> "NatsConfig":
        """Create config from environment variables"""
        servers = os.getenv(f"{prefix}_SERVERS", "nats://localhost:4222")
        return cls(
            servers=servers.split(","),
            name=os.getenv(f"{prefix}_CLIENT_NAME", "kline-sync"),
        )


class NatsClient:
    """
    Async NATS client wrapper for the sync layer.

    The underlying client reconnects on its own; subscriptions survive those
    reconnects. Only a closed connection is reported to subscribers.

    Topic Patterns:
    - candles.{symbol}.{tf}       - Aggregated candles (partial and closed)
    - tickers.{symbol}            - Scalar price tickers
    """

    def __init__(self, config: Optional[NatsConfig] = None):
        self.config = config or NatsConfig()
        self._nc: Optional[NatsConnection] = None
        self._connected = False
        self._connect_lock: Optional[asyncio.Lock] = None

    @property
    def is_connected(self) -> bool:
        """Check if client is connected"""
        return self._connected and self._nc is not None and self._nc.is_connected

    async def connect(self) -> None:
        """Establish connection to NATS server, sharing it between concurrent callers"""
        if self._connected:
            return
        if self._connect_lock is None:
            self._connect_lock = asyncio.Lock()
        async with self._connect_lock:
            # A reconnecting client still owns its subscriptions
            if self._connected or (self._nc is not None and not self._nc.is_closed):
                return
            await self._connect()

    async def _connect(self) -> None:
        async def error_handler(e):
            logger.error(f"NATS error: {e}")

        async def closed_handler():
            logger.warning("NATS connection closed")
            self._connected = False

        async def reconnected_handler():
            logger.info("NATS reconnected")
            self._connected = True

        async def disconnected_handler():
            logger.warning("NATS disconnected")
            self._connected = False

        try:
            self._nc = await nats.connect(
                servers=self.config.servers,
                name=self.config.name,
                reconnect_time_wait=self.config.reconnect_time_wait,
                max_reconnect_attempts=self.config.max_reconnect_attempts,
                ping_interval=self.config.ping_interval,
                max_outstanding_pings=self.config.max_outstanding_pings,
                error_cb=error_handler,
                closed_cb=closed_handler,
                reconnected_cb=reconnected_handler,
                disconnected_cb=disconnected_handler,
            )
            self._connected = True
            logger.info(f"Connected to NATS: {self.config.servers}")
        except Exception as e:
            logger.error(f"Failed to connect to NATS: {e}")
            raise

    async def close(self) -> None:
        """Close NATS connection"""
        if self._nc is None:
            return
        if not self._nc.is_closed:
            await self._nc.drain()
            logger.info("NATS connection closed")
        self._connected = False

    async def subscribe(self, subject: str) -> Subscription:
        """
        Subscribe to a NATS subject without a callback.

        Args:
            subject: NATS subject pattern (supports wildcards: *, >)

        Returns:
            Subscription to pull messages from with next_msg()
        """
        if not self._connected:
            await self.connect()
        sub = await self._nc.subscribe(subject)
        logger.info(f"Subscribed to {subject}")
        return sub


# Topic helpers
class Topics:
    """NATS topic name builders"""

    @staticmethod
    def _sanitize(name: str) -> str:
        """
        Sanitize a name for use in NATS topics.

        NATS topic segments can only contain alphanumeric characters,
        hyphens, and underscores. Anything else becomes an underscore.
        """
        return "".join(c if c.isalnum() or c in "-_" else "_" for c in name)

    @staticmethod
    def candles(symbol: str, timeframe: str) -> str:
        """Candle topic for a symbol and timeframe"""
        return f"candles.{Topics._sanitize(symbol)}.{timeframe}"

    @staticmethod
    def tickers(symbol: str) -> str:
        """Ticker topic for a symbol"""
        return f"tickers.{Topics._sanitize(symbol)}"

    @staticmethod
    def all_tickers() -> str:
        """Subscribe to all ticker symbols"""
        return "tickers.*"
