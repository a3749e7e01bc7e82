"""
Stream Subscriber

Owns one push connection for one channel and keeps it alive.

State machine:
    CONNECTING -> OPEN -> (CLOSED | ERRORED)

While subscribed, a CLOSED or ERRORED connection is reopened after a backoff
delay and messages keep flowing to the same callback. unsubscribe() is
terminal: once it returns the callback is never invoked again.
"""

import asyncio
import logging
import random
from enum import Enum
from typing import Any, Callable, Dict, Optional

from dataflow.errors import MalformedMessage, StreamClosed, StreamError
from dataflow.stream.backoff import BackoffPolicy
from dataflow.stream.transports import RawMessage, StreamTransport

logger = logging.getLogger(__name__)


class StreamState(Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERRORED = "errored"


class StreamSubscriber:
    """
    Reconnecting subscriber for a single channel.

    Example usage:
        subscriber = StreamSubscriber(
            transport=WebSocketTransport(DEFAULT_WS_URL),
            channel="ws/btcusdt@kline_15m",
            parser=lambda raw: parse_kline_event(raw, "BTCUSDT", "15m"),
            callback=on_candle,
        )
        subscriber.start()
        ...
        subscriber.unsubscribe()
    """

    def __init__(
        self,
        transport: StreamTransport,
        channel: str,
        parser: Callable[[RawMessage], Any],
        callback: Callable[[Any], None],
        backoff: Optional[BackoffPolicy] = None,
        on_state_change: Optional[Callable[["StreamSubscriber"], None]] = None,
        name: Optional[str] = None,
        rng: Callable[[], float] = random.random,
    ):
        """
        Args:
            transport: Opens connections for the channel
            channel: Channel/topic to subscribe to
            parser: Turns a raw message into an item; returns None for control
                frames and raises MalformedMessage for bad payloads
            callback: Receives every parsed item, in delivery order
            backoff: Reconnect schedule (defaults to BackoffPolicy())
            on_state_change: Called after every state or degraded change
            name: Label used in log messages (defaults to the channel)
            rng: Jitter source, 0 <= rng() < 1
        """
        self.transport = transport
        self.channel = channel
        self.parser = parser
        self.callback = callback
        self.backoff = backoff or BackoffPolicy()
        self.on_state_change = on_state_change
        self.name = name or channel
        self._rng = rng

        self.state = StreamState.CONNECTING
        self.degraded = False
        self.attempts = 0  # consecutive failed connections
        self.last_delay: Optional[float] = None
        self.messages_received = 0
        self.messages_dropped = 0

        self._started = False
        self._closed = False
        self._task: Optional[asyncio.Task] = None

    @property
    def subscribed(self) -> bool:
        return self._started and not self._closed

    @property
    def finished(self) -> bool:
        """True once the connection task (if any) has exited"""
        return self._task is None or self._task.done()

    def start(self) -> None:
        """Schedule the connection task on the running loop"""
        if self._started or self._closed:
            return
        self._started = True
        self._task = asyncio.get_running_loop().create_task(self._run())

    def unsubscribe(self) -> None:
        """
        Stop delivering and tear the connection down.

        Idempotent. Local state is updated immediately; the socket is closed
        by the cancelled task shortly after.
        """
        if self._closed:
            return
        self._closed = True
        self.state = StreamState.CLOSED
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.debug(f"Unsubscribed from {self.name}")

    async def wait_closed(self) -> None:
        """Wait until the connection task has finished"""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "state": self.state.value,
            "degraded": self.degraded,
            "attempts": self.attempts,
            "messages_received": self.messages_received,
            "messages_dropped": self.messages_dropped,
        }

    async def _run(self) -> None:
        while self.subscribed:
            self._set_state(StreamState.CONNECTING)
            conn = None
            try:
                conn = await self.transport.open(self.channel)
                if not self.subscribed:
                    break

                self.attempts = 0
                self._set_degraded(False)
                self._set_state(StreamState.OPEN)
                logger.info(f"Stream open: {self.name}")

                while self.subscribed:
                    raw = await conn.recv()
                    self._dispatch(raw)

            except StreamClosed as e:
                logger.info(f"Stream closed: {self.name}: {e}")
                self._set_state(StreamState.CLOSED)
            except StreamError as e:
                logger.warning(f"Stream error on {self.name}: {e}")
                self._set_state(StreamState.ERRORED)
            except Exception as e:
                logger.error(f"Unexpected error on {self.name}: {e}", exc_info=True)
                self._set_state(StreamState.ERRORED)
            finally:
                if conn is not None:
                    await conn.close()

            if not self.subscribed:
                break
            await self._wait_before_reconnect()

        self.state = StreamState.CLOSED

    async def _wait_before_reconnect(self) -> None:
        delay = self.backoff.delay(self.attempts, self._rng)
        self.attempts += 1
        self.last_delay = delay
        if self.attempts >= self.backoff.degraded_after and not self.degraded:
            logger.warning(
                f"Stream {self.name} failed {self.attempts} times in a row, data is stale"
            )
            self._set_degraded(True)

        logger.warning(f"Reconnecting {self.name} in {delay:.2f}s (attempt {self.attempts})")
        await asyncio.sleep(delay)

    def _dispatch(self, raw: RawMessage) -> None:
        try:
            item = self.parser(raw)
        except MalformedMessage as e:
            self.messages_dropped += 1
            logger.warning(f"Dropping malformed message on {self.name}: {e}")
            return
        except Exception as e:
            # A parser bug drops the message, never the connection
            self.messages_dropped += 1
            logger.warning(f"Dropping unparseable message on {self.name}: {e!r}", exc_info=True)
            return

        if item is None or not self.subscribed:
            return

        self.messages_received += 1
        try:
            self.callback(item)
        except Exception as e:
            logger.error(f"Callback failed on {self.name}: {e}", exc_info=True)

    def _set_state(self, state: StreamState) -> None:
        if state == self.state:
            return
        self.state = state
        self._notify()

    def _set_degraded(self, degraded: bool) -> None:
        if degraded == self.degraded:
            return
        self.degraded = degraded
        self._notify()

    def _notify(self) -> None:
        if self.on_state_change is None or not self.subscribed:
            return
        try:
            self.on_state_change(self)
        except Exception as e:
            logger.error(f"State listener failed on {self.name}: {e}", exc_info=True)
