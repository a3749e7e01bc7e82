"""
Market Data Errors

Error taxonomy for the synchronization layer. Only FetchError ever reaches a
consumer (through the read model's error field); the others are handled
inside the layer.
"""


class MarketDataError(Exception):
    """Base class for market data synchronization errors"""


class FetchError(MarketDataError):
    """Snapshot request failed or timed out"""

    TIMEOUT = "timeout"
    NETWORK = "network"
    HTTP = "http"
    PARSE = "parse"

    def __init__(self, message: str, reason: str = NETWORK):
        super().__init__(message)
        self.reason = reason

    def __str__(self) -> str:
        return f"{super().__str__()} ({self.reason})"


class StreamError(MarketDataError):
    """Push connection dropped or could not be opened"""


class StreamClosed(StreamError):
    """Push connection was closed by the remote end"""


class MalformedMessage(MarketDataError):
    """A single stream message could not be parsed"""
