"""
Stream Subscriber

Reconnecting push subscriptions over WebSocket or NATS.
"""

from dataflow.stream.backoff import BackoffPolicy
from dataflow.stream.subscriber import StreamState, StreamSubscriber
from dataflow.stream.transports import (
    NatsTransport,
    StreamConnection,
    StreamTransport,
    WebSocketTransport,
)

__all__ = [
    "BackoffPolicy",
    "StreamState",
    "StreamSubscriber",
    "StreamConnection",
    "StreamTransport",
    "WebSocketTransport",
    "NatsTransport",
]
