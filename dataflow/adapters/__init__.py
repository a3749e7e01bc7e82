"""
Market Data Adapters

Clients for the upstream sources: Binance REST/WebSocket payloads, the
ingestion pipeline's TimescaleDB table and its NATS topics.
"""

from dataflow.adapters.nats_client import NatsClient, NatsConfig, Topics
from dataflow.adapters.binance import BinanceRestClient
from dataflow.adapters.pipeline import TimescaleSnapshotSource

__all__ = [
    "NatsClient",
    "NatsConfig",
    "Topics",
    "BinanceRestClient",
    "TimescaleSnapshotSource",
]
