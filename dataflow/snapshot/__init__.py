"""
Snapshot Fetcher

Bounded historical candle windows from a request/response source.
"""

from dataflow.snapshot.fetcher import SnapshotFetcher, SnapshotSource

__all__ = ["SnapshotFetcher", "SnapshotSource"]
