"""
Config Module

YAML market sync configuration loading and validation.
"""

from .loader import (
    ConfigLoader,
    SyncConfig,
    SnapshotSettings,
    BackoffSettings,
    ChartSettings,
    TickerSettings,
    BinanceSettings,
    TimescaleSettings,
)

__all__ = [
    "ConfigLoader",
    "SyncConfig",
    "SnapshotSettings",
    "BackoffSettings",
    "ChartSettings",
    "TickerSettings",
    "BinanceSettings",
    "TimescaleSettings",
]
