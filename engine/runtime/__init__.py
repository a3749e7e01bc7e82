"""
Runtime Module

Chart subscription lifecycle and ticker aggregation.
"""

from .lifecycle import ChartSubscriptionManager, ChartView, SubscriptionHandle
from .tickers import TickerAggregator

__all__ = [
    "ChartSubscriptionManager",
    "ChartView",
    "SubscriptionHandle",
    "TickerAggregator",
]
