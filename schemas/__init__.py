"""
Market Data Schemas

Typed message catalog shared by snapshot sources, stream transports and the
read model.
"""

from schemas.market_data import (
    TIMEFRAMES,
    Candle,
    Ticker,
    align_bucket,
    interval_ms,
)

__all__ = [
    "TIMEFRAMES",
    "Candle",
    "Ticker",
    "align_bucket",
    "interval_ms",
]
