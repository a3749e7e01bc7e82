"""
Candle Window

Fixed-capacity candle series and the reducer that folds live updates into it.
"""

from dataflow.candle_window.merger import (
    DEFAULT_CAPACITY,
    CandleSeries,
    MergeAction,
    MergeOutcome,
    merge_candle,
    merge_candles,
)

__all__ = [
    "DEFAULT_CAPACITY",
    "CandleSeries",
    "MergeAction",
    "MergeOutcome",
    "merge_candle",
    "merge_candles",
]
