"""
Query Layer

HTTP read access to the synchronized market data.
"""
