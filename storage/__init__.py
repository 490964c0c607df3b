"""
Storage Package

Handles candle caching between the loader and the candle sources.

Current implementation:
- In-memory candle cache keyed by (source, symbol, timeframe)
"""

from storage.candle_cache import CandleCache

__all__ = ["CandleCache"]
