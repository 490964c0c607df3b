"""
Core Utilities Package

Modules:
    - time: Wall clock and bucket-grid helpers
    - symbols: Pair normalization and base/quote splitting
"""

from core.utils.time import align_to_grid, current_utc_ms, expected_bar_count
from core.utils.symbols import normalize_symbol, split_symbol

__all__ = ["align_to_grid", "current_utc_ms", "expected_bar_count", "normalize_symbol", "split_symbol"]
