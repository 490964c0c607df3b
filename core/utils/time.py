"""
Time Utilities

All range arithmetic in the engine is done on integer epoch milliseconds.
The provider speaks epoch seconds; conversions happen at the provider edge,
so this module only holds the clock and the bucket-grid helpers.
"""

import time


def current_utc_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def align_to_grid(ms: int, width_ms: int) -> int:
    """
    Align a timestamp down to the start of its bucket.

    Example:
        >>> align_to_grid(1_000_123, 60_000)
        960000
    """
    if width_ms <= 0:
        raise ValueError(f"Bucket width must be positive, got {width_ms}")
    return (ms // width_ms) * width_ms


def expected_bar_count(start_ms: int, end_ms: int, width_ms: int) -> int:
    """Number of bucket starts in the grid-aligned range [start_ms, end_ms)."""
    start = align_to_grid(start_ms, width_ms)
    end = align_to_grid(end_ms, width_ms)
    if end <= start:
        return 0
    return (end - start) // width_ms
