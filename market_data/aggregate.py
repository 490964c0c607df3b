"""
Candle Downsampling

Charts cap the number of bars they render. When a request spans more bars
than allowed, the timeframe is escalated (1m -> 15m -> 1h -> 1d) and finer
candles are folded into the coarser buckets.
"""

from typing import List

from core.schemas import Candle, Timeframe
from core.utils.time import align_to_grid, expected_bar_count

ESCALATION = [Timeframe.M1, Timeframe.M15, Timeframe.H1, Timeframe.D1]


def resolve_downsample_timeframe(requested: Timeframe, start_ms: int, end_ms: int, max_bars: int) -> Timeframe:
    """
    Smallest timeframe at or above ``requested`` whose bar count fits max_bars.

    Falls back to 1d when nothing fits.
    """
    requested = Timeframe.parse(requested)
    for tf in ESCALATION[ESCALATION.index(requested):]:
        if expected_bar_count(start_ms, end_ms, tf.ms) <= max_bars:
            return tf
    return Timeframe.D1


def aggregate_candles(candles: List[Candle], timeframe: Timeframe) -> List[Candle]:
    """
    Fold ascending candles into ``timeframe`` buckets.

    open = first open, close = last close, high/low = extremes, volume = sum.
    """
    width = Timeframe.parse(timeframe).ms
    result: List[Candle] = []
    bucket_ts = None
    group: List[Candle] = []

    for candle in candles:
        ts = align_to_grid(candle.timestamp_ms, width)
        if bucket_ts is not None and ts != bucket_ts:
            result.append(_fold(bucket_ts, group))
            group = []
        bucket_ts = ts
        group.append(candle)

    if group:
        result.append(_fold(bucket_ts, group))
    return result


def _fold(ts: int, group: List[Candle]) -> Candle:
    return Candle(
        timestamp_ms=ts,
        open=group[0].open,
        high=max(c.high for c in group),
        low=min(c.low for c in group),
        close=group[-1].close,
        volume=sum(c.volume for c in group),
    )
