"""
In-Memory Candle Cache

Keeps fetched candles per (source, symbol, timeframe) series so repeated chart
loads only go to the provider for buckets that have never been seen.
Writes are upserts: a refetched bucket replaces the cached candle.
"""

from typing import Dict, List, Tuple

from core.logging import get_logger
from core.schemas import Candle, Timeframe
from core.utils.time import align_to_grid

SeriesKey = Tuple[str, str, str]


class CandleCache:
    def __init__(self) -> None:
        self._series: Dict[SeriesKey, Dict[int, Candle]] = {}
        self._logger = get_logger(__name__)

    @staticmethod
    def _key(source: str, symbol: str, timeframe: Timeframe) -> SeriesKey:
        return (source, symbol, Timeframe.parse(timeframe).value)

    def upsert(self, source: str, symbol: str, timeframe: Timeframe, candles: List[Candle]) -> int:
        """Insert or replace candles; returns how many were written."""
        if not candles:
            return 0
        series = self._series.setdefault(self._key(source, symbol, timeframe), {})
        for candle in candles:
            series[candle.timestamp_ms] = candle
        self._logger.debug(f"Cached {len(candles)} candles for {source}:{symbol}:{timeframe}")
        return len(candles)

    def get_range(self, source: str, symbol: str, timeframe: Timeframe, start_ms: int, end_ms: int) -> List[Candle]:
        """Cached candles with start_ms <= ts < end_ms, sorted ascending."""
        series = self._series.get(self._key(source, symbol, timeframe), {})
        return [series[ts] for ts in sorted(series) if start_ms <= ts < end_ms]

    def find_missing_ranges(
        self,
        source: str,
        symbol: str,
        timeframe: Timeframe,
        start_ms: int,
        end_ms: int
    ) -> List[Tuple[int, int]]:
        """
        Maximal [start, end) runs of grid buckets absent from the cache.

        Example:
            cached 0 and 120000 on a 1m grid, range [0, 240000)
            -> [(60000, 120000), (180000, 240000)]
        """
        width = Timeframe.parse(timeframe).ms
        series = self._series.get(self._key(source, symbol, timeframe), {})

        missing: List[Tuple[int, int]] = []
        run_start = None
        ts = align_to_grid(start_ms, width)
        if ts < start_ms:
            ts += width
        while ts < end_ms:
            if ts in series:
                if run_start is not None:
                    missing.append((run_start, ts))
                    run_start = None
            elif run_start is None:
                run_start = ts
            ts += width
        if run_start is not None:
            missing.append((run_start, end_ms))
        return missing

    def clear(self) -> None:
        self._series.clear()

    def stats(self) -> Dict[str, int]:
        return {
            "series": len(self._series),
            "candles": sum(len(s) for s in self._series.values()),
        }
