"""
Candle Loader

Serves historical chart requests on top of a CandleSource:

    1. Normalize symbol/timeframe and align the range to the bucket grid
    2. Keep at most ``max_bars`` of the most recent bars
    3. Fetch only the buckets the cache does not hold, then retry the
       still-missing ranges once
    4. Optionally fill what is still missing from a fallback source
    5. Report whatever remains as gaps rather than hiding it

Usage:
    loader = CandleLoader(get_candle_source(), CandleCache())
    result = await loader.load("BTCUSDT", "1h", start_ms, end_ms)
    result.gaps   # [] when the range is fully covered
"""

import asyncio
from typing import Dict, List, Optional, Sequence, Tuple

from core.candle_source import CandleSource
from core.config import settings
from core.errors import ProviderError
from core.logging import get_logger
from core.schemas import Candle, GapInfo, LoadCandlesResult, Timeframe
from core.utils.symbols import normalize_symbol
from core.utils.time import align_to_grid, expected_bar_count
from market_data.aggregate import aggregate_candles, resolve_downsample_timeframe
from storage.candle_cache import CandleCache

logger = get_logger(__name__)

FETCH_PASSES = 2
GAP_REASON = "missing_candles_after_retry"


class CandleLoader:
    def __init__(
        self,
        source: CandleSource,
        cache: Optional[CandleCache] = None,
        fallback: Optional[CandleSource] = None,
        max_bars: Optional[int] = None,
    ):
        self.source = source
        self.cache = cache or CandleCache()
        self.fallback = fallback
        self.max_bars = max_bars or settings.max_bars

    async def load(self, symbol: str, timeframe: Timeframe, start_ms: int, end_ms: int) -> LoadCandlesResult:
        """
        Load candles for [start_ms, end_ms) with gap reporting.

        Raises:
            ValueError: Unsupported timeframe or empty range
        """
        key = normalize_symbol(symbol)
        tf = Timeframe.parse(timeframe)
        start, end = self._aligned_range(tf, start_ms, end_ms)

        fetched = False
        for attempt in range(FETCH_PASSES):
            missing = self.cache.find_missing_ranges(self.source.name, key, tf, start, end)
            if not missing:
                break
            if attempt > 0:
                logger.info(f"Retrying {len(missing)} missing range(s) for {key} {tf.value}")
            for range_start, range_end in missing:
                await self._fetch_into_cache(key, tf, range_start, range_end)
            fetched = True

        candles = self.cache.get_range(self.source.name, key, tf, start, end)
        missing = self.cache.find_missing_ranges(self.source.name, key, tf, start, end)
        label = f"cache+{self.source.name}" if fetched else "cache"

        if missing and self.fallback is not None:
            filled = await self._fill_from_fallback(key, tf, missing)
            if filled:
                by_ts: Dict[int, Candle] = {c.timestamp_ms: c for c in candles}
                for candle in filled:
                    by_ts.setdefault(candle.timestamp_ms, candle)
                candles = [by_ts[ts] for ts in sorted(by_ts)]
                missing = _missing_runs(set(by_ts), start, end, tf.ms)
                label = f"{label}+{self.fallback.name}"

        gaps = build_gaps(missing, tf)
        if gaps:
            logger.warning(f"{key} {tf.value}: {sum(g.missing_bars for g in gaps)} bar(s) missing in {len(gaps)} gap(s)")

        return LoadCandlesResult(symbol=key, timeframe=tf, candles=candles, gaps=gaps, source=label)

    async def load_for_chart(
        self,
        symbol: str,
        timeframe: Timeframe,
        start_ms: int,
        end_ms: int,
        max_bars: int
    ) -> LoadCandlesResult:
        """
        Load for display, escalating the timeframe when the range is too long.

        Finer candles are aggregated when they fit in the loader's own bar
        budget; otherwise the coarser timeframe is loaded directly.
        """
        requested = Timeframe.parse(timeframe)
        target = resolve_downsample_timeframe(requested, start_ms, end_ms, max_bars)
        if target == requested:
            return await self.load(symbol, requested, start_ms, end_ms)

        if expected_bar_count(start_ms, end_ms, requested.ms) <= self.max_bars:
            fine = await self.load(symbol, requested, start_ms, end_ms)
            result = LoadCandlesResult(
                symbol=fine.symbol,
                timeframe=target,
                candles=aggregate_candles(fine.candles, target),
                gaps=fine.gaps,
                source=fine.source,
            )
        else:
            result = await self.load(symbol, target, start_ms, end_ms)

        logger.debug(f"Downsampled {symbol} {requested.value} -> {target.value}")
        return result.model_copy(update={"requested_timeframe": requested, "downsampled": True})

    async def load_many(self, requests: Sequence[Tuple[str, Timeframe, int, int]]) -> List[LoadCandlesResult]:
        """Run independent loads concurrently; each keeps its own retry state."""
        return list(await asyncio.gather(*(self.load(*request) for request in requests)))

    # ============================================
    # Internals
    # ============================================

    def _aligned_range(self, tf: Timeframe, start_ms: int, end_ms: int) -> Tuple[int, int]:
        if end_ms <= start_ms:
            raise ValueError(f"end_ms ({end_ms}) must be greater than start_ms ({start_ms})")
        width = tf.ms
        start = align_to_grid(start_ms, width)
        end = -(-end_ms // width) * width
        bars = (end - start) // width
        if bars > self.max_bars:
            start = end - self.max_bars * width
            logger.warning(f"Range of {bars} bars truncated to the most recent {self.max_bars}")
        return start, end

    async def _fetch_into_cache(self, symbol: str, tf: Timeframe, start_ms: int, end_ms: int) -> None:
        try:
            candles = await self.source.fetch_candles(symbol, tf, start_ms, end_ms)
        except ProviderError as e:
            logger.warning(f"{self.source.name} failed for {symbol} {tf.value} [{start_ms}, {end_ms}): {e}")
            return
        self.cache.upsert(self.source.name, symbol, tf, candles)

    async def _fill_from_fallback(self, symbol: str, tf: Timeframe, missing: List[Tuple[int, int]]) -> List[Candle]:
        filled: List[Candle] = []
        for range_start, range_end in missing:
            candles = await self.fallback.fetch_candles(symbol, tf, range_start, range_end)
            self.cache.upsert(self.fallback.name, symbol, tf, candles)
            filled.extend(candles)
        return filled


def _missing_runs(present: set, start_ms: int, end_ms: int, width: int) -> List[Tuple[int, int]]:
    runs: List[Tuple[int, int]] = []
    run_start = None
    for ts in range(start_ms, end_ms, width):
        if ts in present:
            if run_start is not None:
                runs.append((run_start, ts))
                run_start = None
        elif run_start is None:
            run_start = ts
    if run_start is not None:
        runs.append((run_start, end_ms))
    return runs


def build_gaps(missing: List[Tuple[int, int]], timeframe: Timeframe) -> List[GapInfo]:
    width = Timeframe.parse(timeframe).ms
    gaps = []
    for start, end in missing:
        bars = expected_bar_count(start, end, width) or 1
        gaps.append(GapInfo(start_ms=start, end_ms=end, expected_bars=bars, missing_bars=bars, reason=GAP_REASON))
    return gaps
