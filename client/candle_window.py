"""
Client-Side Candle Window and Trade Markers

RollingCandleWindow is an ordered map keyed by candle timestamp with a fixed
capacity. Candle events are upserted, never blindly appended:

    same timestamp as an existing entry  -> replace in place (bucket still live)
    newer than the last entry            -> append
    older / out of order                 -> binary insert
    over capacity                        -> drop the oldest entries

TradeMarkerBuffer turns ``trade`` events into entry/exit chart markers,
keeping only the most recent ``max_markers``.
"""

import bisect
from collections import deque
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from core.schemas import Candle, TradeMarker


class UpsertResult(str, Enum):
    REPLACED = "replaced"
    APPENDED = "appended"
    INSERTED = "inserted"


class RollingCandleWindow:
    def __init__(self, max_size: int = 500):
        if max_size <= 0:
            raise ValueError(f"max_size must be positive, got {max_size}")
        self.max_size = max_size
        self._timestamps: List[int] = []
        self._candles: Dict[int, Candle] = {}

    def upsert(self, candle: Candle) -> UpsertResult:
        ts = candle.timestamp_ms
        if ts in self._candles:
            self._candles[ts] = candle
            return UpsertResult.REPLACED

        if not self._timestamps or ts > self._timestamps[-1]:
            self._timestamps.append(ts)
            result = UpsertResult.APPENDED
        else:
            bisect.insort(self._timestamps, ts)
            result = UpsertResult.INSERTED
        self._candles[ts] = candle

        overflow = len(self._timestamps) - self.max_size
        if overflow > 0:
            for old in self._timestamps[:overflow]:
                del self._candles[old]
            del self._timestamps[:overflow]
        return result

    def candles(self) -> List[Candle]:
        return [self._candles[ts] for ts in self._timestamps]

    def latest(self) -> Optional[Candle]:
        return self._candles[self._timestamps[-1]] if self._timestamps else None

    def clear(self) -> None:
        self._timestamps.clear()
        self._candles.clear()

    def __len__(self) -> int:
        return len(self._timestamps)

    def __contains__(self, timestamp_ms: int) -> bool:
        return timestamp_ms in self._candles


class TradeMarkerBuffer:
    def __init__(self, max_markers: int = 200):
        self._markers: Deque[TradeMarker] = deque(maxlen=max_markers)

    def add_trade(self, trade: Dict[str, Any], exit_ts: int, width_ms: int) -> List[TradeMarker]:
        """
        Add the entry and exit markers of one closed trade.

        The entry sits ``hold_bars`` buckets before the exit.
        """
        hold_bars = int(trade.get("hold_bars", 0))
        side = trade.get("side", "LONG")
        net_pnl = float(trade.get("net_pnl", 0.0))
        entry = TradeMarker(
            timestamp_ms=max(0, exit_ts - hold_bars * width_ms),
            price=float(trade["entry_price"]),
            kind="entry",
            side=side,
            label=f"{side} entry",
        )
        exit_ = TradeMarker(
            timestamp_ms=exit_ts,
            price=float(trade["exit_price"]),
            kind="exit",
            side=side,
            label=f"exit {net_pnl:+.2f} ({trade.get('reason', '')})".replace(" ()", ""),
        )
        self._markers.append(entry)
        self._markers.append(exit_)
        return [entry, exit_]

    def markers(self) -> List[TradeMarker]:
        return list(self._markers)

    def __len__(self) -> int:
        return len(self._markers)
