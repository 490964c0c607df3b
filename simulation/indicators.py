"""
Technical Indicators

Batch helpers return one value per input (None until the period is filled);
EmaTracker updates incrementally as candles stream in.
"""

from typing import List, Optional, Sequence


def sma(values: Sequence[float], period: int) -> List[Optional[float]]:
    if period <= 0:
        raise ValueError(f"period must be positive, got {period}")
    out: List[Optional[float]] = []
    window_sum = 0.0
    for i, value in enumerate(values):
        window_sum += value
        if i >= period:
            window_sum -= values[i - period]
        out.append(window_sum / period if i >= period - 1 else None)
    return out


def ema(values: Sequence[float], period: int) -> List[Optional[float]]:
    """Exponential moving average seeded with the SMA of the first period."""
    tracker = EmaTracker(period)
    return [tracker.update(v) for v in values]


class EmaTracker:
    def __init__(self, period: int):
        if period <= 0:
            raise ValueError(f"period must be positive, got {period}")
        self.period = period
        self.multiplier = 2.0 / (period + 1)
        self.value: Optional[float] = None
        self._seed: List[float] = []

    def update(self, price: float) -> Optional[float]:
        if self.value is None:
            self._seed.append(price)
            if len(self._seed) == self.period:
                self.value = sum(self._seed) / self.period
                self._seed = []
            return self.value
        self.value = (price - self.value) * self.multiplier + self.value
        return self.value

    @property
    def ready(self) -> bool:
        return self.value is not None
