"""
Deterministic Candle Synthesizer

Generates realistic OHLCV series without any network I/O. Identical
arguments always produce identical candles, which makes the synthesizer the
default source for demos, backtests and simulated sessions.

How a candle is built:
    - bucket b = floor(ts / width)
    - price(x) = base + trend * x + sin(x / cycle_period) * cycle_amp
                 + pattern offset + seeded noise * pattern volatility
    - open = price at b, close = price at b + 1 (so close[b] == open[b + 1])
    - high/low = max/min over open, close and intrabar samples, widened by a
      seeded wiggle and clamped to the price floor
    - volume = volume_base + |close - open| * volume_scale + seeded noise

Randomness never comes from a shared generator: every draw is seeded from an
FNV-1a hash of "SYMBOL:bucket:salt", so concurrent calls cannot interfere.

Usage:
    synth = DeterministicCandleSynthesizer()
    candles = synth.generate("BTCUSDT", Timeframe.M15, 0, 15 * 60_000 * 12)
"""

import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Tuple

from core.candle_source import CandleSource
from core.schemas import Candle, Timeframe
from core.utils.symbols import normalize_symbol, split_symbol


PRICE_FLOOR = 0.0001
VOLUME_FLOOR = 0.01
INTRABAR_SAMPLES = 4

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193
MASK32 = 0xFFFFFFFF


# ============================================
# Seeded Randomness
# ============================================

def fnv1a_32(key: str) -> int:
    """32-bit FNV-1a hash of a string's UTF-8 bytes."""
    h = FNV_OFFSET_BASIS
    for byte in key.encode("utf-8"):
        h ^= byte
        h = (h * FNV_PRIME) & MASK32
    return h


class XorShift32:
    """
    Marsaglia xorshift32 generator.

    Instances are cheap and private to one draw site; use seed() to get one.
    """

    __slots__ = ("state",)

    def __init__(self, state: int):
        # zero is a fixed point of xorshift
        self.state = (state & MASK32) or 1

    def next_float(self) -> float:
        """Uniform value in [0, 1) with six decimal digits of resolution."""
        x = self.state
        x ^= (x << 13) & MASK32
        x ^= x >> 17
        x ^= (x << 5) & MASK32
        self.state = x
        return (x % 1_000_000) / 1_000_000


def seed(key: str) -> XorShift32:
    """Fresh generator seeded from a string key."""
    return XorShift32(fnv1a_32(key))


def seeded_uniform(key: str) -> float:
    return seed(key).next_float()


# ============================================
# Presets
# ============================================

@dataclass(frozen=True)
class SymbolPreset:
    """Static generation parameters for one base asset."""

    base: float
    trend_per_bucket: float
    cycle_period: float
    cycle_amp: float
    noise_amp: float
    pattern: str
    volume_base: float
    volume_scale: float
    volume_noise: float
    params: Mapping[str, float] = field(default_factory=dict)


PRESETS: Dict[str, SymbolPreset] = {
    "BTC": SymbolPreset(
        base=67000, trend_per_bucket=0.35, cycle_period=1440, cycle_amp=900, noise_amp=220,
        pattern="squeeze_breakout", volume_base=1200, volume_scale=55, volume_noise=220,
        params={"breakout_period": 720, "squeeze_bars": 360, "breakout_amp": 2800},
    ),
    "ETH": SymbolPreset(
        base=3400, trend_per_bucket=0.08, cycle_period=960, cycle_amp=120, noise_amp=45,
        pattern="mean_revert", volume_base=700, volume_scale=40, volume_noise=120,
        params={"range_period": 320, "range_amp": 95},
    ),
    "BNB": SymbolPreset(
        base=450, trend_per_bucket=0.03, cycle_period=1100, cycle_amp=18, noise_amp=10,
        pattern="trend_pullback", volume_base=240, volume_scale=18, volume_noise=60,
        params={"pullback_period": 240, "pullback_amp": 14},
    ),
    "SOL": SymbolPreset(
        base=165, trend_per_bucket=0.05, cycle_period=700, cycle_amp=20, noise_amp=16,
        pattern="vol_burst", volume_base=420, volume_scale=30, volume_noise=140,
        params={"burst_period": 180, "burst_bars": 20, "burst_multiplier": 2.8},
    ),
    "XRP": SymbolPreset(
        base=0.62, trend_per_bucket=0.00002, cycle_period=880, cycle_amp=0.035, noise_amp=0.01,
        pattern="range", volume_base=900, volume_scale=18, volume_noise=120,
        params={"range_period": 220, "range_amp": 0.06},
    ),
    "DOGE": SymbolPreset(
        base=0.17, trend_per_bucket=0.00008, cycle_period=420, cycle_amp=0.018, noise_amp=0.012,
        pattern="fast_momentum", volume_base=600, volume_scale=26, volume_noise=180,
        params={"momentum_period": 60, "momentum_amp": 0.035},
    ),
    "ADA": SymbolPreset(
        base=0.52, trend_per_bucket=0.00003, cycle_period=900, cycle_amp=0.03, noise_amp=0.012,
        pattern="deep_dips", volume_base=500, volume_scale=22, volume_noise=140,
        params={"dip_period": 520, "dip_bars": 60, "dip_amp": 0.12},
    ),
    "TRX": SymbolPreset(
        base=0.11, trend_per_bucket=0.00001, cycle_period=1200, cycle_amp=0.004, noise_amp=0.0025,
        pattern="low_vol", volume_base=350, volume_scale=10, volume_noise=40,
    ),
}

DEFAULT_PRESET_KEY = "BTC"


def resolve_preset(symbol: str) -> SymbolPreset:
    """Preset for a pair's base asset; unknown assets get the default preset."""
    base, _ = split_symbol(symbol)
    return PRESETS.get(base, PRESETS[DEFAULT_PRESET_KEY])


# ============================================
# Patterns
# ============================================

PatternFn = Callable[[SymbolPreset, int], Tuple[float, float]]


def _squeeze_breakout(preset: SymbolPreset, bucket: int) -> Tuple[float, float]:
    period = int(preset.params["breakout_period"])
    squeeze_bars = int(preset.params["squeeze_bars"])
    phase = bucket % period
    if phase < squeeze_bars:
        return 0.0, 0.25
    impulse_phase = (phase - squeeze_bars) / max(1, period - squeeze_bars)
    return math.sin(min(math.pi, impulse_phase * math.pi)) * preset.params["breakout_amp"], 1.0


def _mean_revert(preset: SymbolPreset, bucket: int) -> Tuple[float, float]:
    return math.sin(bucket / preset.params["range_period"]) * preset.params["range_amp"], 0.8


def _trend_pullback(preset: SymbolPreset, bucket: int) -> Tuple[float, float]:
    return -abs(math.sin(bucket / preset.params["pullback_period"])) * preset.params["pullback_amp"], 1.0


def _vol_burst(preset: SymbolPreset, bucket: int) -> Tuple[float, float]:
    phase = bucket % int(preset.params["burst_period"])
    if phase < preset.params["burst_bars"]:
        return 0.0, preset.params["burst_multiplier"]
    return 0.0, 1.0


def _range(preset: SymbolPreset, bucket: int) -> Tuple[float, float]:
    return math.sin(bucket / preset.params["range_period"]) * preset.params["range_amp"], 0.6


def _fast_momentum(preset: SymbolPreset, bucket: int) -> Tuple[float, float]:
    return math.sin(bucket / preset.params["momentum_period"]) * preset.params["momentum_amp"], 1.4


def _deep_dips(preset: SymbolPreset, bucket: int) -> Tuple[float, float]:
    dip_bars = preset.params["dip_bars"]
    phase = bucket % int(preset.params["dip_period"])
    if phase < dip_bars:
        return -math.sin(phase / dip_bars * math.pi) * preset.params["dip_amp"], 1.2
    return 0.0, 1.2


def _low_vol(preset: SymbolPreset, bucket: int) -> Tuple[float, float]:
    return 0.0, 0.35


PATTERNS: Dict[str, PatternFn] = {
    "squeeze_breakout": _squeeze_breakout,
    "mean_revert": _mean_revert,
    "trend_pullback": _trend_pullback,
    "vol_burst": _vol_burst,
    "range": _range,
    "fast_momentum": _fast_momentum,
    "deep_dips": _deep_dips,
    "low_vol": _low_vol,
}


# ============================================
# Synthesizer
# ============================================

class DeterministicCandleSynthesizer(CandleSource):
    """
    CandleSource that computes candles instead of fetching them.

    Returns one candle for every bucket start ts with start_ms <= ts < end_ms.
    """

    name = "synthetic"

    def generate(self, symbol: str, timeframe, start_ms: int, end_ms: int) -> List[Candle]:
        """
        Synthesize candles for [start_ms, end_ms).

        Raises:
            ValueError: If the timeframe is not supported
        """
        tf = Timeframe.parse(timeframe)
        if end_ms <= start_ms:
            return []

        width = tf.ms
        key = normalize_symbol(symbol)
        preset = resolve_preset(key)
        pattern = PATTERNS[preset.pattern]

        first_bucket = -(-start_ms // width)
        candles: List[Candle] = []
        bucket = first_bucket
        while bucket * width < end_ms:
            candles.append(self._candle(key, preset, pattern, bucket, width))
            bucket += 1
        return candles

    async def fetch_candles(self, symbol: str, timeframe: Timeframe, start_ms: int, end_ms: int) -> List[Candle]:
        return self.generate(symbol, timeframe, start_ms, end_ms)

    # ============================================
    # Price Model
    # ============================================

    @staticmethod
    def _price(key: str, preset: SymbolPreset, pattern: PatternFn, position: float, bucket: int, salt: str) -> float:
        base = (
            preset.base
            + preset.trend_per_bucket * position
            + math.sin(position / preset.cycle_period) * preset.cycle_amp
        )
        offset, vol_multiplier = pattern(preset, bucket)
        noise = (seeded_uniform(f"{key}:{bucket}:{salt}") - 0.5) * preset.noise_amp * vol_multiplier
        return max(PRICE_FLOOR, base + offset + noise)

    def _candle(self, key: str, preset: SymbolPreset, pattern: PatternFn, bucket: int, width: int) -> Candle:
        open_ = self._price(key, preset, pattern, float(bucket), bucket, "px")
        close = self._price(key, preset, pattern, float(bucket + 1), bucket + 1, "px")

        samples = [
            self._price(key, preset, pattern, bucket + (i + 1) / (INTRABAR_SAMPLES + 1), bucket, f"s{i}")
            for i in range(INTRABAR_SAMPLES)
        ]
        wiggle = abs((seeded_uniform(f"{key}:{bucket}:wiggle") - 0.5) * preset.noise_amp * 0.25)
        high = max(open_, close, *samples) + wiggle
        low = max(PRICE_FLOOR, min(open_, close, *samples) - wiggle)

        volume = (
            preset.volume_base
            + abs(close - open_) * preset.volume_scale
            + (seeded_uniform(f"{key}:{bucket}:volume") - 0.5) * preset.volume_noise
        )

        return Candle(
            timestamp_ms=bucket * width,
            open=open_,
            high=high,
            low=low,
            close=close,
            volume=max(VOLUME_FLOOR, volume),
        )


def describe_presets() -> Dict[str, Dict[str, object]]:
    """Preset table in a JSON-friendly shape, keyed by base asset."""
    return {
        asset: {
            "base": p.base,
            "pattern": p.pattern,
            "trend_per_bucket": p.trend_per_bucket,
            "noise_amp": p.noise_amp,
            "default": asset == DEFAULT_PRESET_KEY,
        }
        for asset, p in PRESETS.items()
    }
