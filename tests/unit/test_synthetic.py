"""
Unit Tests for the Deterministic Candle Synthesizer

These tests verify that the synthesizer:
- Produces exactly one candle per bucket in [start, end)
- Returns identical output for identical arguments
- Keeps close[b] == open[b + 1] and OHLC consistency
- Falls back to the default preset for unknown symbols

Run with:
    pytest tests/unit/test_synthetic.py -v
"""

import pytest

from core.schemas import Timeframe
from market_data.synthetic import (
    DEFAULT_PRESET_KEY,
    PATTERNS,
    PRESETS,
    PRICE_FLOOR,
    DeterministicCandleSynthesizer,
    XorShift32,
    describe_presets,
    fnv1a_32,
    resolve_preset,
    seeded_uniform,
)

M15 = 15 * 60_000


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def synth():
    return DeterministicCandleSynthesizer()


# ============================================
# Tests for Seeded Randomness
# ============================================

class TestSeeding:
    """Tests for the hash and generator"""

    def test_fnv1a_known_values(self):
        """Verify the 32-bit FNV-1a reference values"""
        assert fnv1a_32("") == 0x811C9DC5
        assert fnv1a_32("a") == 0xE40C292C

    def test_uniform_range(self):
        values = [seeded_uniform(f"BTCUSDT:{b}:px") for b in range(500)]
        assert all(0.0 <= v < 1.0 for v in values)
        assert len(set(values)) > 400

    def test_same_key_same_value(self):
        assert seeded_uniform("ETHUSDT:42:px") == seeded_uniform("ETHUSDT:42:px")
        assert seeded_uniform("ETHUSDT:42:px") != seeded_uniform("ETHUSDT:43:px")

    def test_zero_state_is_replaced(self):
        """Verify a zero seed does not lock the generator at zero"""
        rng = XorShift32(0)
        assert rng.state != 0
        assert rng.next_float() != rng.next_float()


# ============================================
# Tests for Generation
# ============================================

class TestGenerate:
    """Tests for DeterministicCandleSynthesizer.generate"""

    def test_twelve_fifteen_minute_candles(self, synth):
        """Verify the 12-bucket range returns the 12 expected timestamps"""
        candles = synth.generate("BTCUSDT", "15m", 0, M15 * 12)
        assert len(candles) == 12
        assert [c.timestamp_ms for c in candles] == [i * M15 for i in range(12)]
        assert candles[-1].timestamp_ms == 9_900_000

    def test_deterministic(self, synth):
        """Verify identical arguments give deep-equal results"""
        first = synth.generate("BTCUSDT", Timeframe.M15, 0, M15 * 12)
        second = DeterministicCandleSynthesizer().generate("BTCUSDT", Timeframe.M15, 0, M15 * 12)
        assert first == second

    def test_symbol_spelling_does_not_matter(self, synth):
        assert synth.generate("btc/usdt", "1h", 0, 3_600_000 * 5) == synth.generate("BTCUSDT", "1h", 0, 3_600_000 * 5)

    def test_sub_range_matches_full_range(self, synth):
        """Verify a candle does not depend on where the range starts"""
        full = synth.generate("ETHUSDT", "1m", 0, 60_000 * 100)
        part = synth.generate("ETHUSDT", "1m", 60_000 * 40, 60_000 * 60)
        assert part == full[40:60]

    def test_unaligned_start_skips_partial_bucket(self, synth):
        candles = synth.generate("ETHUSDT", "1m", 30_000, 60_000 * 3)
        assert [c.timestamp_ms for c in candles] == [60_000, 120_000]

    def test_close_equals_next_open(self, synth):
        candles = synth.generate("SOLUSDT", "15m", 0, M15 * 200)
        for prev, nxt in zip(candles, candles[1:]):
            assert prev.close == pytest.approx(nxt.open)

    @pytest.mark.parametrize("asset", sorted(PRESETS))
    def test_ohlc_sanity_for_every_preset(self, synth, asset):
        """Verify every preset yields consistent, positive candles"""
        candles = synth.generate(f"{asset}USDT", "1m", 0, 60_000 * 1500)
        assert len(candles) == 1500
        for c in candles:
            assert c.low <= min(c.open, c.close) <= max(c.open, c.close) <= c.high
            assert c.low >= PRICE_FLOOR
            assert c.volume > 0

    def test_degenerate_range_is_empty(self, synth):
        assert synth.generate("BTCUSDT", "1m", 60_000, 60_000) == []
        assert synth.generate("BTCUSDT", "1m", 120_000, 60_000) == []

    def test_unsupported_timeframe_rejected(self, synth):
        with pytest.raises(ValueError):
            synth.generate("BTCUSDT", "5m", 0, 60_000)

    @pytest.mark.asyncio
    async def test_fetch_candles_delegates(self, synth):
        candles = await synth.fetch_candles("BTCUSDT", Timeframe.H1, 0, 3_600_000 * 3)
        assert candles == synth.generate("BTCUSDT", Timeframe.H1, 0, 3_600_000 * 3)


# ============================================
# Tests for Presets
# ============================================

class TestPresets:
    """Tests for preset resolution"""

    def test_known_base_asset(self):
        assert resolve_preset("ETHUSDT") is PRESETS["ETH"]

    def test_unknown_symbol_uses_default(self):
        assert resolve_preset("FOOBAR") is PRESETS[DEFAULT_PRESET_KEY]

    def test_every_preset_has_a_pattern(self):
        for preset in PRESETS.values():
            assert preset.pattern in PATTERNS

    def test_describe_presets_marks_default(self):
        table = describe_presets()
        assert set(table) == set(PRESETS)
        assert table[DEFAULT_PRESET_KEY]["default"] is True
        assert table["ETH"]["pattern"] == "mean_revert"
