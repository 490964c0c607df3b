"""
Candle Source Factory

Chooses the CandleSource implementation from configuration, once per process.
Callers never inspect the concrete type; they receive a CandleSource.

Adding a New Source:
    1. Implement CandleSource (e.g., market_data/kraken.py)
    2. Add a builder function below
    3. Register it in SOURCE_BUILDERS

Usage:
    from core.source_factory import get_candle_source

    source = get_candle_source()
    await source.initialize()
"""

from typing import Callable, Dict, Optional

from core.candle_source import CandleSource
from core.config import Settings, settings
from core.logging import logger


def _build_synthetic(config: Settings) -> CandleSource:
    # market_data imports core, so import lazily
    from market_data.synthetic import DeterministicCandleSynthesizer

    return DeterministicCandleSynthesizer()


def _build_cryptocompare(config: Settings) -> CandleSource:
    from market_data.cryptocompare import CryptoCompareClient

    return CryptoCompareClient(
        api_key=config.cryptocompare_api_key or None,
        base_url=config.cryptocompare_base_url,
        page_size=config.provider_page_size,
        throttle_seconds=config.provider_throttle_ms / 1000.0,
        backoff_schedule=config.backoff_schedule,
        max_retries=config.provider_max_retries,
        request_timeout=config.provider_request_timeout,
    )


SOURCE_BUILDERS: Dict[str, Callable[[Settings], CandleSource]] = {
    "synthetic": _build_synthetic,
    "cryptocompare": _build_cryptocompare,
}


def build_candle_source(mode: Optional[str] = None, config: Optional[Settings] = None) -> CandleSource:
    """
    Build the CandleSource registered for a mode.

    Args:
        mode: Source name; defaults to settings.market_data_mode
        config: Settings to read provider options from

    Raises:
        ValueError: If no source is registered under that name
    """
    config = config or settings
    name = (mode or config.market_data_mode).strip().lower()

    builder = SOURCE_BUILDERS.get(name)
    if builder is None:
        available = ", ".join(SOURCE_BUILDERS.keys())
        logger.error(f"Candle source '{name}' not found. Available: {available}")
        raise ValueError(f"Candle source '{name}' is not supported. Available sources: {available}")

    source = builder(config)
    logger.info(f"Candle source selected: {source.name}")
    return source


# ============================================
# Global Source Instance
# ============================================

_source: Optional[CandleSource] = None


def get_candle_source() -> CandleSource:
    """
    Get the process-wide CandleSource (singleton pattern).

    The source is built on first call from settings.market_data_mode;
    subsequent calls return the same instance.
    """
    global _source
    if _source is None:
        _source = build_candle_source()
    return _source


def reset_candle_source() -> None:
    """Forget the process-wide source so the next call rebuilds it."""
    global _source
    _source = None
