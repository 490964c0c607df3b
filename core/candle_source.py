"""
CandleSource: Capability Contract for Candle Providers

Both the deterministic synthesizer and the CryptoCompare network adapter
implement this interface. The session engine and the candle loader work
against CandleSource only; which implementation backs a process is decided
once, by core.source_factory, from configuration.

Example:
    source = build_candle_source("synthetic")
    candles = await source.fetch_candles("BTCUSDT", Timeframe.M15, start_ms, end_ms)
"""

from abc import ABC, abstractmethod
from typing import List

from core.schemas import Candle, Timeframe


class CandleSource(ABC):
    """
    Abstract Base Class for candle providers.

    Class Attributes:
        name: Unique identifier for the source (lowercase, e.g., "synthetic", "cryptocompare")

    Abstract Methods:
        - fetch_candles: Candles for a symbol/timeframe over [start_ms, end_ms)

    Optional Methods (can be overridden):
        - initialize: Open HTTP sessions or other resources
        - shutdown: Release them
        - health_check: Verify the backing provider is reachable
    """

    name: str = "source"

    @abstractmethod
    async def fetch_candles(
        self,
        symbol: str,
        timeframe: Timeframe,
        start_ms: int,
        end_ms: int
    ) -> List[Candle]:
        """
        Fetch candles covering [start_ms, end_ms).

        Args:
            symbol: Trading pair, any spelling ("BTCUSDT", "btc/usdt")
            timeframe: Candle width
            start_ms: Range start (epoch ms, inclusive)
            end_ms: Range end (epoch ms, exclusive)

        Returns:
            List[Candle]: Bucket-aligned candles sorted ascending by timestamp,
                          one per bucket. Empty if end_ms <= start_ms.

        Raises:
            ProviderError: If the backing provider fails after its retry budget
        """
        pass

    async def initialize(self) -> None:
        """Acquire long-lived resources. No-op by default."""
        pass

    async def shutdown(self) -> None:
        """Release long-lived resources. No-op by default."""
        pass

    async def health_check(self) -> bool:
        return True

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name={self.name})>"
