"""
CryptoCompare REST API Client

This module provides an async HTTP client that fetches historical candles from
the CryptoCompare data API and exposes them as a CandleSource.

It handles:
- Backward pagination from the end of the range (the API only serves pages
  ending at a "toTs" timestamp, capped at a fixed page size)
- Throttling between consecutive page requests
- Per-request retry with exponential backoff (429, 5xx, network errors)
- A hard timeout on every request
- Normalization of provider rows to our Candle schema

API Documentation:
    https://min-api.cryptocompare.com/documentation

Endpoints:
    1m  -> /v2/histominute
    15m -> /v2/histominute (aggregate=15)
    1h  -> /v2/histohour
    1d  -> /v2/histoday

Usage:
    async with CryptoCompareClient(api_key="...") as client:
        candles = await client.fetch_candles("BTCUSDT", Timeframe.H1, start_ms, end_ms)
"""

import aiohttp
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from core.candle_source import CandleSource
from core.errors import (
    ProviderError,
    ProviderHTTPError,
    ProviderNetworkError,
    ProviderResponseError,
    ProviderServerError,
    RateLimitedError,
    is_retryable_network_error,
)
from core.logging import get_logger, log_api_request, log_api_response
from core.schemas import Candle, Timeframe
from core.utils.symbols import split_symbol
from core.utils.time import align_to_grid


DEFAULT_BACKOFF_SCHEDULE = (1.0, 2.0, 4.0, 8.0, 16.0, 30.0)

# timeframe -> (endpoint, aggregate)
ENDPOINTS: Dict[Timeframe, Tuple[str, int]] = {
    Timeframe.M1: ("/v2/histominute", 1),
    Timeframe.M15: ("/v2/histominute", 15),
    Timeframe.H1: ("/v2/histohour", 1),
    Timeframe.D1: ("/v2/histoday", 1),
}


@dataclass
class ProviderPage:
    """One page of provider history, oldest first."""

    candles: List[Candle]
    row_count: int


class CryptoCompareClient(CandleSource):
    """
    Async HTTP client for CryptoCompare historical candles.

    Attributes:
        api_key: Optional API key sent as the api_key query parameter
        base_url: API base URL
        page_size: Maximum rows per page ("limit")
        throttle_seconds: Wait before every page request except the first
        backoff_schedule: Delay per retry; the last step repeats
        max_retries: Retries per page after the first attempt
        request_timeout: Hard timeout for one request (seconds)
        session: aiohttp ClientSession for HTTP requests

    Example:
        >>> async with CryptoCompareClient() as client:
        ...     candles = await client.fetch_candles("ETHUSDT", Timeframe.D1, start_ms, end_ms)

    Notes:
        - A page whose retries are exhausted fails the whole fetch; callers
          never receive a silently truncated range
        - All timestamps are converted from seconds to milliseconds
    """

    name = "cryptocompare"
    BASE_URL = "https://min-api.cryptocompare.com/data"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        page_size: int = 2000,
        throttle_seconds: float = 0.25,
        backoff_schedule: Sequence[float] = DEFAULT_BACKOFF_SCHEDULE,
        max_retries: int = 5,
        request_timeout: float = 15.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.api_key = api_key
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.page_size = page_size
        self.throttle_seconds = throttle_seconds
        self.backoff_schedule = list(backoff_schedule) or list(DEFAULT_BACKOFF_SCHEDULE)
        self.max_retries = max_retries
        self.request_timeout = request_timeout
        self._sleep = sleep
        self.logger = get_logger(__name__)
        self.session: Optional[aiohttp.ClientSession] = None

    # ============================================
    # Session Management
    # ============================================

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    async def initialize(self) -> None:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self.logger.debug("CryptoCompareClient session created")

    async def shutdown(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()
            self.logger.debug("CryptoCompareClient session closed")
        self.session = None

    async def health_check(self) -> bool:
        try:
            await self._request_page("/v2/histoday", {"fsym": "BTC", "tsym": "USD", "limit": 1})
            return True
        except ProviderError as e:
            self.logger.warning(f"CryptoCompare health check failed: {e}")
            return False

    # ============================================
    # CandleSource
    # ============================================

    async def fetch_candles(
        self,
        symbol: str,
        timeframe: Timeframe,
        start_ms: int,
        end_ms: int
    ) -> List[Candle]:
        """
        Fetch every candle in [start_ms, end_ms) by paging backwards from end_ms.

        Returns:
            Candles sorted ascending, one per timestamp (last write wins)

        Raises:
            ProviderError: If any page fails after its retry budget
        """
        tf = Timeframe.parse(timeframe)
        if end_ms <= start_ms:
            return []

        fsym, tsym = split_symbol(symbol)
        cursor_end_ts = end_ms // 1000
        start_ts = start_ms // 1000

        collected: List[Candle] = []
        pages = 0
        while cursor_end_ts > start_ts:
            if pages > 0:
                await self._sleep(self.throttle_seconds)

            page = await self.fetch_page(fsym, tsym, tf, cursor_end_ts)
            pages += 1
            if not page.candles:
                break

            collected.extend(c for c in page.candles if start_ms <= c.timestamp_ms < end_ms)

            oldest = min(c.timestamp_ms for c in page.candles)
            cursor_end_ts = oldest // 1000 - 1
            if oldest <= start_ms or page.row_count < self.page_size:
                break

        candles = dedupe_candles(collected)
        self.logger.info(
            f"Fetched {len(candles)} {fsym}/{tsym} {tf.value} candles in {pages} page(s)"
        )
        return candles

    # ============================================
    # Page Requests with Retry
    # ============================================

    async def fetch_page(self, fsym: str, tsym: str, timeframe: Timeframe, to_ts: int) -> ProviderPage:
        """
        Fetch one page ending at to_ts (epoch seconds), retrying the same request.

        Retry Handling:
            - 429, 5xx and network errors: sleep backoff_schedule[min(attempt, len - 1)]
              and retry, up to max_retries times
            - Anything else: raise immediately

        Raises:
            ProviderError: The last error once the attempt budget is spent
        """
        endpoint, aggregate = ENDPOINTS[timeframe]
        params: Dict[str, Any] = {
            "fsym": fsym,
            "tsym": tsym,
            "limit": self.page_size,
            "toTs": to_ts,
        }
        if aggregate > 1:
            params["aggregate"] = aggregate
        if self.api_key:
            params["api_key"] = self.api_key

        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                payload = await self._request_page(endpoint, params)
                return parse_page(payload, timeframe)
            except ProviderError as e:
                if not e.retryable:
                    self.logger.error(f"{endpoint} failed without retry: {e}")
                    raise
                if attempt + 1 >= attempts:
                    self.logger.error(f"{endpoint} failed after {attempts} attempts: {e}")
                    raise
                delay = self.backoff_delay(attempt)
                self.logger.warning(
                    f"{e} on {endpoint}. Retrying in {delay:.1f}s... (attempt {attempt + 1}/{attempts})"
                )
                await self._sleep(delay)

        raise ProviderError(f"No attempts made for {endpoint}", self.name)

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_schedule[min(attempt, len(self.backoff_schedule) - 1)]

    async def _request_page(self, endpoint: str, params: Dict[str, Any]) -> Any:
        """
        Perform one GET and classify failures into the provider error taxonomy.

        The response is released on every path by the async context manager.
        """
        if not self.session:
            raise RuntimeError("Client session not initialized. Use 'async with' or initialize().")

        url = f"{self.base_url}{endpoint}"
        log_api_request(self.name, endpoint, params)
        started = time.monotonic()

        try:
            async with self.session.get(
                url,
                params=params,
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            ) as resp:
                log_api_response(self.name, endpoint, resp.status, time.monotonic() - started)

                if resp.status == 429:
                    raise RateLimitedError(resp.status, "rate limited", self.name)
                if 500 <= resp.status < 600:
                    raise ProviderServerError(resp.status, "server error", self.name)
                if resp.status != 200:
                    text = await resp.text()
                    raise ProviderHTTPError(resp.status, text[:200], self.name)

                try:
                    return await resp.json(content_type=None)
                except ValueError as e:
                    raise ProviderResponseError(f"Invalid JSON from {endpoint}: {e}", self.name) from e

        except ProviderError:
            raise
        except (asyncio.TimeoutError, aiohttp.ClientError, OSError) as e:
            message = str(e) or e.__class__.__name__
            if isinstance(e, asyncio.TimeoutError):
                message = f"timeout after {self.request_timeout}s"
            if is_retryable_network_error(e):
                raise ProviderNetworkError(f"Network error on {endpoint}: {message}", self.name) from e
            raise ProviderError(f"Request failed on {endpoint}: {message}", self.name) from e


# ============================================
# Response Parsing
# ============================================

def parse_page(payload: Any, timeframe: Timeframe) -> ProviderPage:
    """
    Convert a provider payload to candles.

    Rows with neither an open nor a close price (pre-listing history) are
    skipped. Timestamps are snapped to the timeframe grid and high/low are
    widened to bracket open and close.

    Raises:
        ProviderResponseError: Explicit error payload or unexpected shape
    """
    if not isinstance(payload, dict):
        raise ProviderResponseError(f"Unexpected payload type: {type(payload).__name__}", "cryptocompare")

    if payload.get("Response") == "Error":
        raise ProviderResponseError(payload.get("Message") or "Provider returned an error", "cryptocompare")

    data = payload.get("Data")
    rows = data.get("Data") if isinstance(data, dict) else None
    if not isinstance(rows, list):
        raise ProviderResponseError("Payload has no Data.Data list", "cryptocompare")

    candles: List[Candle] = []
    for row in rows:
        try:
            open_ = float(row["open"])
            close = float(row["close"])
            if open_ <= 0 and close <= 0:
                continue
            high = max(float(row["high"]), open_, close)
            low = min(float(row["low"]), open_, close)
            candles.append(
                Candle(
                    timestamp_ms=align_to_grid(int(row["time"]) * 1000, timeframe.ms),
                    open=open_,
                    high=high,
                    low=max(0.0, low),
                    close=close,
                    volume=max(0.0, float(row.get("volumefrom") or 0.0)),
                )
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderResponseError(f"Malformed candle row {row!r}: {e}", "cryptocompare") from e

    return ProviderPage(candles=candles, row_count=len(rows))


def dedupe_candles(candles: List[Candle]) -> List[Candle]:
    """One candle per timestamp (last write wins), sorted ascending."""
    by_ts: Dict[int, Candle] = {}
    for candle in candles:
        by_ts[candle.timestamp_ms] = candle
    return [by_ts[ts] for ts in sorted(by_ts)]
