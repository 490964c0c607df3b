"""
Unit Tests for CryptoCompare API Client

These tests verify that the CryptoCompareClient:
- Pages backwards from the end of the range and covers it completely
- Throttles between pages
- Retries 429, 5xx and network errors on the backoff schedule
- Fails immediately on logical provider errors
- Normalizes provider rows to our Candle schema

HTTP is never touched: _request_page is monkeypatched and sleeps are
recorded through the injected sleep function.

Run with:
    pytest tests/unit/test_cryptocompare_client.py -v
"""

import pytest

from core.errors import (
    ProviderNetworkError,
    ProviderResponseError,
    ProviderServerError,
    RateLimitedError,
)
from core.schemas import Candle, Timeframe
from market_data.cryptocompare import CryptoCompareClient, dedupe_candles, parse_page

HOUR_S = 3600
HOUR_MS = HOUR_S * 1000


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(sleeps):
    async def record_sleep(delay):
        sleeps.append(delay)

    return CryptoCompareClient(
        page_size=10,
        throttle_seconds=0.25,
        backoff_schedule=[1, 2, 4, 8, 16, 30],
        max_retries=5,
        sleep=record_sleep,
    )


def make_row(ts_s, price=100.0):
    return {
        "time": ts_s,
        "open": price,
        "high": price + 1,
        "low": price - 1,
        "close": price + 0.5,
        "volumefrom": 10.0,
        "volumeto": 1000.0,
    }


def fake_history(calls, width_s=HOUR_S, listed_from_s=0):
    """Provider stand-in: pages of `limit` rows ending at toTs, nothing before listing."""

    async def fake_request(endpoint, params):
        calls.append(dict(params))
        end = (params["toTs"] // width_s) * width_s
        first = end - (params["limit"] - 1) * width_s
        rows = [make_row(ts) for ts in range(first, end + width_s, width_s) if ts >= listed_from_s]
        return {"Response": "Success", "Data": {"Data": rows}}

    return fake_request


# ============================================
# Tests for Pagination
# ============================================

class TestFetchCandles:
    """Tests for fetch_candles pagination"""

    @pytest.mark.asyncio
    async def test_pages_backwards_until_range_covered(self, client, sleeps, monkeypatch):
        """Verify 25 hourly candles are assembled from three pages of 10"""
        calls = []
        monkeypatch.setattr(client, "_request_page", fake_history(calls))

        candles = await client.fetch_candles("BTCUSDT", Timeframe.H1, 0, 25 * HOUR_MS)

        assert [c.timestamp_ms for c in candles] == [h * HOUR_MS for h in range(25)]
        assert len(calls) == 3
        assert [c["toTs"] for c in calls] == [25 * HOUR_S, 16 * HOUR_S - 1, 6 * HOUR_S - 1]
        assert calls[0]["fsym"] == "BTC" and calls[0]["tsym"] == "USDT"
        assert sleeps == [0.25, 0.25]

    @pytest.mark.asyncio
    async def test_stops_on_short_page(self, client, sleeps, monkeypatch):
        """Verify paging stops once the provider runs out of history"""
        calls = []
        monkeypatch.setattr(client, "_request_page", fake_history(calls, listed_from_s=20 * HOUR_S))

        candles = await client.fetch_candles("BTCUSDT", Timeframe.H1, 0, 25 * HOUR_MS)

        assert [c.timestamp_ms for c in candles] == [h * HOUR_MS for h in range(20, 25)]
        assert len(calls) == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_fifteen_minute_uses_aggregate(self, client, monkeypatch):
        calls = []
        monkeypatch.setattr(client, "_request_page", fake_history(calls, width_s=900))

        candles = await client.fetch_candles("ETHUSD", "15m", 0, 4 * 900_000)

        assert len(candles) == 4
        assert calls[0]["aggregate"] == 15

    @pytest.mark.asyncio
    async def test_empty_range_makes_no_request(self, client, monkeypatch):
        calls = []
        monkeypatch.setattr(client, "_request_page", fake_history(calls))
        assert await client.fetch_candles("BTCUSDT", Timeframe.H1, HOUR_MS, HOUR_MS) == []
        assert calls == []

    @pytest.mark.asyncio
    async def test_exhausted_page_fails_whole_range(self, client, monkeypatch):
        """Verify a page that never succeeds fails the fetch instead of truncating it"""
        history = fake_history([])
        state = {"calls": 0}

        async def first_page_only(endpoint, params):
            state["calls"] += 1
            if state["calls"] == 1:
                return await history(endpoint, params)
            raise ProviderServerError(503, "unavailable", "cryptocompare")

        monkeypatch.setattr(client, "_request_page", first_page_only)

        with pytest.raises(ProviderServerError):
            await client.fetch_candles("BTCUSDT", Timeframe.H1, 0, 25 * HOUR_MS)
        assert state["calls"] == 1 + 6


# ============================================
# Tests for Retry Handling
# ============================================

class TestFetchPageRetry:
    """Tests for fetch_page retry behaviour"""

    @pytest.mark.asyncio
    async def test_rate_limited_then_success(self, client, sleeps, monkeypatch):
        """Verify three 429s back off 1s, 2s, 4s and the fourth attempt succeeds"""
        state = {"calls": 0}

        async def flaky(endpoint, params):
            state["calls"] += 1
            if state["calls"] <= 3:
                raise RateLimitedError(429, "rate limited", "cryptocompare")
            return {"Response": "Success", "Data": {"Data": [make_row(0)]}}

        monkeypatch.setattr(client, "_request_page", flaky)

        page = await client.fetch_page("BTC", "USD", Timeframe.H1, HOUR_S)

        assert len(page.candles) == 1
        assert state["calls"] == 4
        assert sleeps == [1, 2, 4]

    @pytest.mark.asyncio
    async def test_always_failing_exhausts_budget(self, client, sleeps, monkeypatch):
        """Verify max_retries + 1 attempts and no sleep after the last one"""
        state = {"calls": 0}

        async def down(endpoint, params):
            state["calls"] += 1
            raise ProviderServerError(500, "server error", "cryptocompare")

        monkeypatch.setattr(client, "_request_page", down)

        with pytest.raises(ProviderServerError):
            await client.fetch_page("BTC", "USD", Timeframe.H1, HOUR_S)
        assert state["calls"] == 6
        assert sleeps == [1, 2, 4, 8, 16]

    @pytest.mark.asyncio
    async def test_network_error_is_retried(self, client, sleeps, monkeypatch):
        state = {"calls": 0}

        async def reset_once(endpoint, params):
            state["calls"] += 1
            if state["calls"] == 1:
                raise ProviderNetworkError("connection reset", "cryptocompare")
            return {"Response": "Success", "Data": {"Data": []}}

        monkeypatch.setattr(client, "_request_page", reset_once)

        page = await client.fetch_page("BTC", "USD", Timeframe.H1, HOUR_S)
        assert page.candles == []
        assert sleeps == [1]

    @pytest.mark.asyncio
    async def test_error_payload_not_retried(self, client, sleeps, monkeypatch):
        """Verify an explicit provider error surfaces on the first attempt"""
        state = {"calls": 0}

        async def error_payload(endpoint, params):
            state["calls"] += 1
            return {"Response": "Error", "Message": "fsym param is invalid"}

        monkeypatch.setattr(client, "_request_page", error_payload)

        with pytest.raises(ProviderResponseError, match="fsym param is invalid"):
            await client.fetch_page("???", "USD", Timeframe.H1, HOUR_S)
        assert state["calls"] == 1
        assert sleeps == []

    def test_backoff_delay_repeats_last_step(self, client):
        assert client.backoff_delay(0) == 1
        assert client.backoff_delay(5) == 30
        assert client.backoff_delay(12) == 30

    @pytest.mark.asyncio
    async def test_api_key_sent_when_configured(self, monkeypatch):
        client = CryptoCompareClient(api_key="secret", page_size=5)
        calls = []
        monkeypatch.setattr(client, "_request_page", fake_history(calls))

        await client.fetch_page("BTC", "USD", Timeframe.H1, 10 * HOUR_S)

        assert calls[0]["api_key"] == "secret"
        assert calls[0]["limit"] == 5

    @pytest.mark.asyncio
    async def test_request_without_session_raises(self, client):
        with pytest.raises(RuntimeError, match="not initialized"):
            await client._request_page("/v2/histohour", {})


# ============================================
# Tests for Response Parsing
# ============================================

class TestParsePage:
    """Tests for parse_page normalization"""

    def test_snaps_and_widens(self):
        """Verify timestamps snap to the grid and high/low bracket open/close"""
        payload = {"Data": {"Data": [
            {"time": HOUR_S + 7, "open": 10.0, "high": 9.0, "low": 11.0, "close": 10.5, "volumefrom": 3.0}
        ]}}
        page = parse_page(payload, Timeframe.H1)

        candle = page.candles[0]
        assert candle.timestamp_ms == HOUR_MS
        assert candle.high == 10.5
        assert candle.low == 10.0
        assert candle.volume == 3.0

    def test_skips_pre_listing_rows(self):
        payload = {"Data": {"Data": [
            {"time": 0, "open": 0, "high": 0, "low": 0, "close": 0, "volumefrom": 0},
            make_row(HOUR_S),
        ]}}
        page = parse_page(payload, Timeframe.H1)
        assert len(page.candles) == 1
        assert page.row_count == 2

    @pytest.mark.parametrize("payload", [
        [],
        {"Data": []},
        {"Data": {"Data": [{"time": 0, "open": 1.0}]}},
    ])
    def test_malformed_payloads(self, payload):
        with pytest.raises(ProviderResponseError):
            parse_page(payload, Timeframe.H1)

    def test_dedupe_last_write_wins(self):
        a = Candle(timestamp_ms=HOUR_MS, open=1, high=1, low=1, close=1, volume=1)
        b = Candle(timestamp_ms=0, open=2, high=2, low=2, close=2, volume=2)
        c = Candle(timestamp_ms=HOUR_MS, open=3, high=3, low=3, close=3, volume=3)

        result = dedupe_candles([a, b, c])

        assert [x.timestamp_ms for x in result] == [0, HOUR_MS]
        assert result[1].open == 3


# ============================================
# Tests for health_check
# ============================================

class TestHealthCheck:
    """Tests for the single-request reachability check"""

    @pytest.mark.asyncio
    async def test_reachable(self, client, monkeypatch):
        calls = []

        async def ok(endpoint, params):
            calls.append(endpoint)
            return {"Response": "Success", "Data": {"Data": []}}

        monkeypatch.setattr(client, "_request_page", ok)

        assert await client.health_check() is True
        assert calls == ["/v2/histoday"]

    @pytest.mark.asyncio
    async def test_failure_is_not_retried(self, client, sleeps, monkeypatch):
        calls = []

        async def down(endpoint, params):
            calls.append(endpoint)
            raise ProviderServerError(503, "unavailable", "cryptocompare")

        monkeypatch.setattr(client, "_request_page", down)

        assert await client.health_check() is False
        assert len(calls) == 1
        assert sleeps == []
