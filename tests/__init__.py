"""
Test Suite

Unit tests for the candle sources, the loader, the session engine and the
streaming client, plus in-process tests of the HTTP API.

Structure:
- tests/unit/: Component tests; provider and stream transports are mocked,
  the API runs against the synthetic source through TestClient

Uses pytest with pytest-asyncio for testing async functionality.
"""
