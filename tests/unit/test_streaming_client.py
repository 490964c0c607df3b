"""
Unit Tests for the Session Streaming Client

These tests verify that the StreamingClient:
- Resumes from its last processed sequence number after a drop
- Never processes an event twice, even if the server replays
- Stops reconnecting after a terminal status or a 404
- Gives up once the reconnect budget is spent
- Decodes SSE responses from the transport

The transport is replaced by monkeypatching _open_stream; the SSE path is
exercised with a mocked aiohttp session.

Run with:
    pytest tests/unit/test_streaming_client.py -v
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from client.streaming_client import ConnectionStatus, StreamingClient
from core.errors import MalformedEventError, SessionGoneError, StreamConnectionError
from core.schemas import Candle, EventType, SessionEvent, SessionStatus
from core.sse import SSE_KEEPALIVE, encode_sse

M = 60_000


# ============================================
# Fixtures
# ============================================

def build_log():
    """created, running, 10 candles, equity, trade, finished (seq 1..15)."""
    entries = [
        (EventType.STATUS, 0, {"status": "created"}),
        (EventType.STATUS, 0, {"status": "running"}),
    ]
    for i in range(10):
        c = Candle(timestamp_ms=i * M, open=100 + i, high=101 + i, low=99 + i, close=100.5 + i, volume=5.0)
        entries.append((EventType.CANDLE, c.timestamp_ms, {"candle": c.model_dump(), "bar_index": i}))
    entries.append((EventType.EQUITY, 9 * M, {"cash": 10_010.0, "position_value": 0.0, "equity": 10_010.0}))
    entries.append((EventType.TRADE, 9 * M, {
        "side": "LONG", "entry_price": 103.0, "exit_price": 109.0, "hold_bars": 4,
        "net_pnl": 10.0, "reason": "ema_cross_down", "timeframe": "1m",
    }))
    entries.append((EventType.STATUS, 10 * M, {"status": "finished"}))
    return [
        SessionEvent(sequence_number=i + 1, type=t, timestamp_ms=ts, payload=p)
        for i, (t, ts, p) in enumerate(entries)
    ]


LOG = build_log()


@pytest.fixture
def client():
    return StreamingClient(
        "http://test",
        "s1",
        reconnect_delay=0,
        max_reconnect_attempts=3,
    )


def script_transport(client, monkeypatch, script):
    """
    Replace _open_stream with a scripted server.

    Each script step is an exception to raise on open, or a dict:
        drop_after: events to send before the connection drops (None = all)
        end_after: events to send before the server closes the stream cleanly
        honor_from_seq: False replays the log from the start
    """
    opened = []

    async def fake_open(from_seq):
        opened.append(from_seq)
        step = script.pop(0) if script else StreamConnectionError("refused")
        if isinstance(step, Exception):
            raise step

        async def events():
            start = from_seq if step.get("honor_from_seq", True) else 0
            sent = 0
            for event in LOG[start:]:
                if step.get("drop_after") is not None and sent >= step["drop_after"]:
                    raise StreamConnectionError("connection reset by peer")
                if step.get("end_after") is not None and sent >= step["end_after"]:
                    return
                yield event
                sent += 1

        return events()

    monkeypatch.setattr(client, "_open_stream", fake_open)
    return opened


# ============================================
# Tests for the Connection Loop
# ============================================

class TestReconnect:
    """Tests for resumable reconnects"""

    @pytest.mark.asyncio
    async def test_resumes_after_drop_without_duplicates(self, client, monkeypatch):
        """Verify a drop after 5 events reconnects with fromSeq=5 and ends at the terminal status"""
        seen_status = []
        client.on_status = seen_status.append
        opened = script_transport(client, monkeypatch, [{"drop_after": 5}, {}])

        final = await asyncio.wait_for(client.connect(), timeout=2)

        assert opened == [0, 5]
        assert final == ConnectionStatus.DISCONNECTED
        assert client.last_seq == 15
        assert client.duplicates_skipped == 0
        assert client.session_status == SessionStatus.FINISHED
        assert client.is_terminal
        assert not client.gave_up
        assert len(client.window) == 10
        assert len(client.markers) == 2
        assert seen_status == [
            ConnectionStatus.CONNECTING,
            ConnectionStatus.CONNECTED,
            ConnectionStatus.RECONNECTING,
            ConnectionStatus.CONNECTED,
            ConnectionStatus.DISCONNECTED,
        ]

    @pytest.mark.asyncio
    async def test_replayed_events_skipped(self, client, monkeypatch):
        """Verify a server that ignores fromSeq cannot make the client double-count"""
        processed = []
        client.on_event = processed.append
        script_transport(client, monkeypatch, [{"drop_after": 5}, {"honor_from_seq": False}])

        await asyncio.wait_for(client.connect(), timeout=2)

        assert client.duplicates_skipped == 5
        assert [e.sequence_number for e in processed] == list(range(1, 16))
        assert len(client.window) == 10

    @pytest.mark.asyncio
    async def test_clean_end_without_terminal_reconnects(self, client, monkeypatch):
        opened = script_transport(client, monkeypatch, [{"end_after": 3}, {}])
        await asyncio.wait_for(client.connect(), timeout=2)
        assert opened == [0, 3]
        assert client.reconnect_attempts == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_budget(self, client, monkeypatch):
        opened = script_transport(client, monkeypatch, [])

        final = await asyncio.wait_for(client.connect(), timeout=2)

        assert final == ConnectionStatus.DISCONNECTED
        assert client.gave_up
        assert len(opened) == 4
        assert client.last_seq == 0

    @pytest.mark.asyncio
    async def test_failures_reset_after_successful_connect(self, client, monkeypatch):
        drop = StreamConnectionError("refused")
        script = [drop, drop, {"drop_after": 2}, drop, drop, {}]
        opened = script_transport(client, monkeypatch, script)

        await asyncio.wait_for(client.connect(), timeout=2)

        assert not client.gave_up
        assert client.is_terminal
        assert opened == [0, 0, 0, 2, 2, 2]

    @pytest.mark.asyncio
    async def test_empty_streams_spend_the_budget(self, monkeypatch):
        """Verify streams that open but deliver nothing do not reset the failure count"""
        client = StreamingClient("http://test", "s1", reconnect_delay=0, max_reconnect_attempts=3)
        opened = script_transport(client, monkeypatch, [{"end_after": 0}] * 10)

        final = await asyncio.wait_for(client.connect(), timeout=2)

        assert final == ConnectionStatus.DISCONNECTED
        assert client.gave_up
        assert opened == [0, 0, 0, 0]

    @pytest.mark.asyncio
    async def test_replay_only_streams_spend_the_budget(self, client, monkeypatch):
        """Verify a stream that only repeats processed events counts as a failure"""
        script = [{"end_after": 4}] + [{"end_after": 4, "honor_from_seq": False}] * 10
        opened = script_transport(client, monkeypatch, script)

        await asyncio.wait_for(client.connect(), timeout=2)

        assert client.gave_up
        assert client.last_seq == 4
        assert opened == [0, 4, 4, 4, 4]

    @pytest.mark.asyncio
    async def test_session_gone_stops_immediately(self, client, monkeypatch):
        opened = script_transport(client, monkeypatch, [SessionGoneError("Session s1 not found on server")])

        await asyncio.wait_for(client.connect(), timeout=2)

        assert opened == [0]
        assert client.session_gone
        assert not client.gave_up

    @pytest.mark.asyncio
    async def test_close_interrupts_reconnect_wait(self, monkeypatch):
        client = StreamingClient("http://test", "s1", reconnect_delay=30, max_reconnect_attempts=3)
        script_transport(client, monkeypatch, [])

        task = asyncio.create_task(client.connect())
        await asyncio.sleep(0.05)
        assert client.status == ConnectionStatus.RECONNECTING

        await client.close()
        final = await asyncio.wait_for(task, timeout=1)
        assert final == ConnectionStatus.DISCONNECTED
        assert not client.gave_up


# ============================================
# Tests for Event Merge
# ============================================

class TestHandleEvent:
    """Tests for handle_event"""

    def test_trade_markers_use_payload_timeframe(self, client):
        for event in LOG:
            client.handle_event(event)

        entry, exit_ = client.markers.markers()
        assert exit_.timestamp_ms == 9 * M
        assert entry.timestamp_ms == 5 * M
        assert list(client.equity_history)[0]["equity"] == 10_010.0

    def test_duplicate_returns_false(self, client):
        assert client.handle_event(LOG[0]) is True
        assert client.handle_event(LOG[0]) is False
        assert client.duplicates_skipped == 1

    def test_sequence_jump_still_processed(self, client):
        client.handle_event(LOG[0])
        assert client.handle_event(LOG[4]) is True
        assert client.last_seq == 5


# ============================================
# Tests for the SSE Transport
# ============================================

class TestOpenStream:
    """Tests for _open_stream against a mocked aiohttp session"""

    def make_client(self, response):
        http = MagicMock()
        http.get = AsyncMock(return_value=response)
        return StreamingClient("http://test/", "s1", http_session=http), http

    @pytest.mark.asyncio
    async def test_decodes_event_stream(self):
        wire = SSE_KEEPALIVE + "".join(encode_sse(e) for e in LOG[:3])

        async def content():
            for line in wire.splitlines(keepends=True):
                yield line.encode("utf-8")

        response = MagicMock(status=200)
        response.content = content()
        client, http = self.make_client(response)

        stream = await client._open_stream(7)
        events = [e async for e in stream]

        assert events == LOG[:3]
        args, kwargs = http.get.call_args
        assert args[0] == "http://test/sessions/s1/stream"
        assert kwargs["params"] == {"fromSeq": 7}

    @pytest.mark.asyncio
    async def test_404_means_session_gone(self):
        response = MagicMock(status=404)
        client, _ = self.make_client(response)

        with pytest.raises(SessionGoneError):
            await client._open_stream(0)
        response.release.assert_called_once()

    @pytest.mark.asyncio
    async def test_other_status_is_connection_error(self):
        response = MagicMock(status=503)
        response.text = AsyncMock(return_value="unavailable")
        client, _ = self.make_client(response)

        with pytest.raises(StreamConnectionError) as exc_info:
            await client._open_stream(0)
        assert exc_info.value.status == 503


# ============================================
# Tests for Malformed Events
# ============================================

BAD_CANDLE = SessionEvent(sequence_number=2, type=EventType.CANDLE, timestamp_ms=0, payload={"bar_index": 0})


class TestMalformedEvents:
    """Tests for events whose payload cannot be merged"""

    def test_malformed_payload_does_not_advance_cursor(self, client):
        client.handle_event(LOG[0])

        with pytest.raises(MalformedEventError):
            client.handle_event(BAD_CANDLE)

        assert client.last_seq == 1
        assert len(client.events) == 1
        assert len(client.window) == 0

    def test_invalid_candle_is_malformed(self, client):
        bad = SessionEvent(
            sequence_number=1,
            type=EventType.CANDLE,
            timestamp_ms=0,
            payload={"candle": {"timestamp_ms": 0, "open": 10, "high": 5, "low": 1, "close": 9, "volume": 1}},
        )
        with pytest.raises(MalformedEventError):
            client.handle_event(bad)
        assert client.last_seq == 0

    @pytest.mark.asyncio
    async def test_malformed_event_requested_again_then_gives_up(self, client, monkeypatch):
        opened = []

        async def fake_open(from_seq):
            opened.append(from_seq)

            async def events():
                for event in [LOG[0], BAD_CANDLE]:
                    if event.sequence_number > from_seq:
                        yield event

            return events()

        monkeypatch.setattr(client, "_open_stream", fake_open)

        await asyncio.wait_for(client.connect(), timeout=2)

        assert opened == [0, 1, 1, 1]
        assert client.gave_up
        assert client.last_seq == 1
