"""
Unit Tests for the Session Event Stream and SSE Codec

These tests verify:
- Dense, gap-free sequence numbers per session
- Resumable subscriptions (replay of everything after fromSeq)
- Several independent subscribers on one log
- Subscriptions ending once a closed log is drained
- SSE encoding/decoding of events

Run with:
    pytest tests/unit/test_event_stream.py -v
"""

import asyncio

import pytest

from core.errors import SessionNotFoundError
from core.schemas import EventType
from core.sse import SSE_KEEPALIVE, SSEDecoder, encode_sse
from simulation.event_stream import SessionEventStream


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def stream():
    s = SessionEventStream()
    s.open("s1")
    return s


def publish_candles(stream, count, session_id="s1"):
    return [
        stream.publish(session_id, EventType.CANDLE, i * 60_000, {"bar_index": i})
        for i in range(count)
    ]


async def collect(stream, session_id="s1", from_seq=0, heartbeat=None):
    return [e async for e in stream.subscribe(session_id, from_seq, heartbeat=heartbeat)]


# ============================================
# Tests for Publishing
# ============================================

class TestPublish:
    """Tests for sequence assignment"""

    def test_sequence_numbers_start_at_one(self, stream):
        events = publish_candles(stream, 5)
        assert [e.sequence_number for e in events] == [1, 2, 3, 4, 5]
        assert stream.last_sequence("s1") == 5

    def test_sessions_are_numbered_independently(self, stream):
        stream.open("s2")
        publish_candles(stream, 3)
        other = publish_candles(stream, 2, session_id="s2")
        assert [e.sequence_number for e in other] == [1, 2]

    def test_publish_after_close_rejected(self, stream):
        publish_candles(stream, 1)
        stream.close("s1")
        with pytest.raises(RuntimeError):
            stream.publish("s1", EventType.STATUS, 0, {"status": "running"})

    def test_unknown_session(self, stream):
        with pytest.raises(SessionNotFoundError):
            stream.publish("nope", EventType.CANDLE, 0, {})
        with pytest.raises(SessionNotFoundError):
            stream.events_after("nope")

    def test_reopen_keeps_log(self, stream):
        publish_candles(stream, 2)
        stream.open("s1")
        assert stream.last_sequence("s1") == 2

    def test_events_after_with_limit(self, stream):
        publish_candles(stream, 10)
        page = stream.events_after("s1", from_seq=3, limit=4)
        assert [e.sequence_number for e in page] == [4, 5, 6, 7]
        assert stream.events_after("s1", from_seq=10) == []


# ============================================
# Tests for Subscriptions
# ============================================

class TestSubscribe:
    """Tests for resumable subscriptions"""

    @pytest.mark.asyncio
    async def test_replay_of_closed_log(self, stream):
        publish_candles(stream, 4)
        stream.close("s1")

        events = await asyncio.wait_for(collect(stream), timeout=1)

        assert [e.sequence_number for e in events] == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_resume_from_sequence(self, stream):
        """Verify fromSeq=N yields exactly the events after N"""
        publish_candles(stream, 6)
        stream.close("s1")

        events = await asyncio.wait_for(collect(stream, from_seq=4), timeout=1)

        assert [e.sequence_number for e in events] == [5, 6]

    @pytest.mark.asyncio
    async def test_live_events_follow_backlog(self, stream):
        publish_candles(stream, 2)
        reader = asyncio.create_task(collect(stream))
        await asyncio.sleep(0.01)

        publish_candles(stream, 3)
        stream.publish("s1", EventType.STATUS, 0, {"status": "finished"})
        stream.close("s1")

        events = await asyncio.wait_for(reader, timeout=1)
        assert [e.sequence_number for e in events] == [1, 2, 3, 4, 5, 6]
        assert events[-1].type == EventType.STATUS

    @pytest.mark.asyncio
    async def test_multiple_subscribers_see_same_log(self, stream):
        readers = [asyncio.create_task(collect(stream, from_seq=n)) for n in (0, 0, 2)]
        await asyncio.sleep(0.01)
        assert stream.subscriber_count("s1") == 3

        publish_candles(stream, 4)
        stream.close("s1")

        first, second, third = await asyncio.wait_for(asyncio.gather(*readers), timeout=1)
        assert [e.sequence_number for e in first] == [1, 2, 3, 4]
        assert first == second
        assert [e.sequence_number for e in third] == [3, 4]
        assert stream.subscriber_count("s1") == 0

    @pytest.mark.asyncio
    async def test_heartbeat_yields_none_when_idle(self, stream):
        subscription = stream.subscribe("s1", 0, heartbeat=0.01)
        try:
            item = await asyncio.wait_for(subscription.__anext__(), timeout=1)
            assert item is None
        finally:
            await subscription.aclose()

    @pytest.mark.asyncio
    async def test_discard_ends_subscribers(self, stream):
        publish_candles(stream, 1)
        reader = asyncio.create_task(collect(stream))
        await asyncio.sleep(0.01)

        stream.discard("s1")

        events = await asyncio.wait_for(reader, timeout=1)
        assert [e.sequence_number for e in events] == [1]
        assert not stream.has_session("s1")

    @pytest.mark.asyncio
    async def test_negative_from_seq_rejected(self, stream):
        with pytest.raises(ValueError):
            await collect(stream, from_seq=-1)

    @pytest.mark.asyncio
    async def test_unknown_session_rejected(self, stream):
        with pytest.raises(SessionNotFoundError):
            await collect(stream, session_id="missing")


# ============================================
# Tests for SSE Codec
# ============================================

class TestSSECodec:
    """Tests for encode_sse / SSEDecoder"""

    def test_encode_fields(self, stream):
        event = publish_candles(stream, 1)[0]
        text = encode_sse(event)

        lines = text.split("\n")
        assert lines[0] == "id: 1"
        assert lines[1] == "event: candle"
        assert lines[2].startswith("data: {")
        assert text.endswith("\n\n")

    def test_decoder_reads_encoded_stream(self, stream):
        events = publish_candles(stream, 3)
        wire = SSE_KEEPALIVE + "".join(encode_sse(e) for e in events)

        decoder = SSEDecoder()
        decoded = [decoder.feed(line) for line in wire.splitlines(keepends=True)]

        assert [e for e in decoded if e is not None] == events
        assert decoder.last_event_id == "3"

    def test_comment_only_block_is_ignored(self):
        decoder = SSEDecoder()
        assert decoder.feed(": ping\n") is None
        assert decoder.feed("\n") is None
