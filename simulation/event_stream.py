"""
Session Event Stream

Server-side, per-session, append-only event log with resumable subscriptions.

- publish() is the only place sequence numbers are assigned: the first event
  of a session is 1 and every later one is exactly last + 1
- subscribe(session_id, from_seq) replays every stored event with
  sequence_number > from_seq, then follows the log live until the session is
  closed and the backlog drained
- Any number of subscribers may read the same log; each keeps its own cursor
  and none of them can slow the publisher down

Wake-ups use a swapped asyncio.Event: publishing sets the current event and
installs a fresh one, so every waiter captured before the append is released.
"""

import asyncio
from collections import defaultdict
from typing import Any, AsyncIterator, DefaultDict, Dict, List, Optional

from core.errors import SessionNotFoundError
from core.logging import get_logger
from core.schemas import EventType, SessionEvent


class _SessionLog:
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.events: List[SessionEvent] = []
        self.closed = False
        self.changed = asyncio.Event()

    @property
    def last_seq(self) -> int:
        return self.events[-1].sequence_number if self.events else 0

    def append(self, event: SessionEvent) -> None:
        self.events.append(event)
        self.notify()

    def after(self, from_seq: int, limit: Optional[int] = None) -> List[SessionEvent]:
        # sequence numbers are dense from 1, so seq N lives at index N - 1
        start = max(0, from_seq)
        if limit is None:
            return self.events[start:]
        return self.events[start:start + limit]

    def notify(self) -> None:
        self.changed.set()
        self.changed = asyncio.Event()


class SessionEventStream:
    """
    Ordered, resumable event logs keyed by session id.

    Example:
        >>> stream = SessionEventStream()
        >>> stream.open("s1")
        >>> stream.publish("s1", EventType.STATUS, 0, {"status": "running"})
        >>> async for event in stream.subscribe("s1", from_seq=0):
        ...     print(event.sequence_number)
    """

    def __init__(self) -> None:
        self._logs: Dict[str, _SessionLog] = {}
        self._subscribers: DefaultDict[str, int] = defaultdict(int)
        self._logger = get_logger(__name__)

    def open(self, session_id: str) -> None:
        if session_id not in self._logs:
            self._logs[session_id] = _SessionLog(session_id)

    def has_session(self, session_id: str) -> bool:
        return session_id in self._logs

    def _get(self, session_id: str) -> _SessionLog:
        log = self._logs.get(session_id)
        if log is None:
            raise SessionNotFoundError(session_id)
        return log

    def publish(self, session_id: str, event_type: EventType, timestamp_ms: int, payload: Dict[str, Any]) -> SessionEvent:
        """
        Append an event with the next sequence number.

        Raises:
            SessionNotFoundError: Unknown session
            RuntimeError: The log was already closed
        """
        log = self._get(session_id)
        if log.closed:
            raise RuntimeError(f"Event log for session '{session_id}' is closed")
        event = SessionEvent(
            sequence_number=log.last_seq + 1,
            type=event_type,
            timestamp_ms=timestamp_ms,
            payload=payload,
        )
        log.append(event)
        return event

    def close(self, session_id: str) -> None:
        """Mark the log terminal; subscribers finish once they drain it."""
        log = self._get(session_id)
        if not log.closed:
            log.closed = True
            log.notify()

    def discard(self, session_id: str) -> None:
        """Drop a session's log entirely. Live subscribers end after their backlog."""
        log = self._logs.pop(session_id, None)
        if log is not None:
            log.closed = True
            log.notify()
            self._logger.debug(f"Discarded event log for session {session_id}")

    def last_sequence(self, session_id: str) -> int:
        return self._get(session_id).last_seq

    def is_closed(self, session_id: str) -> bool:
        return self._get(session_id).closed

    def events_after(self, session_id: str, from_seq: int = 0, limit: Optional[int] = None) -> List[SessionEvent]:
        return self._get(session_id).after(from_seq, limit)

    def subscriber_count(self, session_id: str) -> int:
        return self._subscribers.get(session_id, 0)

    async def subscribe(
        self,
        session_id: str,
        from_seq: int = 0,
        heartbeat: Optional[float] = None
    ) -> AsyncIterator[Optional[SessionEvent]]:
        """
        Yield every event with sequence_number > from_seq, live, in order.

        With ``heartbeat`` set, yields None after that many idle seconds so
        transports can send keep-alives.

        Raises:
            ValueError: Negative from_seq
            SessionNotFoundError: Unknown session
        """
        if from_seq < 0:
            raise ValueError(f"from_seq must not be negative, got {from_seq}")
        log = self._get(session_id)
        cursor = from_seq

        self._subscribers[session_id] += 1
        self._logger.debug(f"Subscriber joined {session_id} from seq {from_seq}")
        try:
            while True:
                waiter = log.changed
                batch = log.after(cursor)
                if batch:
                    for event in batch:
                        yield event
                        cursor = event.sequence_number
                    continue

                if log.closed:
                    return

                if heartbeat is None:
                    await waiter.wait()
                    continue
                try:
                    await asyncio.wait_for(waiter.wait(), timeout=heartbeat)
                except asyncio.TimeoutError:
                    yield None
        finally:
            self._subscribers[session_id] -= 1
            if self._subscribers[session_id] <= 0:
                self._subscribers.pop(session_id, None)
            self._logger.debug(f"Subscriber left {session_id} at seq {cursor}")
