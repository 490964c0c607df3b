"""
Server-Sent Events Codec

Wire format for session events on GET /sessions/{id}/stream:

    id: 42
    event: candle
    data: {"sequence_number": 42, "type": "candle", ...}
    <blank line>

The ``id`` field carries the sequence number so standard EventSource
clients resume with Last-Event-ID. Lines starting with ":" are keep-alive
comments and carry no event.
"""

from typing import List, Optional

from core.schemas import SessionEvent

SSE_KEEPALIVE = ": ping\n\n"


def encode_sse(event: SessionEvent) -> str:
    return f"id: {event.sequence_number}\nevent: {event.type.value}\ndata: {event.model_dump_json()}\n\n"


class SSEDecoder:
    """
    Incremental SSE line decoder.

    Feed it lines (with or without trailing newline); it returns a
    SessionEvent each time a blank line completes a record.

    Example:
        >>> decoder = SSEDecoder()
        >>> for line in lines:
        ...     event = decoder.feed(line)
        ...     if event is not None:
        ...         handle(event)
    """

    def __init__(self) -> None:
        self._data: List[str] = []
        self.last_event_id: Optional[str] = None
        self.event_name: Optional[str] = None

    def feed(self, line: str) -> Optional[SessionEvent]:
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "data":
            self._data.append(value)
        elif field == "id":
            self.last_event_id = value
        elif field == "event":
            self.event_name = value
        return None

    def _dispatch(self) -> Optional[SessionEvent]:
        if not self._data:
            self.event_name = None
            return None
        payload = "\n".join(self._data)
        self._data = []
        self.event_name = None
        return SessionEvent.model_validate_json(payload)
