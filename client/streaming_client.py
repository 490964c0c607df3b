"""
Session Streaming Client

Consumer side of GET /sessions/{id}/stream. It keeps a cursor (``last_seq``)
across reconnects, so every event is processed exactly once even when the
connection drops mid-stream.

Connection state machine:

    connecting ──> connected ──(drop/error)──> reconnecting ──> connected ...
         │                                          │
         └───────────(closed / terminal / budget exhausted)──> disconnected

Reconnect Strategy:
    - Fixed delay between attempts (stream_reconnect_delay)
    - At most stream_max_reconnect_attempts consecutive failures; the
      counter resets once a connection is established
    - No reconnect once a terminal session status has been received
    - The wait is cancellable: close() ends it immediately

Usage:
    async with StreamingClient("http://localhost:8000", session_id, timeframe="15m") as client:
        await client.connect()
        print(client.last_seq, client.session_status, len(client.window))
"""

import aiohttp
import asyncio
from collections import deque
from enum import Enum
from typing import Any, AsyncIterator, Callable, Deque, Dict, Optional

from core.config import settings
from core.errors import MalformedEventError, SessionGoneError, StreamConnectionError, StreamError
from core.logging import get_logger, log_stream_event
from core.schemas import Candle, EventType, SessionEvent, SessionStatus, Timeframe
from core.sse import SSEDecoder
from client.candle_window import RollingCandleWindow, TradeMarkerBuffer

EVENT_HISTORY = 200
EQUITY_HISTORY = 100


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"


class StreamingClient:
    """
    Resumable SSE subscriber for one simulation session.

    Attributes:
        status: Current ConnectionStatus
        last_seq: Highest sequence number processed
        session_status: Last session status seen in a ``status`` event
        window: Rolling candle window fed by ``candle`` events
        markers: Trade markers derived from ``trade`` events
        events: Most recent events (bounded)
        gave_up: True when the reconnect budget was exhausted
    """

    def __init__(
        self,
        base_url: str,
        session_id: str,
        timeframe: Optional[str] = None,
        window_size: Optional[int] = None,
        max_markers: Optional[int] = None,
        reconnect_delay: Optional[float] = None,
        max_reconnect_attempts: Optional[int] = None,
        read_timeout: float = 45.0,
        http_session: Optional[aiohttp.ClientSession] = None,
        on_event: Optional[Callable[[SessionEvent], Any]] = None,
        on_status: Optional[Callable[[ConnectionStatus], Any]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.session_id = session_id
        self.timeframe = Timeframe.parse(timeframe) if timeframe else None
        self.reconnect_delay = settings.stream_reconnect_delay if reconnect_delay is None else reconnect_delay
        self.max_reconnect_attempts = (
            settings.stream_max_reconnect_attempts if max_reconnect_attempts is None else max_reconnect_attempts
        )
        self.read_timeout = read_timeout
        self.on_event = on_event
        self.on_status = on_status

        self.status = ConnectionStatus.DISCONNECTED
        self.last_seq = 0
        self.session_status: Optional[SessionStatus] = None
        self.window = RollingCandleWindow(window_size or settings.stream_window_size)
        self.markers = TradeMarkerBuffer(max_markers or settings.stream_max_markers)
        self.events: Deque[SessionEvent] = deque(maxlen=EVENT_HISTORY)
        self.equity_history: Deque[Dict[str, Any]] = deque(maxlen=EQUITY_HISTORY)
        self.reconnect_attempts = 0
        self.duplicates_skipped = 0
        self.gave_up = False
        self.session_gone = False

        self._http = http_session
        self._owns_http = http_session is None
        self._response: Optional[aiohttp.ClientResponse] = None
        self._closing = asyncio.Event()
        self.logger = get_logger(__name__)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def is_terminal(self) -> bool:
        return self.session_status is not None and self.session_status.is_terminal

    # ============================================
    # Connection Loop
    # ============================================

    async def connect(self) -> ConnectionStatus:
        """
        Consume the session stream until it is over.

        Returns when the session reaches a terminal status, close() is called,
        the server no longer knows the session, or the reconnect budget is
        spent. The final status is always ``disconnected``; check
        ``is_terminal`` and ``gave_up`` to tell the cases apart.
        """
        failures = 0
        self._set_status(ConnectionStatus.CONNECTING)
        try:
            while not self._closing.is_set():
                stream = None
                try:
                    stream = await self._open_stream(self.last_seq)
                    self._set_status(ConnectionStatus.CONNECTED)
                    async for event in stream:
                        if self.handle_event(event):
                            failures = 0
                        if self.is_terminal:
                            break
                    if not self.is_terminal:
                        self.logger.warning(f"Stream for {self.session_id} ended at seq {self.last_seq}")
                except SessionGoneError as e:
                    log_stream_event(self.session_id, "error", str(e))
                    self.session_gone = True
                    break
                except (StreamError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                    log_stream_event(self.session_id, "error", str(e) or e.__class__.__name__)
                finally:
                    if stream is not None:
                        await stream.aclose()
                    await self._release_response()

                if self.is_terminal or self._closing.is_set():
                    break

                failures += 1
                self.reconnect_attempts += 1
                if failures > self.max_reconnect_attempts:
                    self.gave_up = True
                    self.logger.error(
                        f"Giving up on {self.session_id} after {self.max_reconnect_attempts} reconnect attempts"
                    )
                    break

                self._set_status(ConnectionStatus.RECONNECTING)
                log_stream_event(
                    self.session_id,
                    "reconnecting",
                    f"attempt {failures}/{self.max_reconnect_attempts} in {self.reconnect_delay}s from seq {self.last_seq}",
                )
                await self._wait(self.reconnect_delay)
        finally:
            self._set_status(ConnectionStatus.DISCONNECTED)
            if self._owns_http and self._http is not None:
                await self._http.close()
                self._http = None
        return self.status

    async def close(self) -> None:
        """Stop the connection loop and drop the active subscription."""
        self._closing.set()
        await self._release_response()

    async def _wait(self, delay: float) -> None:
        if delay <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._closing.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    # ============================================
    # Transport
    # ============================================

    async def _open_stream(self, from_seq: int) -> AsyncIterator[SessionEvent]:
        """
        Open one subscription starting after ``from_seq``.

        Raises:
            SessionGoneError: HTTP 404
            StreamConnectionError: Any other non-200 status
        """
        if self._http is None:
            self._http = aiohttp.ClientSession()

        await self._release_response()
        url = f"{self.base_url}/sessions/{self.session_id}/stream"
        resp = await self._http.get(
            url,
            params={"fromSeq": from_seq},
            headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
            timeout=aiohttp.ClientTimeout(total=None, sock_connect=10, sock_read=self.read_timeout),
        )
        if resp.status == 404:
            resp.release()
            raise SessionGoneError(f"Session {self.session_id} not found on server")
        if resp.status != 200:
            text = await resp.text()
            resp.release()
            raise StreamConnectionError(f"HTTP {resp.status} opening stream: {text[:200]}", resp.status)

        self._response = resp
        log_stream_event(self.session_id, "connected", f"from seq {from_seq}")
        return self._iter_events(resp)

    async def _iter_events(self, resp: aiohttp.ClientResponse) -> AsyncIterator[SessionEvent]:
        decoder = SSEDecoder()
        async for raw in resp.content:
            event = decoder.feed(raw.decode("utf-8"))
            if event is not None:
                yield event

    async def _release_response(self) -> None:
        if self._response is not None:
            self._response.close()
            self._response = None

    # ============================================
    # Event Merge
    # ============================================

    def handle_event(self, event: SessionEvent) -> bool:
        """
        Merge one event into client state.

        The payload is merged before ``last_seq`` moves, so an event that
        cannot be merged is requested again on the next connection.

        Returns:
            False when the event was already processed (sequence_number <= last_seq)

        Raises:
            MalformedEventError: The payload is missing fields or fails validation
        """
        seq = event.sequence_number
        if seq <= self.last_seq:
            self.duplicates_skipped += 1
            return False
        if seq != self.last_seq + 1:
            self.logger.warning(f"Sequence jump on {self.session_id}: {self.last_seq} -> {seq}")

        payload = event.payload
        try:
            if event.type == EventType.CANDLE:
                self.window.upsert(Candle.model_validate(payload["candle"]))
            elif event.type == EventType.TRADE:
                width = self._width_for(payload)
                if width:
                    self.markers.add_trade(payload, event.timestamp_ms, width)
            elif event.type == EventType.EQUITY:
                self.equity_history.append(payload)
            elif event.type == EventType.STATUS:
                self.session_status = SessionStatus(payload["status"])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedEventError(f"Malformed {event.type.value} event seq {seq}: {e}") from e

        self.last_seq = seq
        self.events.append(event)
        if self.on_event is not None:
            self.on_event(event)
        return True

    def _width_for(self, payload: Dict[str, Any]) -> Optional[int]:
        if self.timeframe is not None:
            return self.timeframe.ms
        if payload.get("timeframe"):
            return Timeframe.parse(payload["timeframe"]).ms
        return None

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self.status:
            return
        self.status = status
        if status in (ConnectionStatus.CONNECTED, ConnectionStatus.DISCONNECTED):
            log_stream_event(self.session_id, status.value)
        if self.on_status is not None:
            self.on_status(status)
