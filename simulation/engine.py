"""
Simulation Session Engine

Owns the lifecycle of live replay sessions. Each running session is one
asyncio task that pulls candles from the CandleSource in batches, runs the
strategy on each candle and publishes the resulting events to the
SessionEventStream.

State machine:

    created ──start──> running <──pause/resume──> paused
       │                  │                          │
       └──────stop────────┴──────────stop────────────┴──> stopped
                          ├── end of range ──> finished
                          └── source/internal error ──> failed (also from paused)

stopped, finished and failed are terminal: no control operation leaves them.
Every transition appends a ``status`` event to the session log and is
announced on the ``session_status`` notification topic.

Usage:
    engine = SimulationSessionEngine(source, SessionEventStream(), notifier=bus)
    session = engine.create_session(request)
    await engine.start(session.id)
"""

import asyncio
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional, Set

from core.candle_source import CandleSource
from core.config import settings
from core.errors import InvalidTransitionError, MarketDataError, SessionNotFoundError
from core.logging import get_logger
from core.schemas import (
    Candle,
    EventType,
    SessionCreateRequest,
    SessionStatus,
    SimulationSession,
    Timeframe,
)
from core.utils.time import align_to_grid
from services.notifications import SESSION_STATUS_TOPIC, NotificationBus
from simulation.event_stream import SessionEventStream
from simulation.strategy import StrategyRunner

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[SessionStatus, Set[SessionStatus]] = {
    SessionStatus.CREATED: {SessionStatus.RUNNING, SessionStatus.STOPPED, SessionStatus.FAILED},
    SessionStatus.RUNNING: {SessionStatus.PAUSED, SessionStatus.STOPPED, SessionStatus.FINISHED, SessionStatus.FAILED},
    SessionStatus.PAUSED: {SessionStatus.RUNNING, SessionStatus.STOPPED, SessionStatus.FAILED},
}


class _SessionRuntime:
    """Mutable per-session state owned by the engine."""

    def __init__(self, session: SimulationSession, strategy: StrategyRunner):
        self.session = session
        self.strategy = strategy
        self.width = session.timeframe.ms
        self.cursor_ms = session.start_time
        self.fetch_cursor_ms = session.start_time
        self.buffer: Deque[Candle] = deque()
        self.resume = asyncio.Event()
        self.task: Optional[asyncio.Task] = None


class SimulationSessionEngine:
    """
    Runs any number of independent sessions on the current event loop.

    Args:
        source: CandleSource the sessions replay
        stream: Event log all session events are published to
        notifier: Optional bus receiving session_status notifications
        candle_batch: Candles requested from the source per refill
        seconds_per_candle: Wall-clock pacing at speed 1.0 for realtime sessions
        warmup_bars: Strategy warm-up length
        max_bars: Longest session range accepted, in bars
    """

    def __init__(
        self,
        source: CandleSource,
        stream: Optional[SessionEventStream] = None,
        notifier: Optional[NotificationBus] = None,
        candle_batch: Optional[int] = None,
        seconds_per_candle: Optional[float] = None,
        warmup_bars: Optional[int] = None,
        max_bars: Optional[int] = None,
    ):
        self.source = source
        self.stream = stream or SessionEventStream()
        self.notifier = notifier
        self.candle_batch = candle_batch or settings.session_candle_batch
        self.seconds_per_candle = settings.replay_seconds_per_candle if seconds_per_candle is None else seconds_per_candle
        self.warmup_bars = settings.strategy_warmup_bars if warmup_bars is None else warmup_bars
        self.max_bars = max_bars or settings.max_bars
        self._runtimes: Dict[str, _SessionRuntime] = {}

    # ============================================
    # Session Control API
    # ============================================

    def create_session(self, request: SessionCreateRequest) -> SimulationSession:
        """
        Register a new session in the ``created`` state.

        The range is widened to whole buckets.

        Raises:
            ValueError: If the range exceeds max_bars
        """
        timeframe = Timeframe.parse(request.timeframe)
        width = timeframe.ms
        start = align_to_grid(request.start_time, width)
        end = -(-request.end_time // width) * width
        total = (end - start) // width
        if total > self.max_bars:
            raise ValueError(f"Session range spans {total} bars; the limit is {self.max_bars}")

        session = SimulationSession(
            id=uuid.uuid4().hex,
            symbol=request.symbol,
            timeframe=timeframe,
            start_time=start,
            end_time=end,
            speed_multiplier=request.speed_multiplier,
            realtime=request.realtime,
            total_candles=total,
        )
        runtime = _SessionRuntime(
            session,
            StrategyRunner(session.symbol, timeframe, warmup_bars=self.warmup_bars),
        )
        self._runtimes[session.id] = runtime
        self.stream.open(session.id)
        self._emit_status(runtime, None, "Session created")

        logger.info(
            f"Session {session.id} created: {session.symbol} {timeframe.value} "
            f"{total} candles at x{session.speed_multiplier}"
        )
        return session.model_copy()

    async def start(self, session_id: str) -> SimulationSession:
        runtime = self._get(session_id)
        if runtime.session.status != SessionStatus.CREATED:
            raise InvalidTransitionError(session_id, runtime.session.status.value, "start")
        self._transition(runtime, SessionStatus.RUNNING, "start")
        runtime.resume.set()
        runtime.task = asyncio.create_task(self._run(runtime), name=f"session-{session_id}")
        return runtime.session.model_copy()

    async def pause(self, session_id: str) -> SimulationSession:
        runtime = self._get(session_id)
        self._transition(runtime, SessionStatus.PAUSED, "pause")
        runtime.resume.clear()
        return runtime.session.model_copy()

    async def resume(self, session_id: str) -> SimulationSession:
        runtime = self._get(session_id)
        if runtime.session.status != SessionStatus.PAUSED:
            raise InvalidTransitionError(session_id, runtime.session.status.value, "resume")
        self._transition(runtime, SessionStatus.RUNNING, "resume")
        runtime.resume.set()
        return runtime.session.model_copy()

    async def stop(self, session_id: str) -> SimulationSession:
        runtime = self._get(session_id)
        self._transition(runtime, SessionStatus.STOPPED, "stop", "Stopped by request")
        await self._cancel_task(runtime)
        return runtime.session.model_copy()

    def get_status(self, session_id: str) -> SimulationSession:
        return self._get(session_id).session.model_copy()

    def list_sessions(self) -> List[SimulationSession]:
        return [rt.session.model_copy() for rt in self._runtimes.values()]

    async def delete_session(self, session_id: str) -> None:
        """Stop the session if still active, then drop it and its event log."""
        runtime = self._get(session_id)
        if runtime.session.status.is_active:
            await self.stop(session_id)
        await self._cancel_task(runtime)
        self._runtimes.pop(session_id, None)
        self.stream.discard(session_id)
        logger.info(f"Session {session_id} deleted")

    async def shutdown(self) -> None:
        """Stop every active session. Called from the application lifespan."""
        for session_id, runtime in list(self._runtimes.items()):
            if runtime.session.status.is_active:
                self._transition(runtime, SessionStatus.STOPPED, "stop", "Server shutting down")
            await self._cancel_task(runtime)
        logger.info("Simulation engine shut down")

    # ============================================
    # Runner
    # ============================================

    async def _run(self, runtime: _SessionRuntime) -> None:
        session = runtime.session
        try:
            while True:
                await runtime.resume.wait()

                if not runtime.buffer:
                    if runtime.fetch_cursor_ms >= session.end_time:
                        break
                    runtime.buffer.extend(await self._next_batch(runtime))
                    continue

                candle = runtime.buffer.popleft()
                for event_type, ts, payload in runtime.strategy.on_candle(candle):
                    self._publish(runtime, event_type, ts, payload)

                runtime.cursor_ms = candle.timestamp_ms + runtime.width
                session.candles_processed += 1
                session.progress = min(1.0, session.candles_processed / max(1, session.total_candles))

                await self._pace(session)

            session.progress = 1.0
            self._transition(runtime, SessionStatus.FINISHED, "finish", "Reached end of range")
            logger.info(f"Session {session.id} finished after {session.candles_processed} candles")

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Session {session.id} failed: {e}")
            self._fail(runtime, str(e))

    async def _next_batch(self, runtime: _SessionRuntime) -> List[Candle]:
        """
        Pull the next batch and check it before anything is emitted.

        Raises:
            MarketDataError: Empty batch before end of range, or a batch that is
                             misaligned, out of window or not strictly increasing
        """
        session = runtime.session
        batch_start = runtime.fetch_cursor_ms
        batch_end = min(session.end_time, batch_start + self.candle_batch * runtime.width)

        candles = await self.source.fetch_candles(session.symbol, session.timeframe, batch_start, batch_end)
        if not candles:
            raise MarketDataError(f"Candle source exhausted at {batch_start} before end of range {session.end_time}")

        previous = batch_start - runtime.width
        for candle in candles:
            ts = candle.timestamp_ms
            if ts % runtime.width != 0 or not (batch_start <= ts < batch_end) or ts <= previous:
                raise MarketDataError(f"Corrupted candle batch from {self.source.name}: unexpected timestamp {ts}")
            previous = ts

        runtime.fetch_cursor_ms = batch_end
        logger.debug(f"Session {session.id} loaded {len(candles)} candles [{batch_start}, {batch_end})")
        return candles

    async def _pace(self, session: SimulationSession) -> None:
        if session.realtime and self.seconds_per_candle > 0:
            await asyncio.sleep(self.seconds_per_candle / session.speed_multiplier)
        else:
            await asyncio.sleep(0)

    async def _cancel_task(self, runtime: _SessionRuntime) -> None:
        task = runtime.task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ============================================
    # Transitions & Events
    # ============================================

    def _get(self, session_id: str) -> _SessionRuntime:
        runtime = self._runtimes.get(session_id)
        if runtime is None:
            raise SessionNotFoundError(session_id)
        return runtime

    def _transition(self, runtime: _SessionRuntime, target: SessionStatus, action: str, message: Optional[str] = None) -> None:
        session = runtime.session
        current = session.status
        if target not in ALLOWED_TRANSITIONS.get(current, set()):
            raise InvalidTransitionError(session.id, current.value, action)
        session.status = target
        session.updated_at = datetime.now(timezone.utc)
        self._emit_status(runtime, current, message)
        logger.info(f"Session {session.id}: {current.value} -> {target.value}")

    def _fail(self, runtime: _SessionRuntime, message: str) -> None:
        session = runtime.session
        if SessionStatus.FAILED not in ALLOWED_TRANSITIONS.get(session.status, set()):
            return
        session.error_message = message
        self._publish(runtime, EventType.ERROR, runtime.cursor_ms, {"message": message})
        self._transition(runtime, SessionStatus.FAILED, "fail", message)

    def _publish(self, runtime: _SessionRuntime, event_type: EventType, timestamp_ms: int, payload: dict) -> None:
        event = self.stream.publish(runtime.session.id, event_type, timestamp_ms, payload)
        runtime.session.last_sequence_number = event.sequence_number

    def _emit_status(self, runtime: _SessionRuntime, previous: Optional[SessionStatus], message: Optional[str]) -> None:
        session = runtime.session
        payload = {
            "status": session.status.value,
            "previous": previous.value if previous else None,
            "message": message,
            "progress": session.progress,
            "candles_processed": session.candles_processed,
            "total_candles": session.total_candles,
        }
        self._publish(runtime, EventType.STATUS, runtime.cursor_ms, payload)

        if session.status.is_terminal:
            self.stream.close(session.id)

        if self.notifier is not None:
            self.notifier.publish(SESSION_STATUS_TOPIC, {
                "session_id": session.id,
                "symbol": session.symbol,
                "status": session.status.value,
                "previous": payload["previous"],
                "message": message,
                "at_ms": runtime.cursor_ms,
            })
