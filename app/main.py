"""
FastAPI Application - Candle Data & Live Session Streaming API

Provides REST access to historical candles and simulated trading sessions,
plus a resumable Server-Sent Events stream per session.

Candle Sources:
    - synthetic: Deterministic generator (default, no network)
    - cryptocompare: CryptoCompare historical API (MARKET_DATA_MODE=cryptocompare)

Usage:
    uvicorn app.main:app --reload --host 0.0.0.0 --port 8000

Docs:
    - Swagger: http://localhost:8000/docs
    - ReDoc: http://localhost:8000/redoc
"""

import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from core.config import settings, validate_configuration
from core.errors import InvalidTransitionError, ProviderError, SessionNotFoundError
from core.logging import logger
from core.schemas import (
    LoadCandlesResult,
    SessionCreateRequest,
    SessionEvent,
    SimulationSession,
    Timeframe,
)
from core.source_factory import get_candle_source
from core.sse import SSE_KEEPALIVE, encode_sse
from core.utils.time import align_to_grid, current_utc_ms
from market_data.loader import CandleLoader
from market_data.synthetic import DeterministicCandleSynthesizer, describe_presets
from services.notifications import SESSION_STATUS_TOPIC, bus
from simulation.engine import SimulationSessionEngine
from simulation.event_stream import SessionEventStream
from storage.candle_cache import CandleCache

DEFAULT_CHART_BARS = 500


# ============================================
# Lifespan Management
# ============================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown."""
    logger.info("=== Application Starting ===")
    try:
        validate_configuration()
        await candle_source.initialize()
        logger.info("=== Started Successfully ===")
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        raise

    yield

    logger.info("=== Shutting Down ===")
    try:
        await engine.shutdown()
        await candle_source.shutdown()
        logger.info("=== Shutdown Complete ===")
    except Exception as e:
        logger.error(f"Shutdown error: {e}")


# ============================================
# FastAPI Application
# ============================================

app = FastAPI(
    title="Candlestream Market Data & Session API",
    description=(
        "Historical candles and live simulated trading sessions.\n\n"
        "## REST Endpoints\n"
        "- `GET /candles/{symbol}/{timeframe}` - Historical candles with gap report\n"
        "- `POST /sessions` - Create a simulation session\n"
        "- `POST /sessions/{id}/start|pause|resume|stop` - Session control\n"
        "- `GET /sessions/{id}` - Session status and progress\n"
        "- `GET /sessions/{id}/events?fromSeq=N` - Stored events after N\n\n"
        "## Streams\n"
        "- `GET /sessions/{id}/stream?fromSeq=N` - Server-Sent Events, resumable by sequence number\n"
        "- `ws://{host}/ws/sessions/status` - Session lifecycle notifications\n"
    ),
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)

candle_source = get_candle_source()
event_stream = SessionEventStream()
engine = SimulationSessionEngine(candle_source, event_stream, notifier=bus)
loader = CandleLoader(
    candle_source,
    CandleCache(),
    fallback=DeterministicCandleSynthesizer() if settings.use_provider and settings.synthetic_fallback else None,
)


# ============================================
# System Endpoints
# ============================================

@app.get("/", tags=["System"])
async def root():
    """API information and active candle source."""
    return {
        "name": "Candlestream Market Data & Session API",
        "version": "1.0.0",
        "status": "operational",
        "docs": "/docs",
        "candle_source": candle_source.name,
        "sessions": len(engine.list_sessions()),
    }


@app.get("/health", tags=["System"])
async def health_check():
    """Health check - asks the candle source whether its provider is reachable."""
    reachable = await candle_source.health_check()
    if not reachable:
        logger.warning(f"Candle source {candle_source.name} failed its health check")

    return {
        "status": "healthy" if reachable else "degraded",
        "provider": {"name": candle_source.name, "reachable": reachable},
        "cache": loader.cache.stats(),
        "notification_subscribers": bus.subscriber_count(SESSION_STATUS_TOPIC),
    }


@app.get("/timeframes", tags=["System"])
async def list_timeframes():
    return {"timeframes": [{"value": tf.value, "ms": tf.ms} for tf in Timeframe]}


@app.get("/presets", tags=["System"])
async def list_presets():
    """Synthetic generator presets, keyed by base asset."""
    return {"presets": describe_presets()}


# ============================================
# Candle Endpoints
# ============================================

@app.get("/candles/{symbol}/{timeframe}", response_model=LoadCandlesResult, tags=["Market Data"])
async def get_candles(
    symbol: str,
    timeframe: str,
    start_ms: Optional[int] = Query(default=None, ge=0, description="Range start (epoch ms, inclusive)"),
    end_ms: Optional[int] = Query(default=None, ge=0, description="Range end (epoch ms, exclusive)"),
    max_bars: int = Query(default=5000, ge=1, le=20_000, description="Downsample above this many bars")
):
    """
    Get historical candles with gap reporting.

    Without a range, returns the most recent 500 bars.

    Examples:
        GET /candles/BTCUSDT/15m?start_ms=0&end_ms=10800000
        GET /candles/ETHUSDT/1m?start_ms=1704067200000&end_ms=1706745600000&max_bars=2000
    """
    try:
        tf = Timeframe.parse(timeframe)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if end_ms is None:
        end_ms = align_to_grid(current_utc_ms(), tf.ms)
    if start_ms is None:
        start_ms = max(0, end_ms - DEFAULT_CHART_BARS * tf.ms)
    if end_ms <= start_ms:
        raise HTTPException(status_code=400, detail="end_ms must be greater than start_ms")

    return await loader.load_for_chart(symbol, tf, start_ms, end_ms, max_bars)


# ============================================
# Session Control Endpoints
# ============================================

@app.post("/sessions", response_model=SimulationSession, status_code=201, tags=["Sessions"])
async def create_session(request: SessionCreateRequest):
    """
    Create a simulation session (optionally starting it right away).

    Example body:
        {"symbol": "BTCUSDT", "timeframe": "15m", "start_time": 0, "end_time": 10800000,
         "speed_multiplier": 4, "autostart": true}
    """
    try:
        session = engine.create_session(request)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if request.autostart:
        session = await engine.start(session.id)
    return session


@app.get("/sessions", response_model=List[SimulationSession], tags=["Sessions"])
async def list_sessions():
    return engine.list_sessions()


@app.get("/sessions/{session_id}", response_model=SimulationSession, tags=["Sessions"])
async def get_session(session_id: str):
    return engine.get_status(session_id)


@app.delete("/sessions/{session_id}", status_code=204, tags=["Sessions"])
async def delete_session(session_id: str):
    await engine.delete_session(session_id)


@app.post("/sessions/{session_id}/start", response_model=SimulationSession, tags=["Sessions"])
async def start_session(session_id: str):
    return await engine.start(session_id)


@app.post("/sessions/{session_id}/pause", response_model=SimulationSession, tags=["Sessions"])
async def pause_session(session_id: str):
    return await engine.pause(session_id)


@app.post("/sessions/{session_id}/resume", response_model=SimulationSession, tags=["Sessions"])
async def resume_session(session_id: str):
    return await engine.resume(session_id)


@app.post("/sessions/{session_id}/stop", response_model=SimulationSession, tags=["Sessions"])
async def stop_session(session_id: str):
    return await engine.stop(session_id)


# ============================================
# Session Event Endpoints
# ============================================

@app.get("/sessions/{session_id}/events", response_model=List[SessionEvent], tags=["Sessions"])
async def get_session_events(
    session_id: str,
    from_seq: int = Query(default=0, ge=0, alias="fromSeq", description="Return events after this sequence number"),
    limit: int = Query(default=1000, ge=1, le=10_000)
):
    """Stored events after ``fromSeq``; readable after the session has ended."""
    return event_stream.events_after(session_id, from_seq, limit)


@app.get("/sessions/{session_id}/stream", tags=["Sessions"])
async def stream_session_events(
    session_id: str,
    request: Request,
    from_seq: int = Query(default=0, ge=0, alias="fromSeq", description="Resume after this sequence number"),
    last_event_id: Optional[str] = Header(default=None, alias="Last-Event-ID")
):
    """
    Server-Sent Events stream of a session's log.

    Replays every event with sequence_number > fromSeq, then follows the
    session live. The stream ends after the terminal ``status`` event.

    Example:
        curl -N "http://localhost:8000/sessions/{id}/stream?fromSeq=120"
    """
    if not event_stream.has_session(session_id):
        raise SessionNotFoundError(session_id)

    start_seq = from_seq
    if last_event_id and last_event_id.strip().isdigit():
        start_seq = max(start_seq, int(last_event_id.strip()))

    async def event_source():
        logger.info(f"SSE connected: session {session_id} from seq {start_seq}")
        try:
            async for event in event_stream.subscribe(
                session_id, start_seq, heartbeat=settings.stream_heartbeat_seconds
            ):
                if await request.is_disconnected():
                    break
                yield SSE_KEEPALIVE if event is None else encode_sse(event)
        finally:
            logger.info(f"SSE ended: session {session_id}")

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.websocket("/ws/sessions/status")
async def websocket_session_status(
    websocket: WebSocket,
    session_id: Optional[str] = Query(default=None, description="Only forward this session's notifications")
):
    """
    Session lifecycle notifications.

    Example:
        ws://localhost:8000/ws/sessions/status?session_id=3f2a...
    """
    await websocket.accept()
    logger.info("WS connected: sessions/status")
    queue = await bus.subscribe(SESSION_STATUS_TOPIC)

    async def forward():
        while True:
            message = await queue.get()
            if session_id and message.get("session_id") != session_id:
                continue
            await websocket.send_json(message)

    forwarder = asyncio.create_task(forward())
    try:
        # inbound frames are ignored; receiving only detects the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("WS disconnected: sessions/status")
    finally:
        forwarder.cancel()
        try:
            await forwarder
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(f"WS forwarder for sessions/status failed: {e!r}")
        await bus.unsubscribe(SESSION_STATUS_TOPIC, queue)
        logger.info("WS ended: sessions/status")


# ============================================
# Error Handlers
# ============================================

@app.exception_handler(SessionNotFoundError)
async def session_not_found_handler(request, exc):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request, exc):
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "status": exc.current, "action": exc.action}
    )


@app.exception_handler(ProviderError)
async def provider_error_handler(request, exc):
    logger.error(f"Provider error: {exc}")
    return JSONResponse(status_code=502, content={"detail": str(exc), "provider": exc.provider})


@app.exception_handler(500)
async def internal_error_handler(request, exc):
    """Handle 500 errors."""
    logger.error(f"Internal error: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})
