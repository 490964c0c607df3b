"""
Normalized Data Schemas

This module defines Pydantic models for the candle, session and event types
shared by every component of the engine.

Models:
    - Timeframe: Supported candle widths (1m, 15m, 1h, 1d)
    - Candle: Immutable OHLCV value object, bucket-aligned to its timeframe
    - SessionStatus / EventType: Session lifecycle states and event kinds
    - SessionEvent: One sequenced entry in a session's event log
    - SimulationSession: Live replay session state
    - SessionCreateRequest: Body of POST /sessions
    - GapInfo / LoadCandlesResult: Candle loading results with gap reporting
    - TradeMarker: Entry/exit annotation derived by the streaming client

Every price is a float; timestamps are epoch milliseconds (UTC).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from core.utils.symbols import normalize_symbol


# ============================================
# Timeframe
# ============================================

class Timeframe(str, Enum):
    """
    Candle width. Only these four granularities are supported.

    Example:
        >>> Timeframe.parse("15min").ms
        900000
    """

    M1 = "1m"
    M15 = "15m"
    H1 = "1h"
    D1 = "1d"

    @property
    def ms(self) -> int:
        return TIMEFRAME_MS[self]

    @classmethod
    def parse(cls, value: Any) -> "Timeframe":
        """Resolve a timeframe or one of its aliases; raises ValueError otherwise."""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        key = TIMEFRAME_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            valid = ", ".join(tf.value for tf in cls)
            raise ValueError(f"Unsupported timeframe: '{value}'. Must be one of: {valid}") from None


TIMEFRAME_MS: Dict[Timeframe, int] = {
    Timeframe.M1: 60_000,
    Timeframe.M15: 15 * 60_000,
    Timeframe.H1: 60 * 60_000,
    Timeframe.D1: 24 * 60 * 60_000,
}

TIMEFRAME_ALIASES: Dict[str, str] = {
    "1min": "1m",
    "15min": "15m",
    "60m": "1h",
    "60min": "1h",
    "1hr": "1h",
    "1day": "1d",
    "d": "1d",
}


# ============================================
# Candle
# ============================================

class Candle(BaseModel):
    """
    One OHLCV aggregate over a fixed time bucket.

    Candles are immutable once produced. A later candle with the same
    timestamp replaces an earlier one (upsert), it never sits beside it.

    Invariant:
        low <= min(open, close) <= max(open, close) <= high, volume >= 0

    Example:
        >>> Candle(timestamp_ms=0, open=100.0, high=101.0, low=99.5, close=100.4, volume=12.0)
    """

    timestamp_ms: int = Field(..., ge=0, description="Bucket open time (epoch ms, UTC)")
    open: float = Field(..., ge=0, description="Opening price")
    high: float = Field(..., ge=0, description="Highest price in the bucket")
    low: float = Field(..., ge=0, description="Lowest price in the bucket")
    close: float = Field(..., ge=0, description="Closing price")
    volume: float = Field(..., ge=0, description="Traded volume in base asset")

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "timestamp_ms": 1704067200000,
                "open": 42250.5,
                "high": 42410.0,
                "low": 42180.25,
                "close": 42390.75,
                "volume": 1284.3
            }
        }
    )

    @model_validator(mode="after")
    def _check_consistency(self) -> "Candle":
        validate_candle_consistency(self)
        return self


def validate_candle_consistency(candle: Candle) -> bool:
    """
    Validate that a candle is logically consistent.

    Raises:
        ValueError: If high/low do not bracket open and close
    """
    if candle.high < candle.low:
        raise ValueError(f"High ({candle.high}) cannot be less than Low ({candle.low})")

    if candle.high < candle.open or candle.high < candle.close:
        raise ValueError(f"High ({candle.high}) must be >= Open ({candle.open}) and Close ({candle.close})")

    if candle.low > candle.open or candle.low > candle.close:
        raise ValueError(f"Low ({candle.low}) must be <= Open ({candle.open}) and Close ({candle.close})")

    return True


# ============================================
# Session Lifecycle
# ============================================

class SessionStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    FINISHED = "finished"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (SessionStatus.CREATED, SessionStatus.RUNNING, SessionStatus.PAUSED)

    @property
    def is_terminal(self) -> bool:
        return not self.is_active


class EventType(str, Enum):
    CANDLE = "candle"
    SIGNAL = "signal"
    ORDER = "order"
    FILL = "fill"
    TRADE = "trade"
    EQUITY = "equity"
    STATUS = "status"
    ERROR = "error"


class SessionEvent(BaseModel):
    """
    One entry of a session's event log.

    Sequence numbers start at 1 and increase by exactly one per event, so a
    consumer that has processed N resumes with fromSeq=N.
    """

    sequence_number: int = Field(..., ge=1, description="Position in the session log")
    type: EventType = Field(..., description="Event kind")
    timestamp_ms: int = Field(..., ge=0, description="Market time the event refers to")
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "sequence_number": 42,
                "type": "candle",
                "timestamp_ms": 1704067200000,
                "payload": {"candle": {"timestamp_ms": 1704067200000, "open": 42250.5}}
            }
        }
    )


class SimulationSession(BaseModel):
    """
    Live replay of historical or synthetic candles.

    Mutated only by the engine: control operations change ``status`` and the
    runner advances ``progress``, ``candles_processed`` and
    ``last_sequence_number``.
    """

    id: str
    symbol: str
    timeframe: Timeframe
    start_time: int = Field(..., ge=0, description="Range start (epoch ms, inclusive)")
    end_time: int = Field(..., ge=0, description="Range end (epoch ms, exclusive)")
    speed_multiplier: float = Field(1.0, gt=0)
    realtime: bool = True
    status: SessionStatus = SessionStatus.CREATED
    last_sequence_number: int = Field(0, ge=0)
    progress: float = Field(0.0, ge=0.0, le=1.0)
    candles_processed: int = Field(0, ge=0)
    total_candles: int = Field(0, ge=0)
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(validate_assignment=True)


class SessionCreateRequest(BaseModel):
    symbol: str = Field(..., examples=["BTCUSDT"])
    timeframe: Timeframe = Field(..., examples=["15m"])
    start_time: int = Field(..., ge=0)
    end_time: int = Field(..., ge=0)
    speed_multiplier: float = Field(1.0, gt=0, le=10_000)
    realtime: bool = True
    autostart: bool = False

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        symbol = normalize_symbol(v)
        if not symbol:
            raise ValueError("symbol must not be empty")
        return symbol

    @field_validator("timeframe", mode="before")
    @classmethod
    def validate_timeframe(cls, v: Any) -> Timeframe:
        return Timeframe.parse(v)

    @model_validator(mode="after")
    def _check_range(self) -> "SessionCreateRequest":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be greater than start_time")
        return self


# ============================================
# Candle Loading Results
# ============================================

class GapInfo(BaseModel):
    start_ms: int
    end_ms: int
    expected_bars: int
    missing_bars: int
    reason: str = "missing_candles_after_retry"


class LoadCandlesResult(BaseModel):
    symbol: str
    timeframe: Timeframe
    candles: List[Candle] = Field(default_factory=list)
    gaps: List[GapInfo] = Field(default_factory=list)
    source: str
    requested_timeframe: Optional[Timeframe] = None
    downsampled: bool = False


class TradeMarker(BaseModel):
    timestamp_ms: int
    price: float
    kind: Literal["entry", "exit"]
    side: str = "LONG"
    label: str = ""
