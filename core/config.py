"""
Configuration Management Module

This module handles loading, validating, and providing access to application configuration
from environment variables (.env file).

Uses Pydantic Settings for automatic validation and type conversion.

Key Features:
- Loads configuration from .env file
- Selects the candle source (synthetic generator or CryptoCompare provider)
- Tunes provider pagination, throttling, retry and timeout behaviour
- Controls session replay pacing and stream reconnection budgets
- Converts comma-separated strings to lists (backoff steps, CORS origins)

Usage:
    from core.config import settings

    print(settings.market_data_mode)     # "synthetic" or "cryptocompare"
    print(settings.backoff_schedule)     # [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]
"""

from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


MARKET_DATA_MODES = ("synthetic", "cryptocompare")


class Settings(BaseSettings):
    """
    Application Settings

    Values are automatically loaded from environment variables or .env file.

    Attributes:
        market_data_mode: Which CandleSource backs the process ("synthetic" or "cryptocompare")
        cryptocompare_base_url: Base URL of the CryptoCompare data API
        cryptocompare_api_key: API key (optional, raises provider rate limits)
        provider_page_size: Maximum candles returned by one provider page
        provider_throttle_ms: Delay between consecutive page requests
        provider_request_timeout: Hard timeout for a single provider request (seconds)
        provider_max_retries: Retries per page after the first attempt
        provider_backoff_steps: Comma-separated backoff delays in seconds
        synthetic_fallback: Fill provider gaps from the synthesizer
        max_bars: Largest number of bars a single load may return
        session_candle_batch: Candles pulled from the source per engine refill
        replay_seconds_per_candle: Wall-clock time per candle at speed 1.0
        strategy_warmup_bars: Bars the strategy observes before trading
        stream_heartbeat_seconds: Idle interval before an SSE keep-alive comment
        stream_reconnect_delay: Client wait between reconnect attempts (seconds)
        stream_max_reconnect_attempts: Client reconnect budget
        stream_window_size: Client rolling candle window size
        stream_max_markers: Client trade marker cap
    """

    # ============================================
    # Market Data Source Configuration
    # ============================================

    market_data_mode: str = Field(
        default="synthetic",
        description="Candle source: 'synthetic' (deterministic generator) or 'cryptocompare'"
    )

    cryptocompare_base_url: str = Field(
        default="https://min-api.cryptocompare.com/data",
        description="CryptoCompare data API base URL"
    )

    cryptocompare_api_key: str = Field(
        default="",
        description="CryptoCompare API key (optional)"
    )

    synthetic_fallback: bool = Field(
        default=True,
        description="Fill ranges the provider could not serve with synthetic candles"
    )

    # ============================================
    # Provider Pagination & Retry
    # ============================================

    provider_page_size: int = Field(
        default=2000,
        description="Maximum number of candles per provider page"
    )

    provider_throttle_ms: int = Field(
        default=250,
        description="Delay between consecutive page requests (milliseconds)"
    )

    provider_request_timeout: float = Field(
        default=15.0,
        description="Hard timeout for one provider request (seconds)"
    )

    provider_max_retries: int = Field(
        default=5,
        description="Retries per page request after the first attempt"
    )

    provider_backoff_steps: str = Field(
        default="1,2,4,8,16,30",
        description="Comma-separated backoff delays in seconds"
    )

    # ============================================
    # Candle Loading
    # ============================================

    max_bars: int = Field(
        default=20_000,
        description="Maximum number of bars returned by one candle load"
    )

    # ============================================
    # Simulation Sessions
    # ============================================

    session_candle_batch: int = Field(
        default=100,
        description="Number of candles the engine pulls per source request"
    )

    replay_seconds_per_candle: float = Field(
        default=1.0,
        description="Wall-clock seconds per candle at speed multiplier 1.0"
    )

    strategy_warmup_bars: int = Field(
        default=50,
        description="Bars observed before the strategy starts trading"
    )

    # ============================================
    # Event Streaming
    # ============================================

    stream_heartbeat_seconds: float = Field(
        default=15.0,
        description="Idle seconds before an SSE keep-alive comment is sent"
    )

    stream_reconnect_delay: float = Field(
        default=3.0,
        description="Delay between stream reconnection attempts (seconds)"
    )

    stream_max_reconnect_attempts: int = Field(
        default=5,
        description="Maximum consecutive stream reconnection attempts"
    )

    stream_window_size: int = Field(
        default=500,
        description="Maximum candles kept in the client rolling window"
    )

    stream_max_markers: int = Field(
        default=200,
        description="Maximum trade markers kept by the client"
    )

    # ============================================
    # Application Configuration
    # ============================================

    app_host: str = Field(
        default="0.0.0.0",
        description="FastAPI server host address"
    )

    app_port: int = Field(
        default=8000,
        description="FastAPI server port"
    )

    environment: str = Field(
        default="development",
        description="Application environment (development, production)"
    )

    debug: bool = Field(
        default=True,
        description="Enable debug mode"
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma-separated list of allowed CORS origins"
    )

    # ============================================
    # Pydantic Settings Configuration
    # ============================================

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False
    )

    # ============================================
    # Custom Properties
    # ============================================

    @property
    def backoff_schedule(self) -> List[float]:
        """
        Convert the comma-separated backoff steps to a list of delays.

        Example:
            >>> settings.backoff_schedule
            [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]
        """
        return [float(s.strip()) for s in self.provider_backoff_steps.split(",") if s.strip()]

    @property
    def cors_origins_list(self) -> List[str]:
        """Convert comma-separated CORS origins string to a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def use_provider(self) -> bool:
        """True when candles come from the remote provider rather than the synthesizer."""
        return self.market_data_mode.strip().lower() == "cryptocompare"


# ============================================
# Global Settings Instance
# ============================================

settings = Settings()


# ============================================
# Configuration Validation
# ============================================

def validate_configuration(config: Settings = None) -> None:
    """
    Validate critical configuration settings on application startup.

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    # logging.py imports config.py, so import lazily
    from core.logging import logger

    config = config or settings

    mode = config.market_data_mode.strip().lower()
    if mode not in MARKET_DATA_MODES:
        raise ValueError(
            f"Invalid MARKET_DATA_MODE: '{config.market_data_mode}'. "
            f"Must be one of: {', '.join(MARKET_DATA_MODES)}"
        )

    if not (1 <= config.app_port <= 65535):
        raise ValueError(f"Invalid port number: {config.app_port}. Must be between 1 and 65535")

    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if config.log_level.upper() not in valid_log_levels:
        raise ValueError(
            f"Invalid LOG_LEVEL: '{config.log_level}'. "
            f"Must be one of: {', '.join(valid_log_levels)}"
        )

    if config.provider_page_size <= 0:
        raise ValueError(f"PROVIDER_PAGE_SIZE must be positive, got {config.provider_page_size}")

    if config.provider_max_retries < 0:
        raise ValueError(f"PROVIDER_MAX_RETRIES must not be negative, got {config.provider_max_retries}")

    schedule = config.backoff_schedule
    if not schedule:
        raise ValueError("PROVIDER_BACKOFF_STEPS must contain at least one delay")
    if any(later < earlier for earlier, later in zip(schedule, schedule[1:])):
        raise ValueError(f"PROVIDER_BACKOFF_STEPS must be non-decreasing, got {schedule}")

    if config.max_bars <= 0:
        raise ValueError(f"MAX_BARS must be positive, got {config.max_bars}")

    logger.info("Configuration validated successfully")
    logger.info(f"Market data mode: {mode}")
    if mode == "cryptocompare":
        logger.info(f"CryptoCompare API: {config.cryptocompare_base_url}")
    logger.info(f"Server: {config.app_host}:{config.app_port}")
    logger.info(f"Log level: {config.log_level.upper()}")
