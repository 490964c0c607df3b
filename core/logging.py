"""
Unified Logging Configuration

This module sets up a centralized logging system for the entire application.
All modules should import and use the logger from this module instead of
using print() statements.

Usage:
    from core.logging import logger

    logger.info("Session started")

    # Per-module loggers
    from core.logging import get_logger
    logger = get_logger(__name__)   # "candlestream.market_data.cryptocompare"

Configuration:
    Log level is controlled by the LOG_LEVEL setting in .env file.
"""

import logging
import sys
from typing import Optional


ROOT_LOGGER_NAME = "candlestream"


def setup_logging(
    log_level: str = "INFO",
    log_format: Optional[str] = None,
    include_timestamp: bool = True,
    include_module: bool = True
) -> logging.Logger:
    """
    Configure and return the application logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Custom log format string (uses default if None)
        include_timestamp: Include timestamp in log messages
        include_module: Include logger name in log messages

    Returns:
        logging.Logger: Configured logger instance

    Example:
        >>> logger = setup_logging(log_level="DEBUG")
        >>> logger.info("Application started")
        2024-01-01 12:00:00 [INFO] candlestream Application started
    """
    if log_format is None:
        format_parts = []

        if include_timestamp:
            format_parts.append("%(asctime)s")

        format_parts.append("[%(levelname)s]")

        if include_module:
            format_parts.append("%(name)s")

        format_parts.append("%(message)s")

        log_format = " ".join(format_parts)

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format=log_format,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
        force=True
    )

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    return logger


# ============================================
# Initialize Logger with Settings
# ============================================

from core.config import settings  # noqa: E402

logger = setup_logging(log_level=settings.log_level)


# ============================================
# Convenience Functions
# ============================================

def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a specific module or component.

    Args:
        name: Name for the logger (typically __name__)

    Returns:
        logging.Logger: Logger instance named "candlestream.<name>"
    """
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


# ============================================
# Log Helper Functions
# ============================================

def log_api_request(provider: str, endpoint: str, params: dict = None) -> None:
    """
    Log an upstream API request with consistent formatting.

    Example:
        >>> log_api_request("cryptocompare", "/v2/histohour", {"fsym": "BTC", "tsym": "USDT"})
        [DEBUG] API Request: cryptocompare /v2/histohour | Params: {'fsym': 'BTC', 'tsym': 'USDT'}
    """
    if params:
        safe = {k: v for k, v in params.items() if k != "api_key"}
        logger.debug(f"API Request: {provider} {endpoint} | Params: {safe}")
    else:
        logger.debug(f"API Request: {provider} {endpoint}")


def log_api_response(provider: str, endpoint: str, status: int, response_time: float = None) -> None:
    """
    Log an upstream API response with status and timing information.

    Example:
        >>> log_api_response("cryptocompare", "/v2/histohour", 200, 0.342)
        [DEBUG] API Response: cryptocompare /v2/histohour | Status: 200 | Time: 0.342s
    """
    time_str = f" | Time: {response_time:.3f}s" if response_time else ""
    logger.debug(f"API Response: {provider} {endpoint} | Status: {status}{time_str}")


def log_stream_event(session_id: str, event: str, details: str = None) -> None:
    """
    Log a session stream connection event.

    Args:
        session_id: Simulation session identifier
        event: Event name ("connected", "disconnected", "reconnecting", "error", ...)
        details: Additional details (optional)

    Example:
        >>> log_stream_event("a1b2", "reconnecting", "attempt 2/5")
        [INFO] Stream: a1b2 reconnecting | attempt 2/5
    """
    details_str = f" | {details}" if details else ""
    level = logging.ERROR if event == "error" else logging.INFO
    logger.log(level, f"Stream: {session_id} {event}{details_str}")


logger.debug("Logging system initialized")
