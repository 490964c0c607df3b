"""
Error Taxonomy

Domain exceptions shared by the candle sources, the session engine and the
streaming client. The HTTP layer in app/main.py maps them to status codes.

Provider errors carry a ``retryable`` flag so the retry loop in the
CryptoCompare client can decide per attempt whether to back off or give up:

    retryable      RateLimitedError (429), ProviderServerError (5xx), ProviderNetworkError
    not retryable  ProviderHTTPError (other 4xx), ProviderResponseError
"""

import asyncio
from typing import Optional

import aiohttp


class MarketDataError(Exception):
    """Base class for candle acquisition failures."""


class ProviderError(MarketDataError):
    retryable = False

    def __init__(self, message: str, provider: str = "provider"):
        super().__init__(message)
        self.provider = provider


class ProviderHTTPError(ProviderError):
    """Non-success HTTP status returned by the provider."""

    def __init__(self, status: int, message: str = "", provider: str = "provider"):
        super().__init__(f"HTTP {status} from {provider}: {message}".rstrip(": "), provider)
        self.status = status


class RateLimitedError(ProviderHTTPError):
    retryable = True


class ProviderServerError(ProviderHTTPError):
    retryable = True


class ProviderNetworkError(ProviderError):
    """Timeout, connection reset/refused, DNS failure or aborted request."""

    retryable = True


class ProviderResponseError(ProviderError):
    """Malformed body or an explicit error payload from the provider."""


# ============================================
# Session Errors
# ============================================

class SessionError(Exception):
    """Base class for simulation session failures."""


class SessionNotFoundError(SessionError):
    def __init__(self, session_id: str):
        super().__init__(f"Session '{session_id}' not found")
        self.session_id = session_id


class InvalidTransitionError(SessionError):
    def __init__(self, session_id: str, current: str, action: str):
        super().__init__(f"Cannot {action} session '{session_id}' in state '{current}'")
        self.session_id = session_id
        self.current = current
        self.action = action


# ============================================
# Stream Errors
# ============================================

class StreamError(Exception):
    """Base class for event stream transport failures."""


class StreamConnectionError(StreamError):
    """The subscription could not be opened or was dropped mid-stream."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class SessionGoneError(StreamError):
    """The server no longer knows the session; reconnecting is pointless."""


class MalformedEventError(StreamError):
    """An event payload could not be merged into client state."""


# ============================================
# Classification Helpers
# ============================================

_RETRYABLE_MARKERS = (
    "timeout",
    "timed out",
    "reset",
    "refused",
    "dns",
    "name resolution",
    "not known",
    "abort",
    "network",
    "server disconnected",
)


def is_retryable_network_error(exc: BaseException) -> bool:
    """
    Decide whether a low-level transport error is worth retrying.

    Timeouts and connection-level failures always are; anything else is
    judged by its message, which is how resolver and socket errors surface
    through aiohttp.
    """
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ServerTimeoutError, aiohttp.ClientConnectionError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)
