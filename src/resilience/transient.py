# src/resilience/transient.py — v1
"""Central transience classification for the retry executor.

Structured signals are consulted first (exception types, HTTP status
codes, OrchestratorError.recoverable); message patterns are the fallback
for clients that only expose a string.
"""

from __future__ import annotations

import asyncio

import httpx

from shelfscan.core.errors import ErrorCode, OrchestratorError

# Case-insensitive substrings that mark an error message as transient.
TRANSIENT_MESSAGE_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "connection",
    "network",
    "unavailable",
    "econnreset",
    "econnrefused",
    "enotfound",
    "etimedout",
    "socket hang up",
    "temporary",
    "database is locked",
)

TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})

TRANSIENT_EXCEPTION_TYPES: tuple[type[BaseException], ...] = (
    TimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
    httpx.TimeoutException,
    httpx.NetworkError,
)

# Dependency exhaustion is recoverable for the caller but retrying at once is pointless.
_NEVER_RETRIED_CODES: frozenset[str] = frozenset(
    {ErrorCode.CIRCUIT_OPEN, ErrorCode.RATE_LIMITED, ErrorCode.DISCOVERY_NOT_CONFIGURED}
)


def is_transient(error: BaseException) -> bool:
    """Return True when retrying the failed operation may succeed."""
    if not isinstance(error, Exception):
        return False

    if isinstance(error, OrchestratorError):
        return error.recoverable and error.code not in _NEVER_RETRIED_CODES

    if isinstance(error, TRANSIENT_EXCEPTION_TYPES):
        return True

    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in TRANSIENT_STATUS_CODES

    message = str(error).lower()
    return any(pattern in message for pattern in TRANSIENT_MESSAGE_PATTERNS)
