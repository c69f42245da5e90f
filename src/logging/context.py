# src/logging/context.py — v2
"""Contextual logging support: attach scan_id, session_id, user_id, step to log records."""

from __future__ import annotations

import contextvars
from dataclasses import dataclass
from typing import Any

# Set once per scan (or error report) and read by the formatters.
_scan_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "scan_id", default=None
)
_session_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "session_id", default=None
)
_user_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "user_id", default=None
)
_step: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "step", default=None
)


@dataclass
class LogContext:
    """Immutable snapshot of current logging context."""

    scan_id: str | None = None
    session_id: str | None = None
    user_id: str | None = None
    step: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict for JSON log injection."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


def get_context() -> LogContext:
    """Snapshot current context variables."""
    return LogContext(
        scan_id=_scan_id.get(),
        session_id=_session_id.get(),
        user_id=_user_id.get(),
        step=_step.get(),
    )


def set_scan_context(scan_id: str, session_id: str | None = None, user_id: str | None = None) -> None:
    """Set scan-level context (called once per scan or error report)."""
    _scan_id.set(scan_id)
    _session_id.set(session_id)
    _user_id.set(user_id)
    _step.set(None)


def set_step(step: str | None) -> None:
    """Record the orchestrator state currently executing."""
    _step.set(step)


def clear_context() -> None:
    """Reset all context variables."""
    _scan_id.set(None)
    _session_id.set(None)
    _user_id.set(None)
    _step.set(None)
