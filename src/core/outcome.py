# src/core/outcome.py — v1
"""Tagged result type for best-effort operations.

`Outcome[T] = Ok(T) | Degraded(T, warning) | Failed(error)` makes the
failure policy of a call site visible in its return type: the cache
service, the location step and insights return Outcomes instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def succeeded(self) -> bool:
        return True


@dataclass(frozen=True)
class Degraded(Generic[T]):
    """Usable value obtained with a reduced guarantee."""

    value: T
    warning: str

    @property
    def succeeded(self) -> bool:
        return True


@dataclass(frozen=True)
class Failed:
    error: Exception

    @property
    def succeeded(self) -> bool:
        return False


Outcome = Union[Ok[T], Degraded[T], Failed]


def value_or(outcome: Outcome[T], default: T) -> T:
    """Return the carried value, or `default` for a Failed outcome."""
    if isinstance(outcome, Failed):
        return default
    return outcome.value
