# src/resilience/circuit_breaker.py — v1
"""Circuit breaker guarding one external dependency.

CLOSED -> OPEN after `failure_threshold` consecutive failures.
OPEN -> HALF_OPEN once `reset_timeout_s` has elapsed since the last failure.
HALF_OPEN admits a single trial call: success closes the circuit,
failure re-opens it.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout_s: float = 60.0,
        name: str = "dependency",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self._failure_threshold = failure_threshold
        self._reset_timeout_s = reset_timeout_s
        self._name = name
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at = 0.0
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def allow_request(self) -> bool:
        """Return True if a call may be attempted now.

        In HALF_OPEN only the first caller gets True until the trial
        outcome is recorded.
        """
        with self._lock:
            if self._state is CircuitState.CLOSED:
                return True

            if self._state is CircuitState.OPEN:
                if self._clock() - self._last_failure_at < self._reset_timeout_s:
                    return False
                logger.info("Circuit '%s' half-open, admitting trial call", self._name)
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = True
                return True

            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state is not CircuitState.CLOSED:
                logger.info("Circuit '%s' closed", self._name)
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_at = self._clock()
            self._trial_in_flight = False
            if (
                self._state is CircuitState.HALF_OPEN
                or self._failure_count >= self._failure_threshold
            ):
                if self._state is not CircuitState.OPEN:
                    logger.warning(
                        "Circuit '%s' opened after %d consecutive failures",
                        self._name, self._failure_count,
                    )
                self._state = CircuitState.OPEN

    def seconds_until_half_open(self) -> float:
        with self._lock:
            if self._state is not CircuitState.OPEN:
                return 0.0
            return max(0.0, self._reset_timeout_s - (self._clock() - self._last_failure_at))
