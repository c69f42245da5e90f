# src/resilience/guard.py — v2
"""Circuit breaker, rate limiter and retry composed around one external API.

Each attempt first takes a limiter slot (checked and recorded under one
lock), then asks the breaker for permission; a refusal raises a
recoverable OrchestratorError (CIRCUIT_OPEN or RATE_LIMITED) without
calling the dependency, and those codes are never retried. A slot taken
for an attempt the breaker refuses is given back, so the limiter counts
only requests actually sent.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from shelfscan.core.errors import ErrorCode, ErrorSource, OrchestratorError
from shelfscan.resilience.circuit_breaker import CircuitBreaker
from shelfscan.resilience.rate_limiter import RateLimiter
from shelfscan.resilience.retry import RetryPolicy, SleepFn, with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ServiceGuard:
    """Shared resilience state for one external client."""

    def __init__(
        self,
        name: str,
        rate_limiter: RateLimiter | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or RateLimiter()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(name=name)
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        label: str,
        timeout_s: float | None = None,
    ) -> T:
        """Run `operation` behind the breaker and limiter, with retries.

        `timeout_s` bounds each attempt; a timeout counts as a transient
        failure.
        """

        async def _attempt() -> T:
            self._admit()
            try:
                if timeout_s is not None:
                    result = await asyncio.wait_for(operation(), timeout=timeout_s)
                else:
                    result = await operation()
            except Exception:
                self.circuit_breaker.record_failure()
                raise
            self.circuit_breaker.record_success()
            return result

        return await with_retry(
            _attempt,
            self.retry_policy.max_attempts,
            self.retry_policy.base_delay_s,
            label=label,
            sleep=self._sleep,
        )

    def _admit(self) -> None:
        # Limiter first: a refused request must not consume the half-open trial.
        stamp = self.rate_limiter.try_acquire()
        if stamp is None:
            wait = self.rate_limiter.get_wait_time()
            raise OrchestratorError(
                ErrorCode.RATE_LIMITED,
                f"{self.name} rate limit exceeded, retry in {wait:.0f}s",
                ErrorSource.IDENTIFICATION_PIPELINE,
                recoverable=True,
                context={"service": self.name, "retry_after_s": round(wait, 1)},
            )
        if not self.circuit_breaker.allow_request():
            self.rate_limiter.release(stamp)
            raise OrchestratorError(
                ErrorCode.CIRCUIT_OPEN,
                f"{self.name} circuit breaker is open",
                ErrorSource.IDENTIFICATION_PIPELINE,
                recoverable=True,
                context={
                    "service": self.name,
                    "retry_after_s": round(self.circuit_breaker.seconds_until_half_open(), 1),
                },
            )
