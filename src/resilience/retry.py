# src/resilience/retry.py — v1
"""Bounded retry executor with exponential backoff.

Used around every cache and registry call of a scan, and inside the
external API clients. Delays are asyncio sleeps so a retrying scan never
blocks other scans.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from shelfscan.resilience.transient import is_transient

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Attempts and base delay for one family of calls."""

    max_attempts: int = 3
    base_delay_s: float = 1.0

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (1-based)."""
        return self.base_delay_s * (2 ** (attempt - 1))


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    *,
    label: str = "operation",
    sleep: SleepFn = asyncio.sleep,
    classify: Callable[[BaseException], bool] = is_transient,
) -> T:
    """Run `operation`, retrying transient failures.

    Permanent errors are re-raised at once. Transient errors are retried
    after `base_delay * 2**(attempt-1)` seconds; there is no delay after
    the final attempt and the last error is re-raised unchanged. An error
    carrying a `retry_after_s` attribute waits at least that long.
    BaseExceptions that are not Exceptions (cancellation, interrupts)
    pass straight through.

    Args:
        operation: Zero-argument coroutine factory.
        max_attempts: Total attempts including the first.
        base_delay: Delay in seconds after the first failure.
        label: Name used in log lines.
        sleep: Awaitable sleep, injectable for tests.
        classify: Transience predicate.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    policy = RetryPolicy(max_attempts=max_attempts, base_delay_s=base_delay)
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            if not classify(exc):
                logger.debug("%s failed with a permanent error: %s", label, exc)
                raise
            if attempt >= policy.max_attempts:
                logger.warning(
                    "%s failed after %d attempts: %s", label, attempt, exc,
                )
                raise
            # A server-provided Retry-After lengthens the backoff, never shortens it.
            delay = max(policy.delay_for(attempt), getattr(exc, "retry_after_s", None) or 0.0)
            logger.warning(
                "%s transient failure (attempt %d/%d), retrying in %.2fs: %s",
                label, attempt, policy.max_attempts, delay, exc,
            )
            await sleep(delay)
