# tests/unit/resilience/test_retry.py — v1
"""Tests for resilience/retry.py and resilience/transient.py."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from shelfscan.core.errors import ErrorCode, ErrorSource, OrchestratorError
from shelfscan.resilience.retry import RetryPolicy, with_retry
from shelfscan.resilience.transient import is_transient


def _http_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.example.com/products")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class TestRetryPolicy:
    def test_exponential_delays(self):
        policy = RetryPolicy(max_attempts=4, base_delay_s=1.0)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self, fake_sleep):
        op = AsyncMock(return_value="ok")
        assert await with_retry(op, sleep=fake_sleep) == "ok"
        assert op.await_count == 1
        fake_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transient_exhausts_attempts_with_backoff(self, fake_sleep):
        op = AsyncMock(side_effect=ConnectionError("connection reset"))
        with pytest.raises(ConnectionError):
            await with_retry(op, 3, 1.0, sleep=fake_sleep)
        assert op.await_count == 3
        assert [c.args[0] for c in fake_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_recovers_after_transient(self, fake_sleep):
        op = AsyncMock(side_effect=[TimeoutError("timed out"), "ok"])
        assert await with_retry(op, 3, 0.5, sleep=fake_sleep) == "ok"
        assert [c.args[0] for c in fake_sleep.await_args_list] == [0.5]

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self, fake_sleep):
        op = AsyncMock(side_effect=ValueError("bad input"))
        with pytest.raises(ValueError):
            await with_retry(op, 3, 1.0, sleep=fake_sleep)
        assert op.await_count == 1
        fake_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retry_after_lengthens_delay(self, fake_sleep):
        err = ConnectionError("connection refused")
        err.retry_after_s = 5.0
        op = AsyncMock(side_effect=[err, "ok"])
        await with_retry(op, 3, 1.0, sleep=fake_sleep)
        assert fake_sleep.await_args_list[0].args[0] == 5.0

    @pytest.mark.asyncio
    async def test_retry_after_never_shortens_delay(self, fake_sleep):
        err = ConnectionError("connection refused")
        err.retry_after_s = 0.1
        op = AsyncMock(side_effect=[err, "ok"])
        await with_retry(op, 3, 1.0, sleep=fake_sleep)
        assert fake_sleep.await_args_list[0].args[0] == 1.0

    @pytest.mark.asyncio
    async def test_cancellation_passes_through(self, fake_sleep):
        op = AsyncMock(side_effect=asyncio.CancelledError())
        with pytest.raises(asyncio.CancelledError):
            await with_retry(op, 3, 1.0, sleep=fake_sleep)
        assert op.await_count == 1

    @pytest.mark.asyncio
    async def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            await with_retry(AsyncMock(), 0)


class TestIsTransient:
    @pytest.mark.parametrize(
        "message",
        ["Request timeout", "ECONNRESET", "socket hang up", "database is locked", "Service Unavailable"],
    )
    def test_message_patterns(self, message):
        assert is_transient(RuntimeError(message)) is True

    def test_plain_error_is_permanent(self):
        assert is_transient(RuntimeError("invalid api key")) is False

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    def test_transient_status(self, status):
        assert is_transient(_http_error(status)) is True

    @pytest.mark.parametrize("status", [400, 401, 404])
    def test_permanent_status(self, status):
        assert is_transient(_http_error(status)) is False

    def test_httpx_timeout(self):
        assert is_transient(httpx.ReadTimeout("slow")) is True

    def test_recoverable_orchestrator_error(self):
        err = OrchestratorError(ErrorCode.REGISTRY_QUERY_FAILED, "locked", ErrorSource.REGISTRY, recoverable=True)
        assert is_transient(err) is True

    @pytest.mark.parametrize(
        "code", [ErrorCode.CIRCUIT_OPEN, ErrorCode.RATE_LIMITED, ErrorCode.DISCOVERY_NOT_CONFIGURED]
    )
    def test_exhaustion_codes_never_retried(self, code):
        err = OrchestratorError(code, "x", ErrorSource.IDENTIFICATION_PIPELINE, recoverable=True)
        assert is_transient(err) is False

    def test_base_exception(self):
        assert is_transient(KeyboardInterrupt()) is False
