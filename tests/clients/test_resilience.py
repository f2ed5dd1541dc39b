"""Tests for perfcache.clients.resilience — exceptions, retry, circuit breaker."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest
from tenacity import wait_exponential, wait_none

from perfcache.clients.resilience import (
    APIError,
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    PermanentAPIError,
    TransientAPIError,
    log_retry_attempt,
    retrying,
)


class TestExceptionHierarchy:
    def test_transient_is_api_error(self):
        assert issubclass(TransientAPIError, APIError)

    def test_permanent_is_api_error(self):
        assert issubclass(PermanentAPIError, APIError)

    def test_circuit_open_is_api_error(self):
        assert issubclass(CircuitOpenError, APIError)


class TestLogRetryAttempt:
    def test_logs_retry_info(self):
        state = MagicMock()
        state.attempt_number = 2
        state.outcome.exception.return_value = TransientAPIError("boom")
        with patch("perfcache.clients.resilience.logger") as mock_logger:
            log_retry_attempt(state)
            mock_logger.warning.assert_called_once()
            assert "2" in str(mock_logger.warning.call_args)

    def test_logs_with_no_outcome(self):
        state = MagicMock()
        state.attempt_number = 1
        state.outcome = None
        with patch("perfcache.clients.resilience.logger") as mock_logger:
            log_retry_attempt(state)
            mock_logger.warning.assert_called_once()


class TestRetrying:
    def test_default_policy_backs_off_exponentially(self):
        policy = retrying()
        assert isinstance(policy.wait, wait_exponential)
        assert policy.reraise is True

    def test_wait_override(self):
        wait = wait_none()
        assert retrying(wait=wait).wait is wait

    async def test_permanent_error_not_retried(self):
        calls = 0

        async def fail_permanent():
            nonlocal calls
            calls += 1
            raise PermanentAPIError("bad")

        with pytest.raises(PermanentAPIError):
            async for attempt in retrying(wait=wait_none()):
                with attempt:
                    await fail_permanent()
        assert calls == 1

    async def test_transient_error_retried_until_success(self):
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise TransientAPIError("503")
            return "ok"

        async for attempt in retrying(wait=wait_none()):
            with attempt:
                result = await flaky()
        assert result == "ok"
        assert attempt.retry_state.attempt_number == 3

    async def test_gives_up_after_attempts(self):
        calls = 0

        async def always_fails():
            nonlocal calls
            calls += 1
            raise TransientAPIError("503")

        with pytest.raises(TransientAPIError):
            async for attempt in retrying(2, wait=wait_none()):
                with attempt:
                    await always_fails()
        assert calls == 2


class TestCircuitBreaker:
    async def test_closed_passes_through(self):
        cb = CircuitBreaker("test", fail_max=3, reset_timeout=1.0)

        async def success():
            return "ok"

        assert await cb.call_async(success()) == "ok"
        assert cb.state == CircuitState.CLOSED
        assert cb.is_open is False

    async def test_opens_after_fail_max(self):
        cb = CircuitBreaker("test", fail_max=2, reset_timeout=60.0)

        async def fail():
            raise ValueError("boom")

        for _ in range(2):
            with pytest.raises(ValueError):
                await cb.call_async(fail())

        assert cb.state == CircuitState.OPEN
        assert cb.is_open is True

    async def test_open_raises_without_running_coro(self):
        cb = CircuitBreaker("vehicle_data", fail_max=1, reset_timeout=60.0)
        ran = False

        async def fail():
            raise ValueError("boom")

        async def tracked():
            nonlocal ran
            ran = True

        with pytest.raises(ValueError):
            await cb.call_async(fail())

        with pytest.raises(CircuitOpenError, match="vehicle_data"):
            await cb.call_async(tracked())
        assert ran is False

    async def test_half_open_after_timeout(self):
        cb = CircuitBreaker("test", fail_max=1, reset_timeout=0.01)

        async def fail():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await cb.call_async(fail())

        await asyncio.sleep(0.02)
        assert cb.state == CircuitState.HALF_OPEN

    async def test_half_open_success_resets_to_closed(self):
        cb = CircuitBreaker("test", fail_max=1, reset_timeout=0.01)

        async def fail():
            raise ValueError("boom")

        async def success():
            return "recovered"

        with pytest.raises(ValueError):
            await cb.call_async(fail())
        await asyncio.sleep(0.02)

        assert await cb.call_async(success()) == "recovered"
        assert cb.state == CircuitState.CLOSED

    async def test_half_open_failure_returns_to_open(self):
        cb = CircuitBreaker("test", fail_max=2, reset_timeout=0.01)

        async def fail():
            raise ValueError("boom")

        for _ in range(2):
            with pytest.raises(ValueError):
                await cb.call_async(fail())
        await asyncio.sleep(0.02)
        assert cb.state == CircuitState.HALF_OPEN

        cb._fail_count = 0
        with pytest.raises(ValueError):
            await cb.call_async(fail())
        assert cb._state == CircuitState.OPEN

    def test_reset_closes_breaker(self):
        cb = CircuitBreaker("test", fail_max=1)
        cb._state = CircuitState.OPEN
        cb._fail_count = 4
        cb.reset()
        assert cb.state == CircuitState.CLOSED
        assert cb._fail_count == 0
