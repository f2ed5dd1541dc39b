"""Resilience primitives for upstream calls: exception hierarchy, retry, circuit breaker."""

import logging
import time
from enum import StrEnum

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

logger = logging.getLogger(__name__)


# ── Exception Hierarchy ──────────────────────────────────────────────────────


class APIError(Exception):
    """Base class for errors raised by upstream data providers."""


class TransientAPIError(APIError):
    """Retriable errors (rate limits, timeouts, 5xx)."""


class PermanentAPIError(APIError):
    """Non-retriable errors (bad request, not found, forbidden)."""


class CircuitOpenError(APIError):
    """Circuit breaker is open — calls are being shed."""


# ── Retry ─────────────────────────────────────────────────────────────────

RETRY_ATTEMPTS = 3


def log_retry_attempt(retry_state: RetryCallState) -> None:
    """Tenacity ``before_sleep`` callback that logs each retry."""
    attempt = retry_state.attempt_number
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning("Retry attempt %d after error: %s", attempt, exc)


def retrying(attempts: int = RETRY_ATTEMPTS, *, wait: wait_base | None = None) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` loop with the standard policy.

    Useful when the caller needs the attempt number, e.g. to report how many
    retries an operation took.
    """
    return AsyncRetrying(
        retry=retry_if_exception_type(TransientAPIError),
        stop=stop_after_attempt(attempts),
        wait=wait if wait is not None else wait_exponential(multiplier=1, min=1, max=10),
        before_sleep=log_retry_attempt,
        reraise=True,
    )


# ── Circuit Breaker ──────────────────────────────────────────────────────────


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Lightweight async circuit breaker.

    Args:
        name: Human-readable name for logging.
        fail_max: Consecutive failures before opening.
        reset_timeout: Seconds to wait before trying again (half-open).
    """

    def __init__(
        self, name: str, fail_max: int = 5, reset_timeout: float = 60.0
    ) -> None:
        self.name = name
        self.fail_max = fail_max
        self.reset_timeout = reset_timeout

        self._state = CircuitState.CLOSED
        self._fail_count = 0
        self._last_failure_time: float = 0.0

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN:
            if time.monotonic() - self._last_failure_time >= self.reset_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    async def call_async(self, coro):  # type: ignore[no-untyped-def]
        """Execute *coro*, applying circuit-breaker logic.

        Raises:
            CircuitOpenError: If the circuit is OPEN.
        """
        current = self.state
        if current == CircuitState.OPEN:
            coro.close()
            raise CircuitOpenError(f"Circuit '{self.name}' is open")

        try:
            result = await coro
        except Exception:
            self._fail_count += 1
            self._last_failure_time = time.monotonic()
            if self._fail_count >= self.fail_max:
                self._state = CircuitState.OPEN
                logger.warning("Circuit '%s' opened after %d failures", self.name, self._fail_count)
            elif current == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning("Circuit '%s' re-opened on half-open failure", self.name)
            raise

        self._fail_count = 0
        self._state = CircuitState.CLOSED
        return result

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        self._fail_count = 0
        self._state = CircuitState.CLOSED
