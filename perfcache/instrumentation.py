"""Helpers that wrap upstream calls with caching, resilience and metrics."""

import asyncio
import hashlib
import json
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from perfcache.clients.cache import EnhancedCache
from perfcache.clients.resilience import CircuitBreaker, retrying
from perfcache.monitoring.performance import PerformanceMonitor

logger = logging.getLogger(__name__)

T = TypeVar("T")

GATHER_TIMEOUT_MS = 10_000
GATHER_ENDPOINT = "parallel-operations"


def make_cache_key(endpoint: str, tenant_id: str, params: dict[str, Any] | None = None) -> str:
    """Build a deterministic cache key scoped to one tenant.

    The digest covers the endpoint, the tenant id and the parameters
    (serialised with sorted keys), so two tenants never share a key even
    when their readable prefixes happen to coincide.
    """
    payload = json.dumps(
        {"endpoint": endpoint, "tenant": tenant_id, "params": params or {}},
        sort_keys=True,
        default=str,
    )
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]
    return f"{endpoint}-{tenant_id}-{digest}"


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


async def monitored_call(
    operation: Callable[[], Awaitable[T]],
    *,
    monitor: PerformanceMonitor,
    endpoint: str,
    cache: EnhancedCache | None = None,
    cache_key: str | None = None,
    ttl_ms: int | None = None,
    breaker: CircuitBreaker | None = None,
    retry: bool = False,
) -> T:
    """Run *operation* with optional cache-aside, circuit breaker and retry.

    Exactly one metric is recorded per call. Cache hits are recorded as
    successes with ``cache_hit=True`` and never invoke *operation*. Errors
    from *operation* are recorded with the exception class name and
    re-raised unchanged. A failure to store the result is logged and does
    not affect the returned value.

    Args:
        operation: Zero-argument coroutine function doing the real work.
        monitor: Where the timing record goes.
        endpoint: Stable logical name of the operation.
        cache: Cache to consult and fill; requires *cache_key*.
        cache_key: Key for *cache*.
        ttl_ms: TTL for the stored result (cache default when None).
        breaker: Circuit breaker guarding the upstream.
        retry: Retry ``TransientAPIError`` with the standard policy.

    Returns:
        The cached or freshly fetched result.
    """
    start = time.perf_counter()
    use_cache = cache is not None and cache_key is not None

    if use_cache:
        cached = cache.get(cache_key)
        if cached is not None:
            monitor.record_metric(endpoint, _elapsed_ms(start), True, cache_hit=True)
            return cached

    attempts = 0

    async def attempt_once() -> T:
        nonlocal attempts
        attempts += 1
        if breaker is not None:
            return await breaker.call_async(operation())
        return await operation()

    try:
        if retry:
            async for attempt in retrying():
                with attempt:
                    result = await attempt_once()
        else:
            result = await attempt_once()
    except Exception as exc:
        monitor.record_metric(
            endpoint,
            _elapsed_ms(start),
            False,
            cache_hit=False,
            error_type=type(exc).__name__,
            retry_count=max(attempts - 1, 0),
        )
        raise

    if use_cache and result is not None:
        try:
            cache.set(cache_key, result, ttl_ms)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Cache set failed for %s (%s): %s", endpoint, cache_key, exc)
        else:
            logger.debug("Cached result for %s: %s", endpoint, cache_key)

    monitor.record_metric(
        endpoint,
        _elapsed_ms(start),
        True,
        cache_hit=False,
        retry_count=max(attempts - 1, 0),
    )
    return result


@dataclass
class NamedOperation(Generic[T]):
    """One unit of work for ``monitored_gather``.

    A failing optional operation yields *fallback*; a failing required one
    fails the whole gather.
    """

    name: str
    operation: Callable[[], Awaitable[T]]
    required: bool = True
    fallback: T | None = None


async def monitored_gather(
    operations: Sequence[NamedOperation[Any]],
    *,
    monitor: PerformanceMonitor,
    timeout_ms: int = GATHER_TIMEOUT_MS,
    endpoint: str = GATHER_ENDPOINT,
) -> list[Any]:
    """Run *operations* concurrently, each under its own timeout.

    Every operation records a metric under its own name, and the batch as a
    whole records one under *endpoint*. All operations are allowed to
    finish before a required failure is raised, so optional work is never
    cut short by a sibling's error.

    Returns:
        Results in the order of *operations*, with fallbacks substituted for
        failed optional operations.

    Raises:
        Exception: The first failure among required operations, in order.
    """
    start = time.perf_counter()
    timeout = timeout_ms / 1000

    async def run_one(op: NamedOperation[Any]) -> Any:
        op_start = time.perf_counter()
        try:
            result = await asyncio.wait_for(op.operation(), timeout)
        except Exception as exc:
            monitor.record_metric(
                op.name, _elapsed_ms(op_start), False, error_type=type(exc).__name__
            )
            if op.required:
                raise
            logger.warning("Optional operation %s failed, using fallback: %s", op.name, exc)
            return op.fallback
        monitor.record_metric(op.name, _elapsed_ms(op_start), True)
        return result

    logger.debug("Executing %d operations in parallel", len(operations))
    results = await asyncio.gather(*(run_one(op) for op in operations), return_exceptions=True)
    failure = next((r for r in results if isinstance(r, BaseException)), None)

    monitor.record_metric(endpoint, _elapsed_ms(start), failure is None)
    if failure is not None:
        raise failure
    return results
