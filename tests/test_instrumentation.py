"""Tests for perfcache.instrumentation — cache keys and monitored calls."""

import asyncio
from unittest.mock import patch

import pytest
from tenacity import wait_none

from perfcache.clients.cache import EnhancedCache
from perfcache.clients.resilience import (
    CircuitBreaker,
    CircuitOpenError,
    PermanentAPIError,
    TransientAPIError,
    retrying,
)
from perfcache.instrumentation import (
    NamedOperation,
    make_cache_key,
    monitored_call,
    monitored_gather,
)
from perfcache.monitoring.performance import PerformanceMonitor


@pytest.fixture
def monitor(clock):
    return PerformanceMonitor(clock=clock)


@pytest.fixture
def cache(clock):
    c = EnhancedCache(max_size=10, clock=clock)
    yield c
    c.destroy()


def fast_retrying(attempts=3):
    return retrying(attempts, wait=wait_none())


class TestMakeCacheKey:
    def test_format(self):
        key = make_cache_key("retail-check", "tenant-42", {"vrm": "AB12CDE"})
        prefix, digest = key.rsplit("-", 1)
        assert prefix == "retail-check-tenant-42"
        assert len(digest) == 16

    def test_parameter_order_does_not_matter(self):
        a = make_cache_key("stock", "t1", {"page": 1, "make": "Ford"})
        b = make_cache_key("stock", "t1", {"make": "Ford", "page": 1})
        assert a == b

    def test_tenants_get_different_keys(self):
        assert make_cache_key("stock", "t1") != make_cache_key("stock", "t2")

    def test_different_params_differ(self):
        assert make_cache_key("stock", "t1", {"page": 1}) != make_cache_key(
            "stock", "t1", {"page": 2}
        )

    def test_prefix_collision_between_tenants_does_not_share_key(self):
        a = make_cache_key("retail-check", "t1")
        b = make_cache_key("retail", "check-t1")
        assert a.rsplit("-", 1)[0] == b.rsplit("-", 1)[0]
        assert a != b


class TestMonitoredCall:
    async def test_records_success(self, monitor):
        async def op():
            return {"mileage": 42000}

        result = await monitored_call(op, monitor=monitor, endpoint="vehicle-lookup")
        assert result == {"mileage": 42000}
        metric = monitor.export_metrics().metrics[0]
        assert metric.endpoint == "vehicle-lookup"
        assert metric.success is True
        assert metric.cache_hit is False
        assert metric.retry_count == 0

    async def test_cache_hit_skips_operation(self, monitor, cache):
        calls = 0

        async def op():
            nonlocal calls
            calls += 1
            return "fresh"

        for _ in range(2):
            result = await monitored_call(
                op, monitor=monitor, endpoint="valuation", cache=cache, cache_key="k"
            )
            assert result == "fresh"

        assert calls == 1
        hits = [m.cache_hit for m in monitor.export_metrics().metrics]
        assert hits == [False, True]

    async def test_none_result_is_not_cached(self, monitor, cache):
        async def op():
            return None

        await monitored_call(op, monitor=monitor, endpoint="x", cache=cache, cache_key="k")
        assert cache.has("k") is False

    async def test_failure_recorded_and_reraised(self, monitor, cache):
        async def op():
            raise PermanentAPIError("404")

        with pytest.raises(PermanentAPIError, match="404"):
            await monitored_call(op, monitor=monitor, endpoint="x", cache=cache, cache_key="k")

        metric = monitor.export_metrics().metrics[0]
        assert metric.success is False
        assert metric.error_type == "PermanentAPIError"
        assert cache.has("k") is False

    async def test_retry_count_recorded(self, monitor):
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise TransientAPIError("503")
            return "ok"

        with patch("perfcache.instrumentation.retrying", fast_retrying):
            result = await monitored_call(flaky, monitor=monitor, endpoint="x", retry=True)

        assert result == "ok"
        assert monitor.export_metrics().metrics[0].retry_count == 2

    async def test_retry_exhausted_records_failure(self, monitor):
        async def always_fails():
            raise TransientAPIError("503")

        with patch("perfcache.instrumentation.retrying", fast_retrying):
            with pytest.raises(TransientAPIError):
                await monitored_call(always_fails, monitor=monitor, endpoint="x", retry=True)

        metric = monitor.export_metrics().metrics[0]
        assert metric.success is False
        assert metric.retry_count == 2

    async def test_breaker_open_is_recorded(self, monitor):
        breaker = CircuitBreaker("vehicle_data", fail_max=1)

        async def fail():
            raise PermanentAPIError("down")

        with pytest.raises(PermanentAPIError):
            await monitored_call(fail, monitor=monitor, endpoint="x", breaker=breaker)
        with pytest.raises(CircuitOpenError):
            await monitored_call(fail, monitor=monitor, endpoint="x", breaker=breaker)

        errors = [m.error_type for m in monitor.export_metrics().metrics]
        assert errors == ["PermanentAPIError", "CircuitOpenError"]

    async def test_cache_write_failure_still_returns_result(self, monitor, cache):
        async def op():
            return "fresh"

        # ttl_ms=0 is rejected by the cache on write
        result = await monitored_call(
            op, monitor=monitor, endpoint="valuation", cache=cache, cache_key="k", ttl_ms=0
        )

        assert result == "fresh"
        assert cache.has("k") is False
        metrics = monitor.export_metrics().metrics
        assert len(metrics) == 1
        assert metrics[0].success is True

    async def test_cache_write_error_still_returns_result(self, monitor, clock):
        store = EnhancedCache(max_size=10, clock=clock)
        calls = 0

        async def op():
            nonlocal calls
            calls += 1
            return "fresh"

        with patch.object(store, "set", side_effect=RuntimeError("store down")):
            result = await monitored_call(
                op, monitor=monitor, endpoint="valuation", cache=store, cache_key="k"
            )

        assert result == "fresh"
        assert calls == 1
        assert monitor.export_metrics().metrics[0].success is True
        store.destroy()


class TestMonitoredGather:
    async def test_results_in_order(self, monitor):
        async def slow():
            await asyncio.sleep(0.01)
            return "slow"

        async def fast():
            return "fast"

        results = await monitored_gather(
            [NamedOperation("a", slow), NamedOperation("b", fast)], monitor=monitor
        )

        assert results == ["slow", "fast"]
        by_endpoint = {m.endpoint: m.success for m in monitor.export_metrics().metrics}
        assert by_endpoint == {"a": True, "b": True, "parallel-operations": True}

    async def test_optional_failure_uses_fallback(self, monitor):
        async def ok():
            return {"valuation": 9500}

        async def broken():
            raise TransientAPIError("503")

        results = await monitored_gather(
            [
                NamedOperation("valuation", ok),
                NamedOperation("history", broken, required=False, fallback=[]),
            ],
            monitor=monitor,
        )

        assert results == [{"valuation": 9500}, []]
        history = monitor.get_endpoint_stats("history")
        assert history.failed_requests == 1
        overall = [m for m in monitor.export_metrics().metrics if m.endpoint == "parallel-operations"]
        assert overall[0].success is True

    async def test_required_failure_raises_after_all_finish(self, monitor):
        finished = []

        async def broken():
            raise PermanentAPIError("404")

        async def slow():
            await asyncio.sleep(0.01)
            finished.append("slow")
            return "done"

        with pytest.raises(PermanentAPIError, match="404"):
            await monitored_gather(
                [NamedOperation("lookup", broken), NamedOperation("extra", slow, required=False)],
                monitor=monitor,
            )

        assert finished == ["slow"]
        metrics = {m.endpoint: m for m in monitor.export_metrics().metrics}
        assert metrics["lookup"].error_type == "PermanentAPIError"
        assert metrics["parallel-operations"].success is False

    async def test_timeout_recorded_per_operation(self, monitor):
        async def hangs():
            await asyncio.sleep(1)

        results = await monitored_gather(
            [NamedOperation("stuck", hangs, required=False, fallback="cached")],
            monitor=monitor,
            timeout_ms=10,
        )

        assert results == ["cached"]
        stuck = [m for m in monitor.export_metrics().metrics if m.endpoint == "stuck"][0]
        assert stuck.success is False
        assert stuck.error_type == "TimeoutError"
