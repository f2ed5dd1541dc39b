"""Rolling-window performance metrics for upstream and internal operations.

Callers record one ``PerformanceMetric`` per timed operation; queries
aggregate the records that fall inside a window ending "now". All
durations and timestamps are milliseconds.
"""

import asyncio
import logging
from collections import deque
from datetime import UTC, datetime

from perfcache.clock import Clock, now_ms
from perfcache.models.performance import (
    CacheHealthStats,
    CircuitBreakerStats,
    EndpointStats,
    HealthStatus,
    MetricsExport,
    PerformanceMetric,
    SlowEndpoint,
    SystemHealth,
    TimeRange,
    TrendBucket,
)

logger = logging.getLogger(__name__)

MAX_METRICS = 10_000
HOUR_MS = 3_600_000
DAY_MS = 86_400_000

SUCCESS_RATE_THRESHOLD = 0.95
UNHEALTHY_SUCCESS_RATE = 0.80
RESPONSE_TIME_THRESHOLD_MS = 5000


def _fraction(part: int, whole: int) -> float:
    return part / whole if whole else 0.0


def _summarise(metrics: list[PerformanceMetric]) -> EndpointStats:
    if not metrics:
        return EndpointStats()

    durations = [m.duration for m in metrics]
    successful = sum(1 for m in metrics if m.success)
    cache_hits = sum(1 for m in metrics if m.cache_hit)
    last_failure = max(
        (m for m in metrics if not m.success),
        key=lambda m: m.timestamp,
        default=None,
    )
    total = len(metrics)
    return EndpointStats(
        total_requests=total,
        successful_requests=successful,
        failed_requests=total - successful,
        average_response_time=sum(durations) / total,
        min_response_time=min(durations),
        max_response_time=max(durations),
        success_rate=successful / total,
        cache_hit_rate=cache_hits / total,
        last_error=last_failure.error_type if last_failure else None,
        last_error_time=last_failure.timestamp if last_failure else None,
    )


class PerformanceMonitor:
    """Bounded in-memory log of operation timings with windowed aggregation.

    The buffer keeps the newest ``max_metrics`` records; older ones are
    dropped first. Query methods never raise for missing data, they return
    zeroed or empty results instead.

    Args:
        max_metrics: Capacity of the record buffer.
        slow_response_ms: Durations above this are logged as slow and make
            an endpoint count as degraded when they dominate its mean.
        healthy_success_rate: Success rate below which the system (or any
            single endpoint) is degraded.
        unhealthy_success_rate: Aggregate success rate below which the
            system is unhealthy.
        clock: Callable returning epoch milliseconds.
    """

    def __init__(
        self,
        max_metrics: int = MAX_METRICS,
        *,
        slow_response_ms: float = RESPONSE_TIME_THRESHOLD_MS,
        healthy_success_rate: float = SUCCESS_RATE_THRESHOLD,
        unhealthy_success_rate: float = UNHEALTHY_SUCCESS_RATE,
        clock: Clock = now_ms,
    ) -> None:
        if max_metrics <= 0:
            raise ValueError(f"max_metrics must be positive, got {max_metrics}")
        self.max_metrics = max_metrics
        self.slow_response_ms = slow_response_ms
        self.healthy_success_rate = healthy_success_rate
        self.unhealthy_success_rate = unhealthy_success_rate
        self._clock = clock
        self._metrics: deque[PerformanceMetric] = deque(maxlen=max_metrics)
        self._cleanup_task: asyncio.Task[None] | None = None

    # ── Recording ────────────────────────────────────────────────────────

    def record_metric(
        self,
        endpoint: str,
        duration: float,
        success: bool,
        *,
        cache_hit: bool | None = None,
        error_type: str | None = None,
        retry_count: int | None = None,
    ) -> PerformanceMetric:
        """Append one timing record and log it."""
        metric = PerformanceMetric(
            endpoint=endpoint,
            duration=max(duration, 0),
            success=success,
            timestamp=self._clock(),
            cache_hit=cache_hit,
            error_type=error_type,
            retry_count=retry_count,
        )
        self._metrics.append(metric)
        self._log_metric(metric)
        return metric

    def _log_metric(self, metric: PerformanceMetric) -> None:
        logger.info(
            "%s %s %s: %.0fms%s",
            "ok" if metric.success else "FAILED",
            "cache" if metric.cache_hit else "live",
            metric.endpoint,
            metric.duration,
            f" (retry {metric.retry_count})" if metric.retry_count else "",
        )
        if metric.duration > self.slow_response_ms:
            logger.warning(
                "Slow response detected: %s took %.0fms", metric.endpoint, metric.duration
            )
        if not metric.success:
            logger.warning(
                "Request failed: %s - %s", metric.endpoint, metric.error_type or "unknown error"
            )

    # ── Queries ──────────────────────────────────────────────────────────

    def get_endpoint_stats(self, endpoint: str, time_window_ms: int = HOUR_MS) -> EndpointStats:
        recent = [m for m in self._window(time_window_ms) if m.endpoint == endpoint]
        return _summarise(recent)

    def get_system_health(self, time_window_ms: int = HOUR_MS) -> SystemHealth:
        """Summarise every endpoint seen in the window and derive a verdict.

        * unhealthy: aggregate success rate below ``unhealthy_success_rate``
        * degraded: aggregate or any endpoint success rate below
          ``healthy_success_rate``, or any endpoint's mean duration above
          ``slow_response_ms``
        * healthy: otherwise, including an empty window
        """
        recent = self._window(time_window_ms)
        if not recent:
            return SystemHealth()

        grouped: dict[str, list[PerformanceMetric]] = {}
        for metric in recent:
            grouped.setdefault(metric.endpoint, []).append(metric)
        endpoints = {name: _summarise(metrics) for name, metrics in grouped.items()}

        endpoints_healthy = all(
            stats.success_rate >= self.healthy_success_rate
            and stats.average_response_time <= self.slow_response_ms
            for stats in endpoints.values()
        )
        overall_success = _fraction(sum(1 for m in recent if m.success), len(recent))

        if overall_success < self.unhealthy_success_rate:
            overall = HealthStatus.UNHEALTHY
        elif overall_success < self.healthy_success_rate or not endpoints_healthy:
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.HEALTHY

        # Open circuits are tracked by the breakers themselves, not here.
        return SystemHealth(
            overall=overall,
            endpoints=endpoints,
            cache_stats=CacheHealthStats(
                hit_rate=_fraction(sum(1 for m in recent if m.cache_hit), len(recent)),
                size=len(self._metrics),
            ),
            circuit_breaker_stats=CircuitBreakerStats(
                open_circuits=0, total_circuits=len(endpoints)
            ),
        )

    def get_performance_trends(
        self,
        endpoint: str | None = None,
        time_window_ms: int = DAY_MS,
        bucket_size_ms: int = HOUR_MS,
    ) -> list[TrendBucket]:
        """Per-bucket stats in ascending time order. Empty buckets are omitted."""
        if bucket_size_ms <= 0:
            return []
        buckets: dict[int, list[PerformanceMetric]] = {}
        for metric in self._window(time_window_ms):
            if endpoint and metric.endpoint != endpoint:
                continue
            start = (metric.timestamp // bucket_size_ms) * bucket_size_ms
            buckets.setdefault(start, []).append(metric)

        trends = []
        for start in sorted(buckets):
            metrics = buckets[start]
            total = len(metrics)
            trends.append(
                TrendBucket(
                    timestamp=start,
                    total_requests=total,
                    success_rate=sum(1 for m in metrics if m.success) / total,
                    average_response_time=sum(m.duration for m in metrics) / total,
                    cache_hit_rate=sum(1 for m in metrics if m.cache_hit) / total,
                )
            )
        return trends

    def get_slowest_endpoints(
        self, limit: int = 10, time_window_ms: int = HOUR_MS
    ) -> list[SlowEndpoint]:
        totals: dict[str, list[float]] = {}
        for metric in self._window(time_window_ms):
            bucket = totals.setdefault(metric.endpoint, [0.0, 0])
            bucket[0] += metric.duration
            bucket[1] += 1

        ranked = sorted(
            (
                SlowEndpoint(
                    endpoint=name,
                    average_response_time=total / count,
                    request_count=int(count),
                )
                for name, (total, count) in totals.items()
            ),
            key=lambda s: s.average_response_time,
            reverse=True,
        )
        return ranked[: max(limit, 0)]

    def export_metrics(self, time_window_ms: int | None = None) -> MetricsExport:
        """Snapshot of the records (optionally windowed) with their time range."""
        metrics = self._window(time_window_ms) if time_window_ms else list(self._metrics)
        time_range = TimeRange()
        if metrics:
            stamps = [m.timestamp for m in metrics]
            time_range = TimeRange(
                start=datetime.fromtimestamp(min(stamps) / 1000, tz=UTC),
                end=datetime.fromtimestamp(max(stamps) / 1000, tz=UTC),
            )
        return MetricsExport(
            export_time=datetime.now(UTC),
            total_metrics=len(metrics),
            time_range=time_range,
            metrics=metrics,
        )

    @property
    def metrics_count(self) -> int:
        return len(self._metrics)

    # ── Maintenance ──────────────────────────────────────────────────────

    def clear_old_metrics(self, older_than_ms: int = DAY_MS) -> int:
        """Drop records at or before ``now - older_than_ms``. Returns the count removed."""
        cutoff = self._clock() - older_than_ms
        before = len(self._metrics)
        self._metrics = deque(
            (m for m in self._metrics if m.timestamp > cutoff), maxlen=self.max_metrics
        )
        removed = before - len(self._metrics)
        if removed:
            logger.info("Cleared %d old performance metrics", removed)
        return removed

    def clear(self) -> None:
        self._metrics.clear()

    def start_auto_cleanup(
        self, interval_ms: int = HOUR_MS, older_than_ms: int = DAY_MS
    ) -> asyncio.Task[None]:
        """Run ``clear_old_metrics`` every *interval_ms* on the running loop.

        Calling it again while the task is alive returns the existing task.
        """
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return self._cleanup_task
        self._cleanup_task = asyncio.get_running_loop().create_task(
            self._cleanup_loop(interval_ms, older_than_ms), name="metrics-cleanup"
        )
        logger.info("Started automatic performance metrics cleanup")
        return self._cleanup_task

    def stop_auto_cleanup(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    async def _cleanup_loop(self, interval_ms: int, older_than_ms: int) -> None:
        while True:
            await asyncio.sleep(interval_ms / 1000)
            self.clear_old_metrics(older_than_ms)

    # ── Internals ────────────────────────────────────────────────────────

    def _window(self, time_window_ms: int) -> list[PerformanceMetric]:
        cutoff = self._clock() - time_window_ms
        return [m for m in self._metrics if m.timestamp > cutoff]
