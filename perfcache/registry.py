"""Composition root: the named caches, performance monitor and circuit breakers.

One ``CacheRegistry`` is built at startup (see ``server.app_lifespan``) and
handed to whatever needs a cache or the monitor, instead of each module
reaching for global instances.
"""

import logging

from perfcache.clients.cache import EnhancedCache
from perfcache.clients.resilience import CircuitBreaker, CircuitState
from perfcache.config import Settings
from perfcache.models.cache import CacheStats
from perfcache.monitoring.performance import PerformanceMonitor

logger = logging.getLogger(__name__)

CACHE_NAMES = ("general", "vehicle", "valuation", "auth")
BREAKER_NAMES = ("vehicle_data", "valuation", "auth")


class RegistryNotReadyError(RuntimeError):
    """Raised when the registry is requested before the server lifespan started."""


class CacheRegistry:
    """Owns one cache per data category plus the shared monitor and breakers.

    Args:
        caches: Mapping of category name to cache.
        monitor: The process-wide performance monitor.
        breakers: Mapping of upstream name to circuit breaker.
        metrics_cleanup_interval_ms: Period of the monitor's auto-cleanup.
        metrics_retention_ms: Age after which metrics are dropped.
    """

    def __init__(
        self,
        caches: dict[str, EnhancedCache],
        monitor: PerformanceMonitor,
        breakers: dict[str, CircuitBreaker] | None = None,
        *,
        metrics_cleanup_interval_ms: int = 3_600_000,
        metrics_retention_ms: int = 86_400_000,
    ) -> None:
        self._caches = dict(caches)
        self.monitor = monitor
        self.breakers = dict(breakers or {})
        self.metrics_cleanup_interval_ms = metrics_cleanup_interval_ms
        self.metrics_retention_ms = metrics_retention_ms
        self._started = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "CacheRegistry":
        caches = {
            name: EnhancedCache(
                getattr(settings, f"{name}_cache_max_size"),
                getattr(settings, f"{name}_cache_ttl_ms"),
                cleanup_interval_ms=settings.cache_cleanup_interval_ms,
                single_flight=settings.cache_single_flight,
                name=name,
            )
            for name in CACHE_NAMES
        }
        monitor = PerformanceMonitor(
            settings.metrics_max_records,
            slow_response_ms=settings.slow_response_ms,
            healthy_success_rate=settings.healthy_success_rate,
            unhealthy_success_rate=settings.unhealthy_success_rate,
        )
        breakers = {
            name: CircuitBreaker(
                name,
                fail_max=settings.breaker_fail_max,
                reset_timeout=settings.breaker_reset_timeout,
            )
            for name in BREAKER_NAMES
        }
        return cls(
            caches,
            monitor,
            breakers,
            metrics_cleanup_interval_ms=settings.metrics_cleanup_interval_ms,
            metrics_retention_ms=settings.metrics_retention_ms,
        )

    def cache(self, name: str) -> EnhancedCache:
        """Return the cache for *name*. Raises ``KeyError`` for unknown names."""
        try:
            return self._caches[name]
        except KeyError:
            raise KeyError(f"Unknown cache '{name}'. Known: {sorted(self._caches)}") from None

    @property
    def caches(self) -> dict[str, EnhancedCache]:
        return dict(self._caches)

    def breaker(self, name: str) -> CircuitBreaker:
        return self.breakers[name]

    async def start(self) -> None:
        """Start cache sweeps and metric auto-cleanup on the running loop."""
        if self._started:
            return
        for cache in self._caches.values():
            cache.start_cleanup_timer()
        self.monitor.start_auto_cleanup(
            self.metrics_cleanup_interval_ms, self.metrics_retention_ms
        )
        self._started = True
        logger.info("Started %d caches and metrics cleanup", len(self._caches))

    async def aclose(self) -> None:
        """Destroy every cache and stop the monitor's cleanup task."""
        for cache in self._caches.values():
            cache.destroy()
        self.monitor.stop_auto_cleanup()
        self._started = False
        logger.info("Cache registry closed")

    def clear_all(self) -> None:
        for cache in self._caches.values():
            cache.clear()
        logger.info("All caches cleared")

    def cache_stats(self) -> dict[str, CacheStats]:
        return {name: cache.get_stats() for name, cache in self._caches.items()}

    def breaker_states(self) -> dict[str, CircuitState]:
        return {name: breaker.state for name, breaker in self.breakers.items()}
