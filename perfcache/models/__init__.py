from perfcache.models.cache import (
    AccessCount,
    CacheCounters,
    CacheEntryRecord,
    CacheSnapshot,
    CacheStats,
)
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
