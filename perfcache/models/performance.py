from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class PerformanceMetric(BaseModel):
    model_config = ConfigDict(frozen=True)

    endpoint: str
    duration: float
    success: bool
    timestamp: int
    cache_hit: bool | None = None
    error_type: str | None = None
    retry_count: int | None = None


class EndpointStats(BaseModel):
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_response_time: float = 0.0
    min_response_time: float = 0.0
    max_response_time: float = 0.0
    success_rate: float = 0.0
    cache_hit_rate: float = 0.0
    last_error: str | None = None
    last_error_time: int | None = None


class CacheHealthStats(BaseModel):
    hit_rate: float = 0.0
    size: int = 0


class CircuitBreakerStats(BaseModel):
    open_circuits: int = 0
    total_circuits: int = 0


class SystemHealth(BaseModel):
    overall: HealthStatus = HealthStatus.HEALTHY
    endpoints: dict[str, EndpointStats] = Field(default_factory=dict)
    cache_stats: CacheHealthStats = Field(default_factory=CacheHealthStats)
    circuit_breaker_stats: CircuitBreakerStats = Field(default_factory=CircuitBreakerStats)


class TrendBucket(BaseModel):
    timestamp: int
    total_requests: int
    success_rate: float
    average_response_time: float
    cache_hit_rate: float


class SlowEndpoint(BaseModel):
    endpoint: str
    average_response_time: float
    request_count: int


class TimeRange(BaseModel):
    start: datetime | None = None
    end: datetime | None = None


class MetricsExport(BaseModel):
    export_time: datetime
    total_metrics: int
    time_range: TimeRange = Field(default_factory=TimeRange)
    metrics: list[PerformanceMetric] = Field(default_factory=list)
