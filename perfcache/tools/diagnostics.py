"""MCP tools for inspecting cache and upstream performance.

Each tool body lives in a module-level coroutine and is called through
``safe_tool_wrapper``, so a failure reaches the client as a short message
and the traceback goes to the server log.
"""

import logging

from fastmcp import FastMCP
from fastmcp.server.dependencies import get_access_token

from perfcache.auth import has_admin_scope
from perfcache.clients.resilience import CircuitState
from perfcache.monitoring.performance import DAY_MS, HOUR_MS
from perfcache.server import get_registry
from perfcache.tools.error_messages import safe_tool_wrapper

logger = logging.getLogger(__name__)

ADMIN_REQUIRED = "This tool discards data and needs an admin token."


def _pct(rate: float) -> str:
    return f"{rate * 100:.0f}%"


def _admin_allowed(tool: str) -> bool:
    access = get_access_token()
    if has_admin_scope(access):
        return True
    logger.warning("Refused %s for client %s without admin scope", tool, access.client_id)
    return False


async def _system_health(time_window_ms: int) -> str:
    registry = get_registry()
    health = registry.monitor.get_system_health(time_window_ms)
    breakers = registry.breaker_states()
    open_breakers = sorted(name for name, state in breakers.items() if state == CircuitState.OPEN)

    lines = [f"System health: {health.overall.value}"]
    if not health.endpoints:
        lines.append("No requests recorded in this window.")
    for name, stats in sorted(health.endpoints.items()):
        lines.append(
            f"  {name}: {stats.total_requests} requests, "
            f"{_pct(stats.success_rate)} success, "
            f"avg {stats.average_response_time:.0f}ms, "
            f"{_pct(stats.cache_hit_rate)} cache hits"
        )
    lines.append(f"Cache hit rate: {_pct(health.cache_stats.hit_rate)}")
    if open_breakers:
        lines.append(f"Open circuits: {', '.join(open_breakers)}")
    return "\n".join(lines)


async def _endpoint_stats(endpoint: str, time_window_ms: int) -> str:
    if not endpoint.strip():
        return "Please provide an endpoint name."
    stats = get_registry().monitor.get_endpoint_stats(endpoint, time_window_ms)
    if stats.total_requests == 0:
        return f"No requests recorded for {endpoint} in this window."

    lines = [
        f"{endpoint}:",
        f"  Requests: {stats.total_requests} "
        f"({stats.successful_requests} ok, {stats.failed_requests} failed)",
        f"  Success rate: {_pct(stats.success_rate)}",
        f"  Response time: min {stats.min_response_time:.0f}ms, "
        f"avg {stats.average_response_time:.0f}ms, max {stats.max_response_time:.0f}ms",
        f"  Cache hit rate: {_pct(stats.cache_hit_rate)}",
    ]
    if stats.last_error_time is not None:
        lines.append(f"  Last error: {stats.last_error or 'unknown'}")
    return "\n".join(lines)


async def _performance_trends(
    endpoint: str | None, time_window_ms: int, bucket_size_ms: int
) -> str:
    trends = get_registry().monitor.get_performance_trends(endpoint, time_window_ms, bucket_size_ms)
    if not trends:
        return "No requests recorded in this window."
    return "\n".join(
        f"{bucket.timestamp}: {bucket.total_requests} requests, "
        f"{_pct(bucket.success_rate)} success, "
        f"avg {bucket.average_response_time:.0f}ms, "
        f"{_pct(bucket.cache_hit_rate)} cache hits"
        for bucket in trends
    )


async def _slowest_endpoints(limit: int, time_window_ms: int) -> str:
    slowest = get_registry().monitor.get_slowest_endpoints(limit, time_window_ms)
    if not slowest:
        return "No requests recorded in this window."
    return "\n".join(
        f"{i}. {s.endpoint}: avg {s.average_response_time:.0f}ms ({s.request_count} requests)"
        for i, s in enumerate(slowest, 1)
    )


async def _export_metrics(time_window_ms: int | None) -> str:
    export = get_registry().monitor.export_metrics(time_window_ms or None)
    return export.model_dump_json(indent=2)


async def _clear_old_metrics(older_than_ms: int) -> str:
    if not _admin_allowed("clear_old_metrics"):
        return ADMIN_REQUIRED
    removed = get_registry().monitor.clear_old_metrics(older_than_ms)
    return f"Removed {removed} metric records older than {older_than_ms}ms."


async def _cache_stats() -> str:
    lines = ["Cache statistics:"]
    for name, stats in get_registry().cache_stats().items():
        lines.append(
            f"  {name}: {stats.total_items} items, "
            f"{_pct(stats.hit_rate)} hit rate "
            f"({stats.total_hits} hits / {stats.total_misses} misses), "
            f"{stats.evictions} evictions, ~{stats.memory_usage / 1024:.1f} KB"
        )
    return "\n".join(lines)


async def _clear_caches(name: str | None) -> str:
    if not _admin_allowed("clear_caches"):
        return ADMIN_REQUIRED
    registry = get_registry()
    if name is None:
        registry.clear_all()
        return "All caches cleared."
    try:
        registry.cache(name).clear()
    except KeyError as exc:
        logger.warning("clear_caches: %s", exc)
        return f"Unknown cache '{name}'. Known caches: {', '.join(sorted(registry.caches))}"
    return f"Cache '{name}' cleared."


def register_diagnostic_tools(mcp: FastMCP) -> None:
    """Register performance and cache diagnostics tools on the MCP server."""

    @mcp.tool
    async def system_health(time_window_ms: int = HOUR_MS) -> str:
        """Overall health verdict with per-endpoint success rates and timings.

        Args:
            time_window_ms: Look-back window in milliseconds (default 1 hour).

        Returns:
            Health summary.
        """
        return await safe_tool_wrapper(_system_health, time_window_ms)

    @mcp.tool
    async def endpoint_stats(endpoint: str, time_window_ms: int = HOUR_MS) -> str:
        """Detailed statistics for one endpoint.

        Args:
            endpoint: Logical operation name, e.g. "vehicle-lookup".
            time_window_ms: Look-back window in milliseconds (default 1 hour).

        Returns:
            Statistics for the endpoint, or a note when nothing was recorded.
        """
        return await safe_tool_wrapper(_endpoint_stats, endpoint, time_window_ms)

    @mcp.tool
    async def performance_trends(
        endpoint: str | None = None,
        time_window_ms: int = DAY_MS,
        bucket_size_ms: int = HOUR_MS,
    ) -> str:
        """Request volume, success rate and latency per time bucket.

        Args:
            endpoint: Restrict to one endpoint (all endpoints when omitted).
            time_window_ms: Look-back window in milliseconds (default 24 hours).
            bucket_size_ms: Bucket width in milliseconds (default 1 hour).

        Returns:
            One line per non-empty bucket, oldest first.
        """
        return await safe_tool_wrapper(
            _performance_trends, endpoint, time_window_ms, bucket_size_ms
        )

    @mcp.tool
    async def slowest_endpoints(limit: int = 10, time_window_ms: int = HOUR_MS) -> str:
        """Endpoints ranked by average response time, slowest first."""
        return await safe_tool_wrapper(_slowest_endpoints, limit, time_window_ms)

    @mcp.tool
    async def export_metrics(time_window_ms: int | None = HOUR_MS) -> str:
        """Raw metric records as JSON for external analysis.

        Args:
            time_window_ms: Look-back window in milliseconds; 0 or null exports everything.
        """
        return await safe_tool_wrapper(_export_metrics, time_window_ms)

    @mcp.tool
    async def clear_old_metrics(older_than_ms: int = DAY_MS) -> str:
        """Drop metric records older than the given age. Needs an admin token over HTTP."""
        return await safe_tool_wrapper(_clear_old_metrics, older_than_ms)

    @mcp.tool
    async def cache_stats() -> str:
        """Size, hit rate and memory estimate for each cache."""
        return await safe_tool_wrapper(_cache_stats)

    @mcp.tool
    async def clear_caches(name: str | None = None) -> str:
        """Empty one cache by name, or all caches when no name is given.

        Needs an admin token over HTTP.
        """
        return await safe_tool_wrapper(_clear_caches, name)
