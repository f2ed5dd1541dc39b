import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from perfcache.models.performance import HealthStatus
from perfcache.registry import CacheRegistry, RegistryNotReadyError

logger = logging.getLogger(__name__)

_registry: CacheRegistry | None = None


def get_registry() -> CacheRegistry:
    """Get the running CacheRegistry. Raises if the lifespan has not started."""
    if _registry is None:
        raise RegistryNotReadyError(
            "Cache registry not initialized. Server lifespan has not started."
        )
    return _registry


def _reset_registry() -> None:
    """Clear the module-level registry reference. Used in tests."""
    global _registry  # noqa: PLW0603
    _registry = None


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[dict]:
    """Build the caches and monitor for the server lifecycle."""
    global _registry  # noqa: PLW0603
    from perfcache.config import get_settings

    _registry = CacheRegistry.from_settings(get_settings())
    await _registry.start()
    logger.info("Cache registry initialized")

    try:
        yield {"registry": _registry}
    finally:
        await _registry.aclose()
        _registry = None


mcp = FastMCP("dealer-performance", lifespan=app_lifespan)


@mcp.custom_route("/health", methods=["GET"])
async def health_check(request: Request | None) -> JSONResponse:
    """Report the current system-health verdict; 503 when unhealthy or not started."""
    if _registry is None:
        return JSONResponse({"status": "unavailable"}, status_code=503)
    verdict = _registry.monitor.get_system_health().overall
    status_code = 503 if verdict == HealthStatus.UNHEALTHY else 200
    return JSONResponse({"status": verdict.value}, status_code=status_code)


def setup_logging(log_level: str, data_dir: Path) -> None:
    """Configure logging with file rotation and console output.

    Args:
        log_level: Logging level string (DEBUG, INFO, WARNING, ERROR).
        data_dir: Base data directory — logs go to data_dir/logs/server.log.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Exact type check so FileHandler subclasses don't count as console
    if not any(type(h) is logging.StreamHandler for h in root_logger.handlers):
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(formatter)
        root_logger.addHandler(console)

    log_dir = data_dir / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    if not any(isinstance(h, RotatingFileHandler) for h in root_logger.handlers):
        file_handler = RotatingFileHandler(
            log_dir / "server.log",
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=3,
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def initialize() -> FastMCP:
    """Set up directories, logging, auth and tools. Returns the MCP server."""
    from perfcache.config import get_settings

    settings = get_settings()
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    setup_logging(settings.log_level, settings.data_dir)

    if settings.mcp_auth_token:
        from perfcache.auth import BearerTokenVerifier

        mcp.auth = BearerTokenVerifier(settings.mcp_auth_token, settings.mcp_read_token)
        logger.info(
            "Bearer token auth enabled%s", " with read-only token" if settings.mcp_read_token else ""
        )

    from perfcache.tools.diagnostics import register_diagnostic_tools

    register_diagnostic_tools(mcp)

    logger.info("Diagnostics server initialized")
    return mcp
