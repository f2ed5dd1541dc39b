"""Run the diagnostics server: ``python -m perfcache`` or the ``perfcache`` script."""

import logging

from perfcache.config import get_settings
from perfcache.server import initialize

logger = logging.getLogger(__name__)


def main() -> None:
    """Initialize the server and serve over the configured transport."""
    app = initialize()
    settings = get_settings()

    if settings.mcp_transport == "streamable-http":
        if not settings.mcp_auth_token:
            logger.warning(
                "Serving diagnostics on %s:%d without a bearer token; "
                "set MCP_AUTH_TOKEN to protect the maintenance tools",
                settings.mcp_host,
                settings.mcp_port,
            )
        app.run(transport="streamable-http", host=settings.mcp_host, port=settings.mcp_port)
    else:
        app.run()


if __name__ == "__main__":  # pragma: no cover
    main()
