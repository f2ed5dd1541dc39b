"""User-facing error messages and the safe wrapper every diagnostics tool uses."""

import logging

from perfcache.clients.cache import CacheClosedError
from perfcache.registry import RegistryNotReadyError

logger = logging.getLogger(__name__)


def get_user_message(error: Exception) -> str:
    """Map an exception raised inside a tool to a short message.

    Args:
        error: The exception to translate.

    Returns:
        A human-readable error message.
    """
    if isinstance(error, RegistryNotReadyError):
        return "The diagnostics server is still starting. Please try again shortly."
    if isinstance(error, CacheClosedError):
        return "The caches are shutting down. Please try again after the server restarts."
    if isinstance(error, ValueError):
        return f"Invalid request: {error}"
    return "Something went wrong while reading diagnostics. Check the server log for details."


async def safe_tool_wrapper(func, *args: object, **kwargs: object) -> str:  # type: ignore[no-untyped-def]
    """Call an async tool body, turning any error into a message.

    Returns:
        The body's return value on success, or a short error string.
    """
    try:
        return await func(*args, **kwargs)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Tool error in %s", func.__name__)
        return get_user_message(exc)
