"""Logging decorator for MCP tools."""

import functools
import logging
import time
from typing import Any, Awaitable, Callable, Dict

logger = logging.getLogger(__name__)

# Never echoed into logs
REDACTED_ARGUMENTS = {"auth_key", "p256dh_key", "ctx"}


def tool_logger(func: Callable[..., Awaitable[Dict[str, Any]]]) -> Callable[..., Awaitable[Dict[str, Any]]]:
    """Log each tool call with its arguments, outcome and duration.

    Args:
        func: Async tool function

    Returns:
        Wrapped tool with the same signature
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> Dict[str, Any]:
        shown = {k: v for k, v in kwargs.items() if k not in REDACTED_ARGUMENTS}
        logger.info(f"Tool {func.__name__} called with {shown}")

        start = time.perf_counter()
        result = await func(*args, **kwargs)
        elapsed_ms = (time.perf_counter() - start) * 1000

        success = result.get("success") if isinstance(result, dict) else None
        logger.info(f"Tool {func.__name__} finished in {elapsed_ms:.1f}ms (success={success})")
        return result

    return wrapper
