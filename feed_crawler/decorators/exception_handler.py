"""Exception handling decorator for MCP tools.

Tools report failures as ``{"success": False, "error": ...}`` dicts; this
decorator guarantees that shape even when a tool raises unexpectedly.
"""

import functools
import logging
from typing import Any, Awaitable, Callable, Dict

logger = logging.getLogger(__name__)


def exception_handler(func: Callable[..., Awaitable[Dict[str, Any]]]) -> Callable[..., Awaitable[Dict[str, Any]]]:
    """Convert exceptions raised by a tool into an error result.

    Args:
        func: Async tool function

    Returns:
        Wrapped tool with the same signature
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> Dict[str, Any]:
        try:
            return await func(*args, **kwargs)
        except ValueError as e:
            logger.warning(f"{func.__name__} rejected input: {e}")
            return {"success": False, "error": str(e)}
        except Exception as e:
            logger.exception(f"{func.__name__} failed")
            return {"success": False, "error": f"{type(e).__name__}: {e}"}

    return wrapper
