import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


async def attempt(description: str, func: Callable[..., Awaitable[object]], *args, **kwargs) -> bool:
    """Run a side effect whose failure must not fail the caller.

    Returns True on success. Any exception is logged with its traceback and reported
    as False; nothing is raised.
    """
    try:
        await func(*args, **kwargs)
    except Exception:
        logger.exception("%s failed (ignored)", description)
        return False
    return True
