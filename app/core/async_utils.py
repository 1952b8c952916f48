"""
Async utilities for wrapping synchronous store and provider calls.

Provides run_sync() to offload blocking I/O to threads with a hard upper
bound on how long a request waits for it.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Optional, TypeVar

from app.core.errors import TalkTimeError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_sync(
    func: Callable[..., T],
    *args: Any,
    timeout: float = 30,
    timeout_code: Optional[str] = None,
) -> T:
    """
    Run a synchronous function in a thread without blocking the event loop.

    Args:
        func: Synchronous callable to execute.
        *args: Positional arguments forwarded to func.
        timeout: Maximum seconds to wait (default 30).
        timeout_code: Registry code raised as TalkTimeError on timeout.
            Without it a plain TimeoutError is raised.

    Returns:
        The return value of func(*args).

    Raises:
        TalkTimeError / TimeoutError: If execution exceeds the timeout.
        Exception: Any exception raised by func propagates unchanged.
    """
    name = getattr(func, "__qualname__", None) or getattr(func, "__name__", repr(func))
    start = time.perf_counter()
    try:
        result = await asyncio.wait_for(
            asyncio.to_thread(func, *args),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        elapsed = (time.perf_counter() - start) * 1000
        message = f"{name} timed out after {elapsed:.0f}ms (limit {timeout}s)"
        if timeout_code:
            raise TalkTimeError(timeout_code, detail=message, context={"call": name})
        raise TimeoutError(message)

    elapsed = (time.perf_counter() - start) * 1000
    logger.debug("run_sync %s completed in %.2fms", name, elapsed)
    return result
