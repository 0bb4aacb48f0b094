"""Utility functions for onebox-sync."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    **kwargs: Any,
) -> T:
    """Await ``func`` and retry it on failure with exponential backoff.

    Args:
        func: Coroutine function to call.
        *args: Positional arguments for ``func``.
        max_retries: Maximum number of retry attempts.
        delay: Initial delay between retries in seconds.
        backoff: Multiplier for delay after each retry.
        retry_on: Exception types that trigger a retry; others propagate at once.
        **kwargs: Keyword arguments for ``func``.

    Returns:
        The result of the first successful call.
    """
    current_delay = delay
    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except retry_on as e:
            if attempt >= max_retries:
                logger.error(
                    "function_retry_exhausted",
                    function=getattr(func, "__name__", repr(func)),
                    attempts=max_retries + 1,
                    error=str(e),
                )
                raise
            logger.warning(
                "function_retry",
                function=getattr(func, "__name__", repr(func)),
                attempt=attempt + 1,
                max_retries=max_retries,
                delay=current_delay,
                error=str(e),
            )
            await asyncio.sleep(current_delay)
            current_delay *= backoff

    raise AssertionError("unreachable")
