"""Retry decorator with exponential backoff for collaborator I/O."""

import asyncio
import logging
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)
T = TypeVar("T")


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Decorator for exponential backoff retry logic on a coroutine function.

    Only the exception types listed in ``exceptions`` are retried; anything else
    propagates on the first attempt. Task cancellation is never retried.

    Args:
        max_attempts: Maximum number of attempts (at least 1)
        base_delay: Base delay in seconds (doubles each attempt)
        exceptions: Tuple of exception types to retry on

    Returns:
        Decorated coroutine function with retry logic
    """
    attempts = max(1, max_attempts)

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            last_exception: Exception | None = None

            for attempt in range(attempts):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if attempt < attempts - 1:
                        delay = base_delay * (2**attempt)
                        logger.warning(
                            f"{func.__name__} attempt {attempt + 1}/{attempts} failed: {e}. "
                            f"Retrying in {delay}s..."
                        )
                        await asyncio.sleep(delay)
                    else:
                        logger.error(f"{func.__name__}: all {attempts} attempts failed: {e}")

            raise last_exception  # type: ignore

        return wrapper

    return decorator
