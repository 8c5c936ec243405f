"""Retry utilities for handling transient failures.

Two flavours are provided:

    retry_with_backoff: Call an async operation up to ``max_attempts`` times,
        waiting ``base_delay * 2 ** (n - 1)`` seconds before retry ``n``. Used
        by the orchestrator around model calls, PR creation and CI polling,
        where attempt counts come from configuration at runtime.
    async_retry: Decorator form with a fixed policy, used on REST provider
        methods.

In both cases the error from the final attempt propagates unchanged, so
callers can still tell a timeout from an authentication failure.

Example:
    >>> result = await retry_with_backoff(
    ...     lambda: agent.implement_story(context),
    ...     max_attempts=3,
    ...     base_delay=1.0,
    ...     label="implement",
    ... )

Backoff Formulas:
    retry_with_backoff: base_delay, 2 * base_delay, 4 * base_delay, ...
    async_retry: backoff_factor ** attempt (2s, 4s, 8s for factor 2.0)
"""

import asyncio
import functools
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    label: str = "operation",
    exceptions: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """Run ``operation`` with exponential backoff between failed attempts.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per call.
        max_attempts: Total attempts, including the first one. Must be >= 1.
        base_delay: Seconds to wait before the first retry.
        label: Name used in log events.
        exceptions: Only these exception types trigger a retry; anything
            else propagates immediately.

    Returns:
        The operation's result from the first successful attempt.

    Raises:
        ValueError: If ``max_attempts`` is less than 1.
        Exception: The last attempt's error, unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except exceptions as e:
            if attempt == max_attempts:
                log.error("retry_exhausted", operation=label, attempts=attempt, error=str(e))
                raise

            delay = base_delay * 2 ** (attempt - 1)
            log.warning(
                "retry_attempt",
                operation=label,
                attempt=attempt,
                max_attempts=max_attempts,
                delay=delay,
                error=str(e),
            )
            await asyncio.sleep(delay)

    raise RuntimeError("Retry logic error")


def async_retry(
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for async functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of calls before giving up.
        backoff_factor: Delay before retry N is ``backoff_factor ** N`` seconds.
        exceptions: Exception types that trigger a retry. Others propagate
            immediately.

    Returns:
        A decorator function that wraps async functions with retry logic.

    Example:
        >>> @async_retry(max_attempts=5, exceptions=(httpx.TransportError,))
        ... async def fetch_checks(ref: str) -> dict:
        ...     ...
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        log.error(
                            "retry_exhausted",
                            function=func.__name__,
                            attempts=attempt,
                            error=str(e),
                        )
                        raise

                    delay = backoff_factor**attempt
                    log.warning(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError("Retry logic error")

        return wrapper

    return decorator
