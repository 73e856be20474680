"""Utility functions for Email Triage."""

import asyncio
import inspect
import time
from functools import wraps
from typing import Any, Callable, TypeVar

import structlog

logger = structlog.get_logger()

F = TypeVar("F", bound=Callable[..., Any])


def retry_on_failure(
    max_retries: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple[type[BaseException], ...] = (Exception,),
    retries_from: str | None = None,
) -> Callable[[F], F]:
    """Decorator to retry a function on failure with exponential backoff.

    Works for both plain functions and coroutine functions. Only exceptions
    listed in ``exceptions`` are retried; anything else propagates at once.

    Args:
        max_retries: Maximum number of retry attempts.
        delay: Initial delay between retries in seconds.
        backoff: Multiplier for delay after each retry.
        exceptions: Exception types that trigger a retry.
        retries_from: Name of an attribute path on the bound instance
            (e.g. ``"settings.max_retries"``) that overrides ``max_retries``.

    Returns:
        Decorated function with retry logic.
    """

    def _attempts(args: tuple[Any, ...]) -> int:
        if retries_from and args:
            value: Any = args[0]
            for part in retries_from.split("."):
                value = getattr(value, part)
            return int(value)
        return max_retries

    def _log_retry(func: Callable[..., Any], attempt: int, limit: int, wait: float, exc: BaseException) -> None:
        logger.warning(
            "function_retry",
            function=func.__name__,
            attempt=attempt + 1,
            max_retries=limit,
            delay=wait,
            error=str(exc),
        )

    def _log_exhausted(func: Callable[..., Any], limit: int, exc: BaseException) -> None:
        logger.error(
            "function_retry_exhausted",
            function=func.__name__,
            attempts=limit + 1,
            error=str(exc),
        )

    def decorator(func: F) -> F:
        if inspect.iscoroutinefunction(func):

            @wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                limit = _attempts(args)
                current_delay = delay
                for attempt in range(limit + 1):
                    try:
                        return await func(*args, **kwargs)
                    except exceptions as e:
                        if attempt >= limit:
                            _log_exhausted(func, limit, e)
                            raise
                        _log_retry(func, attempt, limit, current_delay, e)
                        await asyncio.sleep(current_delay)
                        current_delay *= backoff

            return async_wrapper  # type: ignore

        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            limit = _attempts(args)
            current_delay = delay
            for attempt in range(limit + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= limit:
                        _log_exhausted(func, limit, e)
                        raise
                    _log_retry(func, attempt, limit, current_delay, e)
                    time.sleep(current_delay)
                    current_delay *= backoff

        return wrapper  # type: ignore

    return decorator
