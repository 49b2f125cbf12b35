"""
cairn/utils/async_retry.py

Provides a decorator to retry an async function multiple times upon failure,
with either a fixed or a linearly increasing delay between attempts.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Literal, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)

Backoff = Literal["fixed", "linear"]


def backoff_delay(delay: float, attempt_number: int, backoff: Backoff) -> float:
    """Seconds to wait after the given (1-based) failed attempt."""
    if backoff == "linear":
        return delay * attempt_number
    return delay


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    noisy: bool = False,
    backoff: Backoff = "fixed",
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    The decorated function will be attempted up to `retries` times. Between
    attempts we sleep `delay` seconds ("fixed") or `delay * attempt_number`
    seconds ("linear"). Only exceptions matching `retry_on` trigger a retry;
    anything else, including task cancellation, propagates immediately. If
    `noisy` is True, logs a warning on each failure and an error on the final one.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Defaults to 3.
        delay (float, optional):
            Base delay in seconds between attempts. Defaults to 1.0.
        noisy (bool, optional):
            If True, logs each failed attempt. Defaults to False.
        backoff (Backoff, optional):
            "fixed" or "linear". Defaults to "fixed".
        retry_on (Tuple[Type[BaseException], ...], optional):
            Exception types that are retried. Defaults to (Exception,).

    Returns:
        A decorator that, when applied to an async function, returns a wrapped
        version that retries on matching exceptions.
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            async def attempt(remaining: int, attempt_number: int) -> R:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if noisy:
                        logger.warning(
                            "Attempt %d/%d for %r failed: %s",
                            attempt_number,
                            retries,
                            func.__qualname__,
                            exc,
                        )
                    if remaining > 1:
                        await asyncio.sleep(
                            backoff_delay(delay, attempt_number, backoff)
                        )
                        return await attempt(remaining - 1, attempt_number + 1)

                    if noisy:
                        logger.error(
                            "All %d attempts failed for %r", retries, func.__qualname__
                        )
                    raise

            return await attempt(max(retries, 1), 1)

        return wrapper

    return decorator
