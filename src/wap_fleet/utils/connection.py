"""Bounded retries and settle waits.

Nothing in a rollout waits forever: retries stop after a fixed number of
attempts and every settle wait has a fixed length.
"""
import asyncio
import logging
from functools import wraps
from typing import Any, Callable, TypeVar

from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
    retry_if_exception_type,
    before_sleep_log,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_policy(max_attempts: int, min_wait: float, max_wait: float, exceptions: tuple) -> dict:
    """tenacity arguments shared by the sync and async wrappers.

    Equal bounds give a fixed delay, which is what device probes want;
    otherwise the delay backs off exponentially between them.
    """
    if min_wait == max_wait:
        wait = wait_fixed(min_wait)
    else:
        wait = wait_exponential(multiplier=1, min=min_wait, max=max_wait)
    return dict(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait,
        retry=retry_if_exception_type(exceptions),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def with_retry(
    exceptions: tuple,
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10,
) -> Callable:
    """Retry a sync or async callable on the given exception types.

    After the last attempt the original exception propagates unchanged.
    """
    policy = retry_policy(max_attempts, min_wait, max_wait, exceptions)

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        if asyncio.iscoroutinefunction(func):
            @retry(**policy)
            @wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> T:
                return await func(*args, **kwargs)  # type: ignore[misc]

            return async_wrapper  # type: ignore[return-value]

        @retry(**policy)
        @wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> T:
            return func(*args, **kwargs)

        return sync_wrapper

    return decorator


async def settle(seconds: float, reason: str) -> None:
    """Bounded wait for a device-side effect that is not observable yet."""
    if seconds <= 0:
        return
    logger.info(f"Waiting {seconds:g}s: {reason}")
    await asyncio.sleep(seconds)
