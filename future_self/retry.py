"""Polling helpers for the Future Self service using tenacity."""

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_result,
    stop_before_delay,
    wait_exponential,
)

T = TypeVar("T")


def _give_up(retry_state: RetryCallState) -> None:
    logger.debug(
        f"Stopped polling after {retry_state.attempt_number} attempts "
        f"({retry_state.seconds_since_start:.1f}s)"
    )
    return None


async def poll_until_present(
    fetch: Callable[[], Awaitable[T | None]],
    initial: float = 0.5,
    multiplier: float = 1.5,
    max_interval: float = 2.0,
    timeout: float = 15.0,
) -> T | None:
    """Call fetch until it returns a value or timeout elapses.

    Args:
        fetch: Coroutine function returning None while the value is absent.
        initial: First sleep interval in seconds.
        multiplier: Growth factor applied to each following interval.
        max_interval: Upper bound for a single interval.
        timeout: Total time budget in seconds.

    Returns:
        The first non-None result, or None on timeout.
    """
    retrying: AsyncRetrying = AsyncRetrying(
        retry=retry_if_result(lambda result: result is None),
        stop=stop_before_delay(timeout),
        wait=wait_exponential(multiplier=initial, exp_base=multiplier, max=max_interval),
        retry_error_callback=_give_up,
        reraise=True,
    )
    result: Any = await retrying(fetch)
    return result
