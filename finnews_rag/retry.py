"""
Bounded retry with exponential backoff.

Used for calls to the embedding provider and for vector batch writes.
Rate-limit responses (HTTP 429) add an extended cooldown before the next attempt.
"""

import time
import logging
from typing import Callable, Tuple, Type, TypeVar

from .errors import TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """
    Compute the wait before retrying after a failed attempt.

    Args:
        attempt: 1-based number of the attempt that just failed
        base_delay: Delay after the first failure (seconds)
        max_delay: Ceiling for the delay (seconds)

    Returns:
        Delay in seconds: min(base_delay * 2^(attempt - 1), max_delay)
    """
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


def retry_with_backoff(
    fn: Callable[[], T],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    rate_limit_cooldown: float = 60.0,
    retry_on: Tuple[Type[BaseException], ...] = (TransientProviderError,),
    sleep: Callable[[float], None] = time.sleep,
    description: str = "call"
) -> T:
    """
    Call fn until it succeeds or max_attempts is exhausted.

    Only exceptions listed in retry_on are retried; anything else propagates
    immediately. The last retryable exception is re-raised on exhaustion.

    Args:
        fn: Zero-argument callable to invoke
        max_attempts: Total number of attempts (>= 1)
        base_delay: Backoff after the first failure (seconds)
        max_delay: Backoff ceiling (seconds)
        rate_limit_cooldown: Extra wait when the error is a 429 (seconds)
        retry_on: Exception types considered transient
        sleep: Sleep function (injectable for tests)
        description: Label used in log messages

    Returns:
        Whatever fn returns
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt >= max_attempts:
                logger.error(f"{description} failed after {max_attempts} attempts: {e}")
                raise

            wait_time = backoff_delay(attempt, base_delay, max_delay)
            if getattr(e, 'rate_limited', False):
                wait_time += rate_limit_cooldown
                logger.warning(
                    f"{description} rate limited (attempt {attempt}/{max_attempts}), "
                    f"cooling down for {wait_time:.1f}s"
                )
            else:
                logger.warning(
                    f"{description} failed (attempt {attempt}/{max_attempts}): {e}. "
                    f"Retrying in {wait_time:.1f}s..."
                )
            sleep(wait_time)

    # Unreachable: the loop either returns or raises
    raise RuntimeError(f"{description}: retry loop exited unexpectedly")
