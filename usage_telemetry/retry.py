"""
Retry with jittered exponential backoff for backend operations.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.3


def backoff_delay(attempt: int, base_delay: float, jitter: Optional[float] = None) -> float:
    """
    Delay to wait after the given failed attempt (1-based).

    base_delay * 2**(attempt - 1) plus up to 30% random jitter.
    """
    delay = base_delay * (2 ** (attempt - 1))
    if jitter is None:
        jitter = random.random()
    return delay + jitter * JITTER_RATIO * delay


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    name: str = "operation",
    max_retries: int = 3,
    retry_delay: float = 1.0,
    timeout: float = 5.0,
    skip_delays: bool = False,
) -> Optional[T]:
    """
    Run an async operation with timeout and retries.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        name: Label used in log messages
        max_retries: Total attempts before giving up
        retry_delay: Base backoff delay in seconds
        timeout: Per-attempt timeout in seconds; a timeout counts as a failure
        skip_delays: Skip backoff sleeps (deterministic mode)

    Returns:
        The operation's result, or None once all attempts failed

    Promises:
    - Never raises (cancellation still propagates)
    """
    last_error: Optional[BaseException] = None

    for attempt in range(1, max_retries + 1):
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)

        except asyncio.TimeoutError:
            last_error = TimeoutError(f"{name} timed out after {timeout}s")
            logger.debug(f"{name} attempt {attempt} timed out after {timeout}s")

        except Exception as e:
            last_error = e
            logger.debug(f"{name} attempt {attempt} failed: {e}")

        if attempt < max_retries and not skip_delays:
            await asyncio.sleep(backoff_delay(attempt, retry_delay))

    logger.debug(f"{name} failed after {max_retries} attempts: {last_error}")
    return None
