"""
Bounded retries with capped exponential backoff for client calls.

Retrying a send is only safe because the server deduplicates on
(room, nonce); callers must reuse the same nonce on every attempt.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from chatsync.errors import ChatError, is_transient

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, initial_delay: float, max_delay: float) -> float:
    """Delay before retry number `attempt` (0-based): initial * 2**attempt, capped."""
    return min(initial_delay * (2 ** attempt), max_delay)


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay: float = 0.2,
    max_delay: float = 2.0,
    should_retry: Callable[[BaseException], bool] = is_transient,
    operation: str = "call",
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """
    Call `fn` until it succeeds, fails permanently, or the budget runs out.

    Args:
        fn: Zero-argument coroutine factory, invoked once per attempt
        max_attempts: Total attempts including the first one
        initial_delay: Seconds to wait after the first failure
        max_delay: Upper bound for any single wait
        should_retry: Classifier; errors it rejects propagate immediately
        operation: Name used in log lines
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        Whatever `fn` returns on the first successful attempt

    Raises:
        The last error once attempts are exhausted, or the first
        non-retryable error.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    sleep = sleep or asyncio.sleep

    for attempt in range(max_attempts):
        try:
            return await fn()
        except Exception as error:
            if attempt == max_attempts - 1 or not should_retry(error):
                raise

            delay = backoff_delay(attempt, initial_delay, max_delay)
            kind = error.kind.value if isinstance(error, ChatError) else type(error).__name__
            logger.warning(
                f"[Retry] {operation} attempt {attempt + 1}/{max_attempts} failed ({kind}), "
                f"retrying in {delay:.2f}s"
            )
            await sleep(delay)

    # Unreachable: the last attempt either returned or raised
    raise RuntimeError("retry loop exited without a result")
