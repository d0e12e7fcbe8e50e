"""Retry with exponential backoff for webhook event processing."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
ErrorCallback = Callable[[int, Exception, Optional[float]], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limits for one webhook delivery.

    ``max_retries`` counts retries after the first attempt, so the operation
    runs at most ``max_retries + 1`` times.
    """
    max_retries: int = 3
    base_delay: float = 2.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


def compute_delay(retry_number: int, base_delay: float = 2.0) -> float:
    """Delay before retry ``retry_number`` (1-based): base * 2^n.

    With the default base of 2 seconds the delays are 4s, 8s, 16s.
    """
    if retry_number < 1:
        raise ValueError("retry_number starts at 1")
    return base_delay * (2 ** retry_number)


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    sleep: Sleep = asyncio.sleep,
    on_error: Optional[ErrorCallback] = None,
) -> T:
    """Run ``operation`` until it succeeds or the policy is exhausted.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt
        policy: Retry limits
        sleep: Awaitable sleep, replaced in tests
        on_error: Called with (attempt, error, next_delay) after each failed
            attempt; next_delay is None when no retry follows

    Returns:
        The operation's result

    Raises:
        Exception: The last error once all attempts have failed
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            retries_left = attempt <= policy.max_retries
            delay = compute_delay(attempt, policy.base_delay) if retries_left else None
            if on_error is not None:
                await on_error(attempt, e, delay)
            if delay is None:
                raise
            await sleep(delay)
