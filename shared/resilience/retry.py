import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_ms: float = 100
    max_delay_ms: float = 2000
    jitter: float = 0.25

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def backoff_delay_ms(self, attempt: int, rand: float) -> float:
        """
        Exponential backoff for the given zero-based attempt, capped, then scaled
        by a symmetric jitter factor. `rand` is a uniform draw in [0, 1).
        """
        delay = min(self.base_delay_ms * (2 ** attempt), self.max_delay_ms)
        return delay * (1 + self.jitter * (2 * rand - 1))


async def retry_async(
    operation: Callable[[int], Awaitable[T]],
    should_retry: Callable[[T], bool],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rand: Callable[[], float] = random.random,
    on_retry: Callable[[int, float, T], None] | None = None,
) -> T:
    """
    Runs `operation(attempt)` until it returns a result `should_retry` rejects
    or the attempt cap is reached. Returns the last result.
    """
    attempt = 0
    while True:
        result = await operation(attempt)
        if attempt >= policy.max_retries or not should_retry(result):
            return result
        delay_ms = policy.backoff_delay_ms(attempt, rand())
        if on_retry:
            on_retry(attempt, delay_ms, result)
        await sleep(delay_ms / 1000)
        attempt += 1
