"""Step retry strategies.

Every module-call step is retried with exponential backoff:

    delay(attempt) = base_delay * 2 ** (attempt - 1), capped at max_delay

Usage:
    strategy = RetryStrategy.for_step(step, ceiling=5, max_delay=60.0)
    output = await execute_with_retry(call_once, strategy, on_retry=record)
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional


class RetryPolicy(str, Enum):
    """Available retry policies."""
    EXPONENTIAL = "exponential"
    NONE = "none"


@dataclass
class RetryStrategy:
    """Retry policy for a single step."""
    policy: RetryPolicy
    max_retries: int = 3
    base_delay: float = 5.0
    max_delay: float = 60.0

    @classmethod
    def none(cls) -> 'RetryStrategy':
        """No retries, fail on the first error."""
        return cls(policy=RetryPolicy.NONE, max_retries=0, base_delay=0.0)

    @classmethod
    def exponential(
        cls,
        max_retries: int = 3,
        base_delay: float = 5.0,
        max_delay: float = 60.0,
    ) -> 'RetryStrategy':
        return cls(
            policy=RetryPolicy.EXPONENTIAL,
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
        )

    @classmethod
    def for_step(cls, step, ceiling: int, max_delay: float) -> 'RetryStrategy':
        """Build the strategy for a step, bounded by the engine-wide ceiling."""
        retries = min(step.retry_count, ceiling)
        if retries <= 0:
            return cls.none()
        return cls.exponential(
            max_retries=retries,
            base_delay=step.retry_delay,
            max_delay=max_delay,
        )

    def to_dict(self) -> dict:
        return {
            'policy': self.policy.value,
            'max_retries': self.max_retries,
            'base_delay': self.base_delay,
            'max_delay': self.max_delay,
        }

    def compute_delay(self, attempt: int) -> float:
        """Compute the delay before retry number ``attempt`` (1-based)."""
        if self.policy == RetryPolicy.NONE:
            return 0.0

        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return round(delay, 3)

    def should_retry(self, attempt: int, error: Optional[Exception] = None) -> bool:
        """Whether failed attempt number ``attempt`` may be followed by another.

        Only errors flagged ``retryable`` (timeouts, open circuits,
        external call failures) are retried.
        """
        if self.policy == RetryPolicy.NONE or attempt > self.max_retries:
            return False
        if error is None:
            return True
        return bool(getattr(error, 'retryable', False))

    def delays(self) -> list[float]:
        """All delays this strategy would wait, in order."""
        return [self.compute_delay(i) for i in range(1, self.max_retries + 1)]


async def execute_with_retry(
    func: Callable[[], Awaitable],
    strategy: RetryStrategy,
    *,
    on_retry: Optional[Callable] = None,
    sleep: Callable[[float], Awaitable] = asyncio.sleep,
):
    """Run ``func`` until it succeeds or the strategy gives up.

    Args:
        func: Zero-argument async callable, one attempt per call.
        strategy: RetryStrategy instance.
        on_retry: Optional callback(attempt, error, delay) invoked before
            each wait. May be sync or async.
        sleep: Awaitable sleep, injectable for tests.

    Returns:
        The result of the first successful call.

    Raises:
        The last exception once retries are exhausted or the error is
        not retryable.
    """
    attempt = 0
    while True:
        try:
            return await func()
        except Exception as e:
            attempt += 1
            if not strategy.should_retry(attempt, e):
                raise

            delay = strategy.compute_delay(attempt)
            if on_retry:
                outcome = on_retry(attempt, e, delay)
                if asyncio.iscoroutine(outcome):
                    await outcome

            await sleep(delay)
