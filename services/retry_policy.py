"""
Retry policy for upstream calls.

Wraps one async operation with a bounded number of attempts and exponential
backoff. The server-suggested delay (retry_after on the raised SyncError) wins
over the computed one.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import RETRYABLE_ERRORS, SyncError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def is_retryable(error: Exception) -> bool:
    return isinstance(error, RETRYABLE_ERRORS)


def exponential_backoff(base_seconds: float) -> Callable[[int, Exception], float]:
    """Backoff of base * 2**attempt, where attempt counts from 0"""
    def backoff(attempt: int, error: Exception) -> float:
        suggested = getattr(error, 'retry_after', None)
        if suggested:
            return float(suggested)
        return base_seconds * (2 ** attempt)
    return backoff


@dataclass
class RetryPolicy:
    """
    Retry an async callable while classify() says the failure is transient.

    Attributes:
        max_attempts: Total attempts, including the first one
        classify: Predicate deciding whether an exception is worth retrying
        backoff: Maps (attempt index, error) to a delay in seconds
        sleep: Awaitable sleep, injectable for tests
        on_retry: Optional hook called with (attempt, error, delay) before each wait
    """
    max_attempts: int = 3
    classify: Callable[[Exception], bool] = is_retryable
    backoff: Callable[[int, Exception], float] = field(default_factory=lambda: exponential_backoff(10))
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    on_retry: Optional[Callable[[int, Exception, float], None]] = None

    async def run(self, operation: Callable[[], Awaitable[T]], description: str = "operation") -> T:
        """
        Run operation until it succeeds or the policy gives up.

        Raises:
            The last exception raised by operation
        """
        last_error: Optional[Exception] = None

        for attempt in range(self.max_attempts):
            try:
                return await operation()
            except Exception as e:
                last_error = e
                if not self.classify(e):
                    raise
                if attempt >= self.max_attempts - 1:
                    break

                delay = self.backoff(attempt, e)
                code = e.error_code if isinstance(e, SyncError) else type(e).__name__
                logger.warning(f"{description} failed ({code}), attempt {attempt + 1}/{self.max_attempts}, "
                               f"retrying in {delay:.1f}s: {e}")
                if self.on_retry:
                    self.on_retry(attempt, e, delay)
                await self.sleep(delay)

        logger.error(f"{description} failed after {self.max_attempts} attempts: {last_error}")
        raise last_error
