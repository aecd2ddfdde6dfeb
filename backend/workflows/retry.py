"""
Retry with exponential backoff
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryOutcome(Generic[T]):
    value: T
    attempts: int


class RetryExhausted(Exception):
    """Raised when every attempt failed; wraps the last error."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(str(last_error) or type(last_error).__name__)
        self.attempts = attempts
        self.last_error = last_error


def backoff_delay_ms(base_ms: int, attempt: int) -> int:
    """Delay after failed attempt number `attempt` (1-based): base * 2^(attempt-1)."""
    return base_ms * (2 ** (attempt - 1))


async def retry_with_backoff(
    operation: Callable[[int], Awaitable[T]],
    times: int = 0,
    backoff_ms: int = 100,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    label: Optional[str] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RetryOutcome[T]:
    """
    Run `operation(attempt)` until it succeeds, at most `times + 1` times.

    Between attempts waits backoff_ms * 2^(attempt-1) milliseconds.
    Raises RetryExhausted after the last failure.
    """
    max_attempts = max(0, times) + 1
    attempt = 0
    while True:
        attempt += 1
        try:
            value = await operation(attempt)
            return RetryOutcome(value=value, attempts=attempt)
        except retry_on as e:
            logger.warning(f"[{label or 'retry'}] attempt {attempt}/{max_attempts} failed: {e or type(e).__name__}")
            if attempt >= max_attempts:
                raise RetryExhausted(attempt, e) from e
            await sleep(backoff_delay_ms(backoff_ms, attempt) / 1000)
