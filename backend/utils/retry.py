"""
Retry policy with exponential backoff.

Shared by token acquisition, metadata persistence and record-store
rate-limit handling.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhausted(Exception):
    """Raised when every attempt of a retried operation failed."""

    def __init__(self, description: str, attempts: int, last_error: BaseException):
        super().__init__(f"{description} failed after {attempts} attempt(s): {last_error}")
        self.description = description
        self.attempts = attempts
        self.last_error = last_error


def is_transient_error(error: BaseException) -> bool:
    """Errors worth retrying: anything that says so through ``is_transient``."""
    return bool(getattr(error, "is_transient", False))


@dataclass
class RetryPolicy:
    """Bounded exponential backoff."""

    max_attempts: int = 3
    base_delay_ms: int = 500
    multiplier: float = 2.0
    max_delay_ms: int = 8000
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False, compare=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be non-negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def delay_for(self, attempt: int) -> float:
        """
        Delay in seconds to wait after a failed attempt.

        Args:
            attempt: The attempt that just failed (1-based)
        """
        if attempt <= 0:
            return 0.0
        delay_ms = self.base_delay_ms * (self.multiplier ** (attempt - 1))
        return min(delay_ms, self.max_delay_ms) / 1000.0

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str,
        is_retryable: Optional[Callable[[BaseException], bool]] = None,
    ) -> T:
        """
        Run ``operation`` until it succeeds or attempts run out.

        Non-retryable errors propagate immediately. Once all attempts
        fail with retryable errors, RetryExhausted is raised carrying the
        last error.
        """
        should_retry = is_retryable or is_transient_error
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except Exception as e:
                if not should_retry(e):
                    raise
                last_error = e

            if attempt < self.max_attempts:
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.2f}s: {last_error}"
                )
                await self.sleep(delay)

        logger.error(f"{description} failed after {self.max_attempts} attempt(s): {last_error}")
        raise RetryExhausted(description, self.max_attempts, last_error)
