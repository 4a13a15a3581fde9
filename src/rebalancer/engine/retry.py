"""Bounded exponential-backoff retry with an injectable sleep.

The sleep coroutine is a constructor argument so tests can substitute a fake
that records requested delays instead of waiting.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from rebalancer.config import RetrySettings
from rebalancer.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class RetryPolicy:
    """Retry an async call up to max_attempts with exponential backoff.

    Delay before retry n (1-indexed) is base_delay * backoff_factor ** (n - 1).

    Args:
        max_attempts: Total attempts including the first (>= 1).
        base_delay: Seconds before the first retry.
        backoff_factor: Multiplier applied per further retry.
        sleep: Awaitable delay function, asyncio.sleep by default.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        backoff_factor: float = 2.0,
        sleep: Sleep | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.backoff_factor = backoff_factor
        self.sleep: Sleep = sleep or asyncio.sleep

    @classmethod
    def from_settings(cls, settings: RetrySettings, sleep: Sleep | None = None) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            backoff_factor=settings.backoff_factor,
            sleep=sleep,
        )

    def delay_for(self, retry: int) -> float:
        """Seconds to wait before the given retry (1-indexed)."""
        return self.base_delay * (self.backoff_factor ** (retry - 1))

    async def run(self, fn: Callable[[], Awaitable[T]], operation: str = "call") -> T:
        """Await fn() until it succeeds or attempts run out.

        Raises:
            The last exception raised by fn once all attempts fail.
        """
        attempt = 1
        while True:
            try:
                return await fn()
            except Exception as e:
                if attempt >= self.max_attempts:
                    logger.error(
                        "retry_exhausted",
                        operation=operation,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "retry_scheduled",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay=delay,
                    error=str(e),
                )
                await self.sleep(delay)
                attempt += 1
