"""Backoff retry for idempotent background work.

Provider calls are never retried: a retry could issue a second billable
completion. This policy is used for re-attempting cache persistence after
a completion has already been returned to the caller.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class RetryPolicy:
    def __init__(self, max_attempts: int = 3, base_delay: float = 1.0, max_delay: float = 40.0):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_backoff_time(self, attempt: int) -> float:
        """
        Calculate the backoff time for a retry attempt.
        """
        return min(
            self.max_delay, self.base_delay * (2**attempt) + random.uniform(0, self.base_delay)
        )

    async def execute_with_retry(
        self, func: Callable[..., Awaitable[Any]], *args, **kwargs
    ) -> Any:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                if attempt == self.max_attempts:
                    raise
                backoff_time = self.calculate_backoff_time(attempt)
                logger.info(
                    "Attempt %d/%d of %s failed (%s); retrying in %.2fs",
                    attempt,
                    self.max_attempts,
                    getattr(func, "__name__", "call"),
                    e,
                    backoff_time,
                )
                await asyncio.sleep(backoff_time)
