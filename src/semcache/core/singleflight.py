"""
Request coalescing (single-flight).

Concurrent callers with the same key share one execution of the work.
The work runs as its own task, shielded from caller cancellation: a caller
that gives up (deadline, disconnect) stops waiting but the work completes,
so its result still reaches the other waiters and any side effects (cache
persistence) still happen. The key is removed once the work finishes,
success or failure.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class _Flight:
    task: asyncio.Task
    waiters: int = 0


class SingleFlight:
    def __init__(self) -> None:
        self._flights: dict[Hashable, _Flight] = {}

    def __len__(self) -> int:
        return len(self._flights)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._flights

    def waiters(self, key: Hashable) -> int:
        flight = self._flights.get(key)
        return flight.waiters if flight is not None else 0

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[Any]]) -> tuple[Any, bool]:
        """Run fn once per key at a time. Returns (result, shared).

        `shared` is False for the caller that started the work and True for
        callers that joined an existing flight.
        """
        flight = self._flights.get(key)
        shared = flight is not None
        if flight is None:
            task = asyncio.ensure_future(fn())
            flight = _Flight(task=task)
            self._flights[key] = flight
            task.add_done_callback(lambda t, k=key: self._finish(k, t))
        flight.waiters += 1
        try:
            result = await asyncio.shield(flight.task)
        finally:
            flight.waiters -= 1
        return result, shared

    def _finish(self, key: Hashable, task: asyncio.Task) -> None:
        if self._flights.get(key) is not None and self._flights[key].task is task:
            del self._flights[key]
        # Retrieve the outcome so an error nobody awaited is not reported as lost
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Flight for %r failed with %s", key, type(task.exception()).__name__)
