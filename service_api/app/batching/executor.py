"""
Bounded-concurrency execution of independent async producers.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

from shared.logging import get_logger


T = TypeVar("T")

Task = Callable[[], Awaitable[T]]

logger = get_logger("api.batch_executor")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Settled result of one task: a value, or the exception that ended it."""

    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, re-raising the task's failure if it had one."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


async def run_concurrently_at_most(tasks: Sequence[Task[T]], limit: int) -> List[Outcome[T]]:
    """
    Run ``tasks`` with at most ``limit`` of them in flight at any instant.

    Tasks start in input order; whenever one settles the next pending task
    starts. The result list has one ``Outcome`` per task at the same index,
    whatever the completion order. A failing task never cancels or skips its
    siblings.
    """
    if limit < 1:
        raise ValueError(f"limit must be a positive integer, got {limit}")
    if not tasks:
        return []

    window = asyncio.Semaphore(limit)

    async def _settle(index: int, task: Task[T]) -> Outcome[T]:
        async with window:
            try:
                return Outcome(value=await task())
            except Exception as exc:
                logger.debug("Batch task failed", index=index, error=str(exc))
                return Outcome(error=exc)

    # gather() schedules in order and the semaphore wakes waiters FIFO, so
    # pending tasks start in their original order.
    return list(await asyncio.gather(*(_settle(i, task) for i, task in enumerate(tasks))))
