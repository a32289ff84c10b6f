"""
Stale-while-revalidate response cache.

Every key moves through three windows measured from the time its value was
computed:

* fresh (age < min_time_to_stale): served as is;
* stale (min_time_to_stale <= age < max_age): served as is while one
  background refresh runs;
* expired (age >= max_age): recomputed before anything is served, unless a
  background refresh is already underway, in which case the old value bridges
  the gap.

At most one computation per key is in flight at any time. Callers that arrive
while a blocking computation runs await that same computation.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Set, TYPE_CHECKING

from shared.errors import HardMissError
from shared.logging import cache_key_var, get_logger

from .stores import CacheStore, MemoryStore, StoredValue

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


ComputeFn = Callable[[], Awaitable[Any]]


@dataclass
class CacheEntry:
    """Per-key bookkeeping kept in process memory."""

    key: str
    value: Any = None
    has_value: bool = False
    computed_at: float = 0.0
    stale_at: float = 0.0
    expires_at: float = 0.0
    in_flight: Optional["asyncio.Task[Any]"] = field(default=None, repr=False)
    in_flight_background: bool = False

    def load(self, stored: StoredValue, stale_after: float, max_age: float) -> None:
        self.value = stored.value
        self.has_value = True
        self.computed_at = stored.computed_at
        self.stale_at = stored.computed_at + stale_after
        self.expires_at = stored.computed_at + max_age


class RevalidatingCache:
    """Keyed stale-while-revalidate cache over a ``CacheStore``."""

    def __init__(
        self,
        store: Optional[CacheStore] = None,
        *,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store: CacheStore = store if store is not None else MemoryStore()
        self.metrics = metrics
        self.logger = get_logger("api.revalidating_cache")
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._background_tasks: Set["asyncio.Task[Any]"] = set()
        self._stats: Dict[str, int] = {
            "fresh": 0,
            "stale": 0,
            "bridged": 0,
            "miss": 0,
            "shared": 0,
            "refresh_failures": 0,
        }

    async def get(
        self,
        key: str,
        compute_fn: ComputeFn,
        *,
        max_age: float,
        min_time_to_stale: Optional[float] = None,
    ) -> Any:
        """
        Return the value for ``key``, computing it with ``compute_fn`` when needed.

        ``max_age`` and ``min_time_to_stale`` are in seconds;
        ``min_time_to_stale`` defaults to ``max_age``. Raises ``HardMissError``
        when no servable value exists and the computation fails.
        """
        if max_age <= 0:
            raise ValueError("max_age must be positive")
        stale_after = max_age if min_time_to_stale is None else min(min_time_to_stale, max_age)

        entry = self._entries.setdefault(key, CacheEntry(key=key))
        if entry.in_flight is not None and not entry.in_flight_background:
            self._count("shared")
            return await asyncio.shield(entry.in_flight)

        stored = await self._safe_read(key)
        # The read may suspend; a computation that finished meanwhile is newer
        # than the snapshot the store handed back.
        if entry.has_value and (stored is None or entry.computed_at >= stored.computed_at):
            stored = StoredValue(value=entry.value, computed_at=entry.computed_at)
        now = self._clock()

        # No awaits from here until the in-flight marker is checked and set,
        # so concurrent readers cannot both start a computation.
        if stored is not None:
            entry.load(stored, stale_after, max_age)
            age = now - stored.computed_at

            if age < stale_after:
                self._count("fresh")
                return stored.value

            if age < max_age:
                self._count("stale")
                if entry.in_flight is None:
                    self._start(entry, compute_fn, stale_after, max_age, background=True)
                return stored.value

            if entry.in_flight is not None and entry.in_flight_background:
                self._count("bridged")
                return stored.value

        if entry.in_flight is None:
            self._count("miss")
            self._start(entry, compute_fn, stale_after, max_age, background=False)
        else:
            self._count("shared")

        # Shielded so that one cancelled reader does not cancel the
        # computation other readers share.
        return await asyncio.shield(entry.in_flight)

    def entry(self, key: str) -> Optional[CacheEntry]:
        """Bookkeeping for ``key``, if it has been requested in this process."""
        return self._entries.get(key)

    def stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "keys": len(self._entries),
            "in_flight": sum(1 for e in self._entries.values() if e.in_flight is not None),
        }

    def _start(
        self,
        entry: CacheEntry,
        compute_fn: ComputeFn,
        stale_after: float,
        max_age: float,
        *,
        background: bool,
    ) -> None:
        task = asyncio.create_task(self._refresh(entry, compute_fn, stale_after, max_age, background))
        entry.in_flight = task
        entry.in_flight_background = background
        task.add_done_callback(self._on_settled)
        if background:
            self._background_tasks.add(task)

    async def _refresh(
        self,
        entry: CacheEntry,
        compute_fn: ComputeFn,
        stale_after: float,
        max_age: float,
        background: bool,
    ) -> Any:
        mode = "background" if background else "blocking"
        token = cache_key_var.set(entry.key)
        started = time.perf_counter()
        try:
            try:
                value = await compute_fn()
            except Exception as exc:
                self._stats["refresh_failures"] += 1
                if self.metrics is not None:
                    self.metrics.increment_counter("cache_refresh_failures_total", mode=mode)
                if background:
                    # Stored value and timestamps stay as they were; the next
                    # read in the stale window will try again.
                    self.logger.warning(
                        "Background refresh failed",
                        failure="StaleServeFailure",
                        error=str(exc),
                        stale_since=entry.stale_at,
                    )
                else:
                    self.logger.error("Cache computation failed", failure="HardMissFailure", error=str(exc))
                raise HardMissError(entry.key, message=str(exc)) from exc

            computed_at = self._clock()
            await self._safe_write(entry.key, value, computed_at)
            entry.load(StoredValue(value=value, computed_at=computed_at), stale_after, max_age)

            if self.metrics is not None:
                self.metrics.observe_histogram(
                    "cache_compute_duration_seconds",
                    time.perf_counter() - started,
                    mode=mode,
                )
            self.logger.debug("Cache value computed", mode=mode)
            return value
        finally:
            entry.in_flight = None
            entry.in_flight_background = False
            cache_key_var.reset(token)

    def _on_settled(self, task: "asyncio.Task[Any]") -> None:
        self._background_tasks.discard(task)
        if not task.cancelled():
            # Mark the failure as retrieved; it has already been logged.
            task.exception()

    async def _safe_read(self, key: str) -> Optional[StoredValue]:
        """Read from the store, treating store failures as a miss."""
        try:
            return await self.store.read(key)
        except Exception as exc:
            self.logger.error("Cache store read error", cache_key=key, error=str(exc))
            return None

    async def _safe_write(self, key: str, value: Any, computed_at: float) -> None:
        try:
            await self.store.write(key, value, computed_at)
        except Exception as exc:
            self.logger.error("Cache store write error", cache_key=key, error=str(exc))

    def _count(self, state: str) -> None:
        self._stats[state] += 1
        if self.metrics is not None:
            self.metrics.increment_counter("cache_reads_total", state=state)
