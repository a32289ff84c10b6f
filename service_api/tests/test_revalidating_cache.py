"""
Unit tests for the revalidating cache.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from shared.errors import HardMissError
from service_api.app.caching.revalidating_cache import RevalidatingCache
from service_api.app.caching.stores import MemoryStore, StoredValue


class Computation:
    """Async compute function that records calls and can be held open."""

    def __init__(self, *values, error=None):
        self.values = list(values)
        self.error = error
        self.calls = 0
        self.release = asyncio.Event()
        self.release.set()

    def hold(self):
        self.release.clear()

    async def __call__(self):
        self.calls += 1
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.values.pop(0) if len(self.values) > 1 else self.values[0]


class SlowStore(MemoryStore):
    """Memory store whose reads suspend like a network round-trip."""

    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    async def read(self, key):
        snapshot = await super().read(key)
        await asyncio.sleep(self.delay)
        return snapshot


class TestRevalidatingCache:
    """Test cases for RevalidatingCache."""

    @pytest.fixture
    def store(self):
        return MemoryStore()

    @pytest.fixture
    def cache(self, store, clock, metrics):
        return RevalidatingCache(store, metrics=metrics, clock=clock)

    @pytest.mark.asyncio
    async def test_miss_computes_and_stores(self, cache, store, clock):
        """Test a first read computes the value and persists it."""
        compute = Computation({"answer": 42})

        value = await cache.get("k", compute, max_age=300)

        assert value == {"answer": 42}
        assert compute.calls == 1
        stored = await store.read("k")
        assert stored == StoredValue(value={"answer": 42}, computed_at=clock.now)
        assert cache.stats()["miss"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_computation(self, cache):
        """Test concurrent readers of a missing key trigger a single compute."""
        compute = Computation("v1")
        compute.hold()

        readers = [asyncio.create_task(cache.get("k", compute, max_age=300)) for _ in range(10)]
        await asyncio.sleep(0)
        compute.release.set()
        results = await asyncio.gather(*readers)

        assert results == ["v1"] * 10
        assert compute.calls == 1
        stats = cache.stats()
        assert stats["miss"] == 1
        assert stats["shared"] == 9

    @pytest.mark.asyncio
    async def test_suspending_store_reads_share_one_computation(self, clock):
        """Test readers whose store read suspends never start a second compute."""
        cache = RevalidatingCache(SlowStore(delay=0.01), clock=clock)
        calls = []

        async def compute():
            calls.append(1)
            await asyncio.sleep(0.005)
            return len(calls)

        first = asyncio.create_task(cache.get("k", compute, max_age=300))
        await asyncio.sleep(0.012)
        second = asyncio.create_task(cache.get("k", compute, max_age=300))
        late = asyncio.create_task(cache.get("k", compute, max_age=300))
        results = await asyncio.gather(first, second, late)

        assert results == [1, 1, 1]
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_read_started_before_compute_finished_sees_new_value(self, clock):
        """Test a store snapshot older than the in-memory value is ignored."""
        cache = RevalidatingCache(SlowStore(delay=0.01), clock=clock)
        calls = []

        async def compute():
            calls.append(1)
            return len(calls)

        first = asyncio.create_task(cache.get("k", compute, max_age=300))
        await asyncio.sleep(0.002)
        # Starts its read while the first reader is still reading
        second = asyncio.create_task(cache.get("k", compute, max_age=300))

        assert await asyncio.gather(first, second) == [1, 1]
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_fresh_value_served_without_compute(self, cache, clock):
        """Test reads inside the fresh window never recompute."""
        compute = Computation("v1", "v2")
        await cache.get("k", compute, max_age=300, min_time_to_stale=60)

        clock.advance(30)
        value = await cache.get("k", compute, max_age=300, min_time_to_stale=60)

        assert value == "v1"
        assert compute.calls == 1
        assert cache.stats()["fresh"] == 1

    @pytest.mark.asyncio
    async def test_stale_reads_start_exactly_one_refresh(self, cache, clock):
        """Test a burst of stale reads returns the old value and refreshes once."""
        compute = Computation("v1", "v2")
        await cache.get("k", compute, max_age=300, min_time_to_stale=60)

        clock.advance(90)
        compute.hold()
        results = await asyncio.gather(
            *(cache.get("k", compute, max_age=300, min_time_to_stale=60) for _ in range(5))
        )

        assert results == ["v1"] * 5
        assert compute.calls == 2
        refresh = cache.entry("k").in_flight
        assert refresh is not None

        compute.release.set()
        await refresh

        clock.advance(1)
        assert await cache.get("k", compute, max_age=300, min_time_to_stale=60) == "v2"
        assert compute.calls == 2
        assert cache.entry("k").in_flight is None

    @pytest.mark.asyncio
    async def test_background_failure_leaves_entry_unchanged(self, cache, store, clock, metrics):
        """Test a failed background refresh keeps serving the previous value."""
        compute = Computation("v1")
        await cache.get("k", compute, max_age=300, min_time_to_stale=60)
        computed_at = clock.now

        clock.advance(90)
        failing = Computation(error=RuntimeError("rpc down"))
        assert await cache.get("k", failing, max_age=300, min_time_to_stale=60) == "v1"

        refresh = cache.entry("k").in_flight
        with pytest.raises(HardMissError):
            await refresh

        stored = await store.read("k")
        assert stored.value == "v1"
        assert stored.computed_at == computed_at
        assert cache.entry("k").in_flight is None
        assert cache.stats()["refresh_failures"] == 1
        assert metrics.total("cache_refresh_failures_total", mode="background") == 1

        # The next stale read tries again
        assert await cache.get("k", failing, max_age=300, min_time_to_stale=60) == "v1"
        with pytest.raises(HardMissError):
            await cache.entry("k").in_flight
        assert failing.calls == 2

    @pytest.mark.asyncio
    async def test_windows_over_time(self, cache, clock):
        """Test fresh, stale and expired handling for one key across five minutes."""
        compute = Computation("t0", "t90", "t400")
        assert await cache.get("k", compute, max_age=300, min_time_to_stale=60) == "t0"

        clock.advance(30)
        assert await cache.get("k", compute, max_age=300, min_time_to_stale=60) == "t0"
        assert compute.calls == 1

        clock.advance(60)
        assert await cache.get("k", compute, max_age=300, min_time_to_stale=60) == "t0"
        await cache.entry("k").in_flight
        assert compute.calls == 2

        # Refreshed at t=90, so t=400 is past its max_age as well
        clock.advance(310)
        assert await cache.get("k", compute, max_age=300, min_time_to_stale=60) == "t400"
        assert compute.calls == 3

    @pytest.mark.asyncio
    async def test_expired_value_bridges_running_background_refresh(self, cache, clock):
        """Test an expired value is served while a background refresh is in flight."""
        compute = Computation("v1", "v2")
        await cache.get("k", compute, max_age=300, min_time_to_stale=60)

        clock.advance(100)
        compute.hold()
        assert await cache.get("k", compute, max_age=300, min_time_to_stale=60) == "v1"
        await asyncio.sleep(0)

        clock.advance(300)
        assert await cache.get("k", compute, max_age=300, min_time_to_stale=60) == "v1"
        assert compute.calls == 2
        assert cache.stats()["bridged"] == 1

        compute.release.set()
        await cache.entry("k").in_flight

    @pytest.mark.asyncio
    async def test_expired_value_recomputed_before_serving(self, cache, clock):
        """Test an expired value with nothing in flight blocks on a new compute."""
        compute = Computation("v1", "v2")
        await cache.get("k", compute, max_age=300, min_time_to_stale=60)

        clock.advance(301)
        assert await cache.get("k", compute, max_age=300, min_time_to_stale=60) == "v2"
        assert cache.stats()["miss"] == 2

    @pytest.mark.asyncio
    async def test_hard_miss_raises_with_cause(self, cache):
        """Test a failed compute with nothing to serve raises HardMissError."""
        cause = RuntimeError("node unreachable")
        compute = Computation(error=cause)

        with pytest.raises(HardMissError) as exc_info:
            await cache.get("k", compute, max_age=300)

        assert exc_info.value.key == "k"
        assert exc_info.value.__cause__ is cause
        assert cache.entry("k").has_value is False

    @pytest.mark.asyncio
    async def test_concurrent_readers_share_hard_miss(self, cache):
        """Test every reader waiting on a failed compute sees the failure."""
        compute = Computation(error=RuntimeError("boom"))
        compute.hold()

        readers = [asyncio.create_task(cache.get("k", compute, max_age=300)) for _ in range(3)]
        await asyncio.sleep(0)
        compute.release.set()
        results = await asyncio.gather(*readers, return_exceptions=True)

        assert all(isinstance(result, HardMissError) for result in results)
        assert compute.calls == 1

    @pytest.mark.asyncio
    async def test_expired_after_failed_refresh_fails_outward(self, cache, clock):
        """Test stale data is not served past max_age once refreshes keep failing."""
        await cache.get("k", Computation("v1"), max_age=300, min_time_to_stale=60)

        failing = Computation(error=RuntimeError("down"))
        clock.advance(100)
        await cache.get("k", failing, max_age=300, min_time_to_stale=60)
        with pytest.raises(HardMissError):
            await cache.entry("k").in_flight

        clock.advance(250)
        with pytest.raises(HardMissError):
            await cache.get("k", failing, max_age=300, min_time_to_stale=60)

    @pytest.mark.asyncio
    async def test_store_read_error_treated_as_miss(self, clock):
        """Test a failing store read falls through to a compute."""
        store = AsyncMock()
        store.read.side_effect = ConnectionError("redis unavailable")
        cache = RevalidatingCache(store, clock=clock)

        value = await cache.get("k", Computation("v1"), max_age=60)

        assert value == "v1"
        store.write.assert_awaited_once_with("k", "v1", clock.now)

    @pytest.mark.asyncio
    async def test_store_write_error_still_returns_value(self, clock):
        """Test a failing store write does not fail the read."""
        store = AsyncMock()
        store.read.return_value = None
        store.write.side_effect = ConnectionError("redis unavailable")
        cache = RevalidatingCache(store, clock=clock)

        assert await cache.get("k", Computation("v1"), max_age=60) == "v1"

    @pytest.mark.asyncio
    async def test_min_time_to_stale_capped_at_max_age(self, cache, clock):
        """Test min_time_to_stale larger than max_age behaves like max_age."""
        compute = Computation("v1", "v2")
        await cache.get("k", compute, max_age=60, min_time_to_stale=600)

        entry = cache.entry("k")
        assert entry.stale_at == entry.expires_at == clock.now + 60

    @pytest.mark.asyncio
    async def test_rejects_non_positive_max_age(self, cache):
        """Test max_age must be positive."""
        with pytest.raises(ValueError):
            await cache.get("k", Computation("v1"), max_age=0)

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, cache):
        """Test one key's computation never serves another key."""
        assert await cache.get("a", Computation("A"), max_age=60) == "A"
        assert await cache.get("b", Computation("B"), max_age=60) == "B"
        assert cache.stats()["keys"] == 2
