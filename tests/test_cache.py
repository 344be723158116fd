import asyncio
from datetime import datetime, timezone

import pytest

from backend.training_dashboard.cache import ResultCache, cache_key
from backend.training_dashboard.errors import ConfigError
from backend.training_dashboard.models import DateRange


class Producer:
    """Counts invocations and optionally blocks until released."""

    def __init__(self, value="result", error=None):
        self.value = value
        self.error = error
        self.calls = 0
        self.release = asyncio.Event()
        self.release.set()
        self.cancelled = False

    async def __call__(self):
        self.calls += 1
        try:
            await self.release.wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        return f"{self.value}-{self.calls}"


@pytest.mark.asyncio
async def test_live_entry_is_reused_until_ttl_expires(clock):
    """Test that a 60 s TTL serves a 1 s later call from cache and recomputes after expiry."""
    cache = ResultCache(clock=clock)
    producer = Producer()

    first = await cache.get_or_compute("k", 60, producer)
    clock.advance(1)
    second = await cache.get_or_compute("k", 60, producer)
    assert first == second == "result-1"
    assert producer.calls == 1

    clock.advance(60)
    third = await cache.get_or_compute("k", 60, producer)
    assert third == "result-2"
    assert producer.calls == 2


@pytest.mark.asyncio
async def test_concurrent_calls_coalesce(clock):
    """Test that concurrent callers for one key share a single computation."""
    cache = ResultCache(clock=clock)
    producer = Producer()
    producer.release.clear()

    tasks = [asyncio.ensure_future(cache.get_or_compute("k", 60, producer)) for _ in range(5)]
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    producer.release.set()
    results = await asyncio.gather(*tasks)

    assert results == ["result-1"] * 5
    assert producer.calls == 1


@pytest.mark.asyncio
async def test_failed_producer_stores_nothing(clock):
    """Test that every waiter sees the failure and the next call recomputes."""
    cache = ResultCache(clock=clock)
    failing = Producer(error=RuntimeError("boom"))
    failing.release.clear()

    tasks = [asyncio.ensure_future(cache.get_or_compute("k", 60, failing)) for _ in range(2)]
    await asyncio.sleep(0)
    failing.release.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert all(isinstance(result, RuntimeError) for result in results)
    assert failing.calls == 1
    assert len(cache) == 0

    assert await cache.get_or_compute("k", 60, Producer()) == "result-1"


@pytest.mark.asyncio
async def test_cancelling_last_waiter_cancels_computation(clock):
    """Test that abandoning every waiter aborts the producer and caches nothing."""
    cache = ResultCache(clock=clock)
    producer = Producer()
    producer.release.clear()

    task = asyncio.ensure_future(cache.get_or_compute("k", 60, producer))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.sleep(0)

    assert producer.cancelled
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_cancelling_one_waiter_keeps_computation_for_others(clock):
    """Test that other waiters still receive the shared result."""
    cache = ResultCache(clock=clock)
    producer = Producer()
    producer.release.clear()

    leaving = asyncio.ensure_future(cache.get_or_compute("k", 60, producer))
    staying = asyncio.ensure_future(cache.get_or_compute("k", 60, producer))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    leaving.cancel()
    await asyncio.sleep(0)
    producer.release.set()

    assert await staying == "result-1"
    assert not producer.cancelled
    assert cache.peek("k") == "result-1"


@pytest.mark.asyncio
async def test_invalidate_and_clear(clock):
    """Test manual invalidation."""
    cache = ResultCache(clock=clock)
    producer = Producer()

    await cache.get_or_compute("a", 60, producer)
    await cache.get_or_compute("b", 60, producer)
    cache.invalidate("a")
    assert await cache.get_or_compute("a", 60, producer) == "result-3"

    cache.clear()
    assert len(cache) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("ttl", [0, -5])
async def test_non_positive_ttl_is_rejected(clock, ttl):
    """Test that a non-positive TTL is a configuration error."""
    with pytest.raises(ConfigError):
        await ResultCache(clock=clock).get_or_compute("k", ttl, Producer())


def test_cache_key_normalizes_parts():
    """Test that dates and sequences become hashable, comparable parts."""
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    key = cache_key("revenue", DateRange(start=start), ["a", "b"], None)

    assert key == ("revenue", ("2024-01-01T00:00:00+00:00", None), ("a", "b"), None)
    assert hash(key) == hash(cache_key("revenue", DateRange(start=start), ("a", "b"), None))
