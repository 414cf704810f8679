import asyncio

import pytest

from flowline.cache import ResultCache, cache_key
from flowline.clock import ManualClock
from flowline.config import CacheConfig
from flowline.models import CacheStatus
from flowline.persistence import InMemoryStore


class Counter:
    def __init__(self, value="rows", delay=0.0):
        self.calls = 0
        self.value = value
        self.delay = delay

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return f"{self.value}-{self.calls}"


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def cache(store, clock):
    return ResultCache(store, clock, CacheConfig(ttl_s=60, lock_ttl_ms=5_000, wait_poll_ms=10))


@pytest.mark.asyncio
async def test_miss_then_hit(cache, clock):
    compute = Counter()
    assert await cache.get_or_compute("r", "f1", compute) == ("rows-1", False)
    assert await cache.get_or_compute("r", "f1", compute) == ("rows-1", True)
    assert await cache.get_or_compute("r", "f2", compute) == ("rows-2", False)

    entry = await cache.peek("r", "f1")
    assert entry.status == CacheStatus.READY
    assert entry.hits == 1
    assert entry.expires_at == entry.computed_at + 60_000


@pytest.mark.asyncio
async def test_expired_entry_is_recomputed(cache, clock):
    compute = Counter()
    await cache.get_or_compute("r", "f", compute, ttl_s=5)
    clock.advance(4_999)
    assert (await cache.get_or_compute("r", "f", compute))[1] is True
    clock.advance(1)
    assert await cache.get_or_compute("r", "f", compute) == ("rows-2", False)


@pytest.mark.asyncio
async def test_failed_compute_releases_the_claim(cache):
    async def broken():
        raise ConnectionError("db down")

    with pytest.raises(ConnectionError):
        await cache.get_or_compute("r", "f", broken)
    assert await cache.peek("r", "f") is None

    assert await cache.get_or_compute("r", "f", Counter()) == ("rows-1", False)


@pytest.mark.asyncio
async def test_concurrent_callers_in_one_process_share_the_result(cache):
    compute = Counter(delay=0.05)
    results = await asyncio.gather(*(cache.get_or_compute("r", "f", compute) for _ in range(3)))
    assert compute.calls == 1
    assert sorted(hit for _, hit in results) == [False, True, True]
    assert {value for value, _ in results} == {"rows-1"}


@pytest.mark.asyncio
async def test_other_process_waits_for_the_producer(store, clock):
    config = CacheConfig(wait_poll_ms=10)
    first = ResultCache(store, clock, config)
    second = ResultCache(store, clock, config)
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return "shared"

    producer = asyncio.create_task(first.get_or_compute("r", "f", slow, producer="p1"))
    await asyncio.sleep(0.02)
    waiter = asyncio.create_task(second.get_or_compute("r", "f", Counter(), producer="p2"))
    await asyncio.sleep(0.05)
    assert not waiter.done()

    release.set()
    assert await producer == ("shared", False)
    assert await asyncio.wait_for(waiter, timeout=2) == ("shared", True)


@pytest.mark.asyncio
async def test_stale_claim_is_taken_over(cache, store, clock):
    # a producer that died leaves its computing row behind
    other = ResultCache(store, clock, CacheConfig(lock_ttl_ms=5_000))
    state, _ = await other._claim(cache_key("r", "f"), "r", "f", "dead")
    assert state == "produce"

    clock.advance(5_000)
    compute = Counter()
    assert await cache.get_or_compute("r", "f", compute) == ("rows-1", False)
    assert compute.calls == 1


@pytest.mark.asyncio
async def test_invalidate_purge_and_stats(cache, clock):
    for fingerprint in ("a", "b"):
        await cache.get_or_compute("sales", fingerprint, Counter())
    await cache.get_or_compute("stock", "a", Counter(), ttl_s=1)
    await cache.get_or_compute("sales", "a", Counter())

    assert await cache.stats("sales") == {"entries": 2, "live": 2, "computing": 0, "hits": 1}
    assert await cache.invalidate("sales", "a") == 1
    assert await cache.invalidate("sales") == 1
    assert await cache.invalidate("sales") == 0

    clock.advance(1_000)
    assert await cache.purge_expired() == 1
    assert (await cache.stats())["entries"] == 0
