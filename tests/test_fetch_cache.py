"""
Tests for single-flight cache correctness.

Validates:
1. Concurrent gets share one fetch and one result
2. A failed fetch clears the slot before callers see the error
3. Keyed slots are independent and invalidate only their own key
4. Keyed slots expire after their TTL and are capped, oldest first
"""
import asyncio
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from fetch_cache import KeyedSingleFlightCache, SingleFlightCache  # noqa: E402


class CountingFetcher:
    """Slow fetcher that fails the first ``failures`` calls."""

    def __init__(self, failures: int = 0, delay: float = 0.01):
        self.calls = 0
        self.keys = []
        self.failures = failures
        self.delay = delay

    async def __call__(self, key=None):
        self.calls += 1
        fetch_num = self.calls
        self.keys.append(key)
        await asyncio.sleep(self.delay)
        if fetch_num <= self.failures:
            raise RuntimeError(f"fetch {fetch_num} failed")
        return {"key": key, "fetch_num": fetch_num}


def test_concurrent_gets_trigger_one_fetch():
    fetcher = CountingFetcher()

    async def scenario():
        cache = SingleFlightCache(fetcher, name="stops")
        return await asyncio.gather(*[cache.get() for _ in range(10)])

    results = asyncio.run(scenario())

    assert fetcher.calls == 1
    assert all(r is results[0] for r in results)


def test_success_is_cached_for_later_callers():
    fetcher = CountingFetcher()

    async def scenario():
        cache = SingleFlightCache(fetcher)
        first = await cache.get()
        second = await cache.get()
        return first, second

    first, second = asyncio.run(scenario())

    assert fetcher.calls == 1
    assert first is second


def test_failure_reaches_every_concurrent_caller_once():
    fetcher = CountingFetcher(failures=1)

    async def scenario():
        cache = SingleFlightCache(fetcher)
        return await asyncio.gather(*[cache.get() for _ in range(5)], return_exceptions=True)

    results = asyncio.run(scenario())

    assert fetcher.calls == 1
    assert all(isinstance(r, RuntimeError) for r in results)
    assert all(r is results[0] for r in results)


def test_failure_clears_slot_so_next_get_refetches():
    fetcher = CountingFetcher(failures=1)

    async def scenario():
        cache = SingleFlightCache(fetcher)
        with pytest.raises(RuntimeError):
            try:
                await cache.get()
            except RuntimeError:
                # Cleared before the error propagated.
                assert not cache.cached
                raise
        return await cache.get()

    value = asyncio.run(scenario())

    assert fetcher.calls == 2
    assert value["fetch_num"] == 2


def test_cancelled_caller_does_not_cancel_shared_fetch():
    fetcher = CountingFetcher(delay=0.05)

    async def scenario():
        cache = SingleFlightCache(fetcher)
        impatient = asyncio.ensure_future(cache.get())
        patient = asyncio.ensure_future(cache.get())
        await asyncio.sleep(0.01)
        impatient.cancel()
        value = await patient
        return impatient, value

    impatient, value = asyncio.run(scenario())

    assert impatient.cancelled()
    assert value["fetch_num"] == 1
    assert fetcher.calls == 1


def test_keyed_gets_share_fetch_per_key():
    fetcher = CountingFetcher()

    async def scenario():
        cache = KeyedSingleFlightCache(fetcher, name="arrivals")
        return await asyncio.gather(
            cache.get("S1"), cache.get("S1"), cache.get("S2"), cache.get("S2")
        )

    a1, a2, b1, b2 = asyncio.run(scenario())

    assert fetcher.calls == 2
    assert a1 is a2 and b1 is b2
    assert a1["key"] == "S1" and b1["key"] == "S2"


def test_invalidate_one_key_leaves_other_key_cached():
    fetcher = CountingFetcher()

    async def scenario():
        cache = KeyedSingleFlightCache(fetcher)
        await cache.get("A")
        await cache.get("B")
        cache.invalidate("A")
        await cache.get("B")
        b_calls = fetcher.keys.count("B")
        await cache.get("A")
        return b_calls

    b_calls = asyncio.run(scenario())

    assert b_calls == 1
    assert fetcher.keys.count("A") == 2


def test_keyed_failure_only_clears_its_own_key():
    async def fetcher(key):
        await asyncio.sleep(0)
        if key == "bad":
            raise RuntimeError("bad stop")
        return key

    async def scenario():
        cache = KeyedSingleFlightCache(fetcher)
        await cache.get("good")
        with pytest.raises(RuntimeError):
            await cache.get("bad")
        return cache

    cache = asyncio.run(scenario())

    assert "good" in cache
    assert "bad" not in cache


def test_invalidate_during_fetch_keeps_newer_generation():
    fetcher = CountingFetcher(failures=1, delay=0.02)

    async def scenario():
        cache = KeyedSingleFlightCache(fetcher)
        old = asyncio.ensure_future(cache.get("S1"))
        await asyncio.sleep(0)
        cache.invalidate("S1")
        new_value = await cache.get("S1")
        with pytest.raises(RuntimeError):
            await old
        # The old generation failing must not evict the new one.
        assert "S1" in cache
        await cache.get("S1")
        return new_value

    new_value = asyncio.run(scenario())

    assert new_value["fetch_num"] == 2
    assert fetcher.calls == 2


def test_keyed_entry_expires_after_ttl(monkeypatch):
    import fetch_cache

    now = [1000.0]
    monkeypatch.setattr(fetch_cache.time, "time", lambda: now[0])
    fetcher = CountingFetcher(delay=0)

    async def scenario():
        cache = KeyedSingleFlightCache(fetcher, ttl=10)
        first = await cache.get("S1")
        now[0] += 9
        fresh = await cache.get("S1")
        now[0] += 1
        expired = await cache.get("S1")
        return first, fresh, expired

    first, fresh, expired = asyncio.run(scenario())

    assert fresh is first
    assert expired["fetch_num"] == 2
    assert fetcher.calls == 2


def test_pending_fetch_is_shared_even_with_zero_ttl():
    fetcher = CountingFetcher()

    async def scenario():
        cache = KeyedSingleFlightCache(fetcher, ttl=0)
        return await asyncio.gather(*[cache.get("S1") for _ in range(5)])

    results = asyncio.run(scenario())

    assert fetcher.calls == 1
    assert all(r is results[0] for r in results)


def test_max_keys_evicts_least_recently_used():
    fetcher = CountingFetcher(delay=0)

    async def scenario():
        cache = KeyedSingleFlightCache(fetcher, max_keys=2)
        await cache.get("A")
        await cache.get("B")
        await cache.get("A")
        await cache.get("C")
        return cache

    cache = asyncio.run(scenario())

    assert cache.keys() == ["A", "C"]
    assert "B" not in cache
    assert fetcher.keys == ["A", "B", "C"]
