"""Tests for the embedding cache."""
import asyncio

import pytest

from docgraph.resilience.cache import EmbeddingCache, content_key


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def make_compute(calls, delay=0.0, fail=None):
    async def compute(text):
        calls.append(text)
        if delay:
            await asyncio.sleep(delay)
        if fail is not None:
            raise fail
        return [float(len(text)), 1.0]

    return compute


def test_content_key_is_stable_sha256():
    assert content_key("abc") == content_key("abc")
    assert content_key("abc") != content_key("abd")
    assert len(content_key("abc")) == 64


async def test_same_text_twice_computes_once():
    cache = EmbeddingCache(max_items=10, ttl_seconds=60, enabled=True)
    calls = []
    compute = make_compute(calls)

    first = await cache.get_or_compute("How is X configured?", compute)
    second = await cache.get_or_compute("How is X configured?", compute)

    assert first == second
    assert calls == ["How is X configured?"]
    assert cache.stats()["hits"] == 1


async def test_concurrent_requests_share_one_computation():
    cache = EmbeddingCache(max_items=10, ttl_seconds=60, enabled=True)
    calls = []
    compute = make_compute(calls, delay=0.01)

    results = await asyncio.gather(*(cache.get_or_compute("same", compute) for _ in range(5)))

    assert len(calls) == 1
    assert all(r == results[0] for r in results)


async def test_failure_reaches_all_waiters_and_is_not_cached():
    cache = EmbeddingCache(max_items=10, ttl_seconds=60, enabled=True)
    calls = []
    compute = make_compute(calls, delay=0.01, fail=RuntimeError("backend down"))

    results = await asyncio.gather(
        *(cache.get_or_compute("text", compute) for _ in range(3)),
        return_exceptions=True,
    )

    assert len(calls) == 1
    assert all(isinstance(r, RuntimeError) for r in results)
    assert len(cache) == 0

    await cache.get_or_compute("text", make_compute(calls))
    assert len(calls) == 2


def test_least_recently_used_entry_is_evicted():
    cache = EmbeddingCache(max_items=2, ttl_seconds=60, enabled=True)
    cache.set("a", [1.0])
    cache.set("b", [2.0])
    assert cache.get("a") == [1.0]

    cache.set("c", [3.0])

    assert cache.get("b") is None
    assert cache.get("a") == [1.0]
    assert cache.get("c") == [3.0]
    assert cache.evictions == 1


def test_entries_expire_after_ttl():
    clock = Clock()
    cache = EmbeddingCache(max_items=10, ttl_seconds=10, enabled=True, clock=clock)
    cache.set("a", [1.0])

    clock.now = 9.9
    assert cache.get("a") == [1.0]

    clock.now = 10.0
    assert cache.get("a") is None
    assert len(cache) == 0


async def test_disabled_cache_always_computes():
    cache = EmbeddingCache(enabled=False)
    calls = []
    compute = make_compute(calls)

    await cache.get_or_compute("a", compute)
    await cache.get_or_compute("a", compute)

    assert len(calls) == 2
    assert len(cache) == 0


def test_invalidate_and_clear():
    cache = EmbeddingCache(max_items=10, ttl_seconds=60, enabled=True)
    cache.set("a", [1.0])
    cache.set("b", [2.0])

    assert cache.invalidate("a") is True
    assert cache.invalidate("a") is False

    cache.clear()
    assert len(cache) == 0


def test_stats_hit_rate():
    cache = EmbeddingCache(max_items=10, ttl_seconds=60, enabled=True)
    cache.set("a", [1.0])
    cache.get("a")
    cache.get("missing")

    stats = cache.stats()

    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == pytest.approx(0.5)
