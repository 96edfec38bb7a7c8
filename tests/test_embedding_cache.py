"""Tests for the query-embedding cache."""

from __future__ import annotations

import asyncio

import pytest

from docqa.application.embedding_cache import EmbeddingCache, cache_key
from docqa.application.exceptions import EmbeddingError
from docqa.domain.models import EmbeddingSpace


class CountingCompute:
    def __init__(self, delay: float = 0.0, fail: Exception | None = None) -> None:
        self.calls = 0
        self.delay = delay
        self.fail = fail

    async def __call__(self, text: str) -> list[float]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        return [float(len(text)), float(self.calls)]


def test_cache_key_normalises_whitespace_and_case():
    assert cache_key("  What IS\n the  warranty? ", EmbeddingSpace.REMOTE) == (
        "what is the warranty?",
        "remote",
    )


class TestHitsAndMisses:
    async def test_second_call_uses_cache(self):
        cache = EmbeddingCache()
        compute = CountingCompute()
        first = await cache.get("warranty", EmbeddingSpace.REMOTE, compute)
        second = await cache.get("warranty", EmbeddingSpace.REMOTE, compute)
        assert compute.calls == 1
        assert first == second
        assert cache.stats() == {"size": 1, "capacity": 1000, "hits": 1, "misses": 1}

    async def test_different_space_recomputes(self):
        cache = EmbeddingCache()
        compute = CountingCompute()
        await cache.get("warranty", EmbeddingSpace.REMOTE, compute)
        await cache.get("warranty", EmbeddingSpace.LOCAL, compute)
        assert compute.calls == 2
        assert len(cache) == 2

    async def test_normalised_text_shares_entry(self):
        cache = EmbeddingCache()
        compute = CountingCompute()
        await cache.get("What is the warranty?", EmbeddingSpace.REMOTE, compute)
        await cache.get("what is  the WARRANTY?", EmbeddingSpace.REMOTE, compute)
        assert compute.calls == 1


class TestEviction:
    async def test_least_recently_used_is_evicted(self):
        cache = EmbeddingCache(capacity=2)
        compute = CountingCompute()
        await cache.get("a", EmbeddingSpace.REMOTE, compute)
        await cache.get("b", EmbeddingSpace.REMOTE, compute)
        await cache.get("a", EmbeddingSpace.REMOTE, compute)  # refresh a
        await cache.get("c", EmbeddingSpace.REMOTE, compute)  # evicts b

        assert len(cache) == 2
        await cache.get("a", EmbeddingSpace.REMOTE, compute)
        assert compute.calls == 3
        await cache.get("b", EmbeddingSpace.REMOTE, compute)
        assert compute.calls == 4

    async def test_clear(self):
        cache = EmbeddingCache()
        await cache.get("a", EmbeddingSpace.REMOTE, CountingCompute())
        cache.clear()
        assert len(cache) == 0


class TestConcurrency:
    async def test_concurrent_misses_share_one_computation(self):
        cache = EmbeddingCache()
        compute = CountingCompute(delay=0.02)
        results = await asyncio.gather(
            *(cache.get("warranty", EmbeddingSpace.REMOTE, compute) for _ in range(5))
        )
        assert compute.calls == 1
        assert all(r == results[0] for r in results)

    async def test_concurrent_failure_reaches_every_waiter(self):
        cache = EmbeddingCache()
        compute = CountingCompute(delay=0.02, fail=RuntimeError("provider down"))
        results = await asyncio.gather(
            *(cache.get("warranty", EmbeddingSpace.REMOTE, compute) for _ in range(3)),
            return_exceptions=True,
        )
        assert compute.calls == 1
        assert all(isinstance(r, EmbeddingError) for r in results)


class TestFailures:
    async def test_failure_is_wrapped_and_not_cached(self):
        cache = EmbeddingCache()
        failing = CountingCompute(fail=RuntimeError("provider down"))
        with pytest.raises(EmbeddingError) as exc_info:
            await cache.get("warranty", EmbeddingSpace.REMOTE, failing)
        assert "provider down" in exc_info.value.message
        assert exc_info.value.stage == "embedding"
        assert len(cache) == 0

        ok = CountingCompute()
        await cache.get("warranty", EmbeddingSpace.REMOTE, ok)
        assert ok.calls == 1

    async def test_embedding_error_passes_through(self):
        cache = EmbeddingCache()
        original = EmbeddingError("timed out")
        with pytest.raises(EmbeddingError) as exc_info:
            await cache.get("warranty", EmbeddingSpace.REMOTE, CountingCompute(fail=original))
        assert exc_info.value is original
