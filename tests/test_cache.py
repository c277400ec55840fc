"""
Tests for the result cache and its storage backends
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from suiguard.core.cache import (
    MemoryStore,
    RedisStore,
    ResultCache,
    create_store,
    make_cache_key,
    split_cache_key,
)
from suiguard.models.safety_card import CLEAN_TRIAGE_CARD, NO_FUNCTIONS_CARD, RiskLevel, SafetyCard


def card(score: int = 80) -> SafetyCard:
    return SafetyCard(summary="risky", risk_score=score, risk_level=RiskLevel.CRITICAL)


class TestCacheKeys:
    """Test cache key helpers."""

    def test_key_format(self):
        assert make_cache_key("0xabc", "mainnet") == "0xabc@mainnet"

    def test_split(self):
        assert split_cache_key("0xabc@testnet") == ("0xabc", "testnet")


class TestResultCache:
    """Test synchronous cache access."""

    def test_set_and_get(self):
        cache = ResultCache()
        key = make_cache_key("0xabc", "mainnet")
        assert cache.get(key) is None
        cache.set(key, NO_FUNCTIONS_CARD)
        assert cache.contains(key)
        assert cache.get(key) == NO_FUNCTIONS_CARD

    def test_find_any_network(self):
        cache = ResultCache()
        cache.set("0xabc@mainnet", card(80))
        cache.set("0xabc@testnet", CLEAN_TRIAGE_CARD)
        cache.set("0xabcdef@mainnet", card(90))
        found = cache.find_any_network("0xabc")
        assert set(found) == {"mainnet", "testnet"}
        assert found["testnet"].risk_score == 5


class TestGetOrCompute:
    """Test idempotent computation with the in-flight guard."""

    async def test_second_call_served_from_cache(self):
        cache = ResultCache()
        calls = []

        async def compute():
            calls.append(1)
            return card()

        first, first_cached = await cache.get_or_compute("0xabc@mainnet", compute)
        second, second_cached = await cache.get_or_compute("0xabc@mainnet", compute)
        assert (first_cached, second_cached) == (False, True)
        assert first.to_dict() == second.to_dict()
        assert len(calls) == 1

    async def test_concurrent_requests_share_one_computation(self):
        cache = ResultCache()
        started = asyncio.Event()
        release = asyncio.Event()
        calls = []

        async def compute():
            calls.append(1)
            started.set()
            await release.wait()
            return card()

        first = asyncio.create_task(cache.get_or_compute("k@mainnet", compute))
        await started.wait()
        assert cache.in_flight("k@mainnet")
        others = [asyncio.create_task(cache.get_or_compute("k@mainnet", compute)) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()

        results = await asyncio.gather(first, *others)
        assert len(calls) == 1
        assert [from_cache for _, from_cache in results] == [False, True, True, True]
        assert not cache.in_flight("k@mainnet")

    async def test_failure_reaches_waiters_and_is_not_cached(self):
        cache = ResultCache()
        started = asyncio.Event()
        release = asyncio.Event()

        async def failing():
            started.set()
            await release.wait()
            raise RuntimeError("llm down")

        first = asyncio.create_task(cache.get_or_compute("k@mainnet", failing))
        await started.wait()
        waiter = asyncio.create_task(cache.get_or_compute("k@mainnet", failing))
        await asyncio.sleep(0)
        release.set()

        for task in (first, waiter):
            with pytest.raises(RuntimeError, match="llm down"):
                await task
        assert not cache.contains("k@mainnet")

        async def succeed():
            return card(10)

        result, from_cache = await cache.get_or_compute("k@mainnet", succeed)
        assert result.risk_score == 10
        assert from_cache is False

    async def test_compute_timeout(self):
        cache = ResultCache(compute_timeout=0.01)

        async def slow():
            await asyncio.sleep(1)
            return card()

        with pytest.raises(asyncio.TimeoutError):
            await cache.get_or_compute("slow@mainnet", slow)
        assert not cache.contains("slow@mainnet")


class TestStores:
    """Test store construction and the Redis store with a mocked client."""

    def test_create_memory_store(self):
        assert isinstance(create_store("memory"), MemoryStore)

    def test_create_unknown_store(self):
        with pytest.raises(ValueError):
            create_store("sqlite")

    def test_redis_store_round_trip(self):
        client = MagicMock()
        saved = {}
        client.set.side_effect = lambda key, value: saved.__setitem__(key, value)
        client.get.side_effect = lambda key: saved.get(key)
        client.scan_iter.side_effect = lambda match: [k for k in saved if k.startswith(match.rstrip("*"))]

        cache = ResultCache(store=RedisStore(client=client))
        cache.set("0xabc@mainnet", card(72))

        assert "suiguard:safety_card:0xabc@mainnet" in saved
        assert cache.get("0xabc@mainnet").risk_score == 72
        assert set(cache.find_any_network("0xabc")) == {"mainnet"}

    def test_redis_store_ttl(self):
        client = MagicMock()
        store = RedisStore(client=client, ttl=60)
        store.set("0xabc@mainnet", card().to_dict())
        assert client.setex.call_args[0][:2] == ("suiguard:safety_card:0xabc@mainnet", 60)
