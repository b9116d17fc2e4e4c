"""
Unit Tests for the Two-Tier Embedding Cache

Tests LRU bounds, L2 promotion and failure tolerance.
"""

import json
import pytest
import sys
import os

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "adaptive_tutor_core", "src"))

from adaptive_tutor_core.embedding_cache import (
    CACHE_KEY_PREFIX,
    PROVENANCE_L1,
    PROVENANCE_L2,
    EmbeddingCache,
    LRUCache,
    cache_key,
)
from conftest import FailingStore


class TestLRUCache:
    """Test suite for LRUCache."""

    def test_evicts_least_recently_used(self, clock):
        """Test the oldest untouched entry is evicted at capacity."""
        lru = LRUCache(max_size=2, ttl_seconds=100, clock=clock)
        lru.set("a", [1.0])
        lru.set("b", [2.0])
        assert lru.get("a") == [1.0]  # a is now most recent
        lru.set("c", [3.0])
        assert lru.get("b") is None
        assert lru.get("a") == [1.0]
        assert len(lru) == 2

    def test_age_limit(self, clock):
        lru = LRUCache(max_size=10, ttl_seconds=60, clock=clock)
        lru.set("a", [1.0])
        clock.advance(61)
        assert lru.get("a") is None
        assert len(lru) == 0

    def test_hit_refreshes_age(self, clock):
        """Test reading an entry restarts its age."""
        lru = LRUCache(max_size=10, ttl_seconds=60, clock=clock)
        lru.set("a", [1.0])
        clock.advance(50)
        assert lru.get("a") == [1.0]
        clock.advance(50)
        assert lru.get("a") == [1.0]


class TestEmbeddingCache:
    """Test suite for EmbeddingCache."""

    def test_cache_key_is_deterministic(self):
        assert cache_key("hello") == cache_key("hello")
        assert cache_key("hello") != cache_key("hello ")
        assert cache_key("hello").startswith(CACHE_KEY_PREFIX)

    @pytest.mark.asyncio
    async def test_miss_then_l1_hit(self, store, clock):
        cache = EmbeddingCache(store=store, clock=clock)
        key = cache_key("text")
        assert await cache.get(key) == (None, None)
        await cache.set(key, [0.1, 0.2])
        vector, provenance = await cache.get(key)
        assert vector == [0.1, 0.2]
        assert provenance == PROVENANCE_L1
        assert cache.stats["misses"] == 1
        assert cache.stats["hits_l1"] == 1

    @pytest.mark.asyncio
    async def test_l2_hit_is_promoted(self, store, clock):
        """Test an L2 hit from another instance is copied into L1."""
        writer = EmbeddingCache(store=store, clock=clock)
        reader = EmbeddingCache(store=store, clock=clock)
        key = cache_key("shared")
        await writer.set(key, [0.5, 0.5])

        vector, provenance = await reader.get(key)
        assert vector == [0.5, 0.5]
        assert provenance == PROVENANCE_L2

        _, provenance = await reader.get(key)
        assert provenance == PROVENANCE_L1

    @pytest.mark.asyncio
    async def test_l2_stores_json_with_ttl(self, store, clock):
        cache = EmbeddingCache(store=store, ttl_seconds=500, clock=clock)
        key = cache_key("persisted")
        await cache.set(key, [1.0, 2.0])
        assert json.loads(await store.get(key)) == [1.0, 2.0]
        assert await store.ttl(key) == 500

    @pytest.mark.asyncio
    async def test_store_failure_is_a_miss(self, clock):
        """Test an unreachable L2 degrades to L1-only without raising."""
        cache = EmbeddingCache(store=FailingStore(), clock=clock)
        key = cache_key("x")
        assert await cache.get(key) == (None, None)
        await cache.set(key, [1.0])
        vector, provenance = await cache.get(key)
        assert vector == [1.0]
        assert provenance == PROVENANCE_L1
        assert cache.stats["errors"] == 2

    @pytest.mark.asyncio
    async def test_corrupt_l2_value_is_a_miss(self, store, clock):
        cache = EmbeddingCache(store=store, clock=clock)
        key = cache_key("bad")
        await store.set(key, "not json")
        assert await cache.get(key) == (None, None)
        assert cache.stats["errors"] == 1

    @pytest.mark.asyncio
    async def test_disabled_cache(self, store, clock):
        cache = EmbeddingCache(store=store, enabled=False, clock=clock)
        key = cache_key("x")
        await cache.set(key, [1.0])
        assert await cache.get(key) == (None, None)
        assert await store.get(key) is None

    @pytest.mark.asyncio
    async def test_clear_and_stats(self, store, clock):
        """Test clear empties both tiers and stats report the hit rate."""
        cache = EmbeddingCache(store=store, clock=clock)
        await store.set("checkpoint:other", "{}")
        for text in ("a", "b", "c"):
            await cache.set(cache_key(text), [1.0])
        await cache.get(cache_key("a"))
        await cache.get(cache_key("zzz"))

        stats = cache.get_stats()
        assert stats["hits_total"] == 1
        assert stats["hit_rate"] == 0.5
        assert stats["l1_size"] == 3

        assert await cache.clear() == 3
        assert len(cache.lru) == 0
        assert await store.get("checkpoint:other") == "{}"
