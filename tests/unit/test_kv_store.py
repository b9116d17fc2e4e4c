"""
Unit Tests for the Key/Value Store

Tests TTL handling of the in-process store.
"""

import pytest
import sys
import os

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "adaptive_tutor_core", "src"))

from adaptive_tutor_core.kv_store import InMemoryKeyValueStore, RedisKeyValueStore, create_store


class TestInMemoryKeyValueStore:
    """Test suite for InMemoryKeyValueStore."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, store):
        """Test a value round-trips and missing keys return None."""
        await store.set("a", "1")
        assert await store.get("a") == "1"
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_expiry(self, store, clock):
        """Test keys disappear once their TTL elapses."""
        await store.set("a", "1", ttl=10)
        clock.advance(9)
        assert await store.get("a") == "1"
        clock.advance(1)
        assert await store.get("a") is None
        assert await store.ttl("a") == -2

    @pytest.mark.asyncio
    async def test_ttl_values(self, store, clock):
        """Test ttl reports -1 without expiry and remaining seconds otherwise."""
        await store.set("forever", "x")
        await store.set("short", "y", ttl=100)
        clock.advance(40)
        assert await store.ttl("forever") == -1
        assert await store.ttl("short") == 60

    @pytest.mark.asyncio
    async def test_keep_ttl_preserves_expiry(self, store, clock):
        """Test overwriting with keep_ttl does not restart the clock."""
        await store.set("k", "v1", ttl=100, keep_ttl=True)
        clock.advance(30)
        await store.set("k", "v2", ttl=100, keep_ttl=True)
        assert await store.get("k") == "v2"
        assert await store.ttl("k") == 70

    @pytest.mark.asyncio
    async def test_expire_and_delete(self, store):
        """Test expire on present/absent keys and delete return values."""
        await store.set("k", "v")
        assert await store.expire("k", 5) is True
        assert await store.ttl("k") == 5
        assert await store.expire("nope", 5) is False
        assert await store.delete("k") is True
        assert await store.delete("k") is False

    @pytest.mark.asyncio
    async def test_keys_by_prefix(self, store, clock):
        """Test prefix listing skips other prefixes and expired keys."""
        await store.set("checkpoint:a", "1")
        await store.set("checkpoint:b", "2", ttl=5)
        await store.set("emb:v1:c", "3")
        clock.advance(10)
        assert await store.keys("checkpoint:") == ["checkpoint:a"]
        assert await store.clear_expired() == 0

    @pytest.mark.asyncio
    async def test_clear_expired(self, store, clock):
        """Test expired entries are purged in bulk."""
        await store.set("a", "1", ttl=1)
        await store.set("b", "2", ttl=1)
        await store.set("c", "3")
        clock.advance(2)
        assert await store.clear_expired() == 2


class TestCreateStore:
    """Test suite for store selection."""

    def test_in_memory_without_url(self):
        """Test the in-process store is used when no URL is configured."""
        assert isinstance(create_store(None), InMemoryKeyValueStore)

    def test_redis_requires_url_or_client(self):
        """Test the Redis store refuses to start without a target."""
        with pytest.raises(ValueError):
            RedisKeyValueStore()
