"""
Durable Key/Value Store

Shared store behind the embedding L2 cache, the context cache and session
checkpoints. Redis in production; an in-process TTL dict when no Redis URL is
configured (single-process deployments and tests).
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from redis import asyncio as aioredis

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Async string store with per-key TTL. Values are opaque strings."""

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(
        self,
        key: str,
        value: str,
        ttl: Optional[int] = None,
        keep_ttl: bool = False,
    ) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> bool:
        raise NotImplementedError

    async def keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError

    async def ttl(self, key: str) -> int:
        """Remaining seconds; -1 when the key never expires, -2 when absent."""
        raise NotImplementedError

    async def expire(self, key: str, seconds: int) -> bool:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryKeyValueStore(KeyValueStore):
    """In-process store with TTL support, guarded by a single asyncio lock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _live_entry(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at = entry["expires_at"]
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._live_entry(key)
            return entry["value"] if entry else None

    async def set(
        self,
        key: str,
        value: str,
        ttl: Optional[int] = None,
        keep_ttl: bool = False,
    ) -> None:
        async with self._lock:
            existing = self._live_entry(key)
            if keep_ttl and existing is not None:
                expires_at = existing["expires_at"]
            elif ttl is not None:
                expires_at = self._clock() + ttl
            else:
                expires_at = None
            self._data[key] = {"value": value, "expires_at": expires_at}

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if self._live_entry(key) is None:
                return False
            del self._data[key]
            return True

    async def keys(self, prefix: str = "") -> List[str]:
        async with self._lock:
            return [
                key for key in list(self._data.keys())
                if key.startswith(prefix) and self._live_entry(key) is not None
            ]

    async def ttl(self, key: str) -> int:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return -2
            if entry["expires_at"] is None:
                return -1
            return max(0, int(round(entry["expires_at"] - self._clock())))

    async def expire(self, key: str, seconds: int) -> bool:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return False
            entry["expires_at"] = self._clock() + seconds
            return True

    async def clear_expired(self) -> int:
        """Drop expired entries and return how many were removed."""
        async with self._lock:
            before = len(self._data)
            for key in list(self._data.keys()):
                self._live_entry(key)
            return before - len(self._data)


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed store (redis.asyncio)."""

    def __init__(self, redis_url: Optional[str] = None, client=None):
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = aioredis.from_url(redis_url, decode_responses=True)
        self.client = client

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(
        self,
        key: str,
        value: str,
        ttl: Optional[int] = None,
        keep_ttl: bool = False,
    ) -> None:
        if keep_ttl and await self.client.exists(key):
            await self.client.set(key, value, keepttl=True)
        elif ttl is not None:
            await self.client.set(key, value, ex=ttl)
        else:
            await self.client.set(key, value)

    async def delete(self, key: str) -> bool:
        return bool(await self.client.delete(key))

    async def keys(self, prefix: str = "") -> List[str]:
        return [key async for key in self.client.scan_iter(match=f"{prefix}*")]

    async def ttl(self, key: str) -> int:
        return int(await self.client.ttl(key))

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self.client.expire(key, seconds))

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


def create_store(redis_url: Optional[str] = None) -> KeyValueStore:
    """Redis when a URL is configured, otherwise the in-process store."""
    if redis_url:
        logger.info(f"🗄️ [KVStore] Using Redis at {redis_url.split('@')[-1]}")
        return RedisKeyValueStore(redis_url=redis_url)
    logger.info("🗄️ [KVStore] REDIS_URL not set - using in-process store")
    return InMemoryKeyValueStore()
