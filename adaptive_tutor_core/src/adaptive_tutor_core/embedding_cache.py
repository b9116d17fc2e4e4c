"""
Two-Tier Embedding Cache

L1: bounded, age-limited in-process LRU (private to this process).
L2: durable key/value store with TTL (shared between instances).

Every failure in either tier is logged and treated as a miss; callers always
fall through to the next tier or the model.
"""

import hashlib
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from adaptive_tutor_core.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "emb:v1:"

PROVENANCE_L1 = "cache-L1"
PROVENANCE_L2 = "cache-L2"
PROVENANCE_MODEL = "model"


def cache_key(text: str) -> str:
    """Deterministic cache key from the (already truncated) source text."""
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return f"{CACHE_KEY_PREFIX}{digest}"


@dataclass
class _LRUEntry:
    vector: List[float]
    stored_at: float


class LRUCache:
    """
    Size- and age-bounded LRU.

    A hit refreshes both recency and age, so frequently used vectors stay warm.
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl_seconds: int = 86400,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, _LRUEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[List[float]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock()
        if now - entry.stored_at > self.ttl_seconds:
            del self._entries[key]
            return None
        entry.stored_at = now
        self._entries.move_to_end(key)
        return entry.vector

    def set(self, key: str, vector: List[float]) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        self._entries[key] = _LRUEntry(vector=vector, stored_at=self._clock())
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()


class EmbeddingCache:
    """Layered L1/L2 lookup with promotion of L2 hits into L1."""

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        max_size: int = 1000,
        ttl_seconds: int = 86400,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.enabled = enabled
        self.lru = LRUCache(max_size=max_size, ttl_seconds=ttl_seconds, clock=clock)
        self.stats: Dict[str, int] = {
            "hits_l1": 0,
            "hits_l2": 0,
            "misses": 0,
            "sets": 0,
            "errors": 0,
        }

    async def get(self, key: str) -> Tuple[Optional[List[float]], Optional[str]]:
        """
        Look a key up in L1 then L2.

        Returns:
            (vector, provenance) on a hit, (None, None) on a miss
        """
        if not self.enabled:
            return None, None

        try:
            vector = self.lru.get(key)
        except Exception as e:
            self.stats["errors"] += 1
            logger.warning(f"⚠️ [EmbeddingCache] L1 read failed: {e}")
            vector = None
        if vector is not None:
            self.stats["hits_l1"] += 1
            return vector, PROVENANCE_L1

        if self.store is not None:
            try:
                raw = await self.store.get(key)
                if raw is not None:
                    vector = [float(x) for x in json.loads(raw)]
            except Exception as e:
                self.stats["errors"] += 1
                logger.warning(f"⚠️ [EmbeddingCache] L2 read failed, treating as miss: {e}")
                vector = None
            if vector is not None:
                self.stats["hits_l2"] += 1
                self._set_l1(key, vector)
                return vector, PROVENANCE_L2

        self.stats["misses"] += 1
        return None, None

    async def set(self, key: str, vector: List[float]) -> None:
        if not self.enabled:
            return
        self._set_l1(key, vector)
        if self.store is not None:
            try:
                await self.store.set(key, json.dumps(vector), ttl=self.ttl_seconds)
            except Exception as e:
                self.stats["errors"] += 1
                logger.warning(f"⚠️ [EmbeddingCache] L2 write failed: {e}")
        self.stats["sets"] += 1

    def _set_l1(self, key: str, vector: List[float]) -> None:
        try:
            self.lru.set(key, vector)
        except Exception as e:
            self.stats["errors"] += 1
            logger.warning(f"⚠️ [EmbeddingCache] L1 write failed: {e}")

    async def delete(self, key: str) -> None:
        self.lru.delete(key)
        if self.store is not None:
            try:
                await self.store.delete(key)
            except Exception as e:
                self.stats["errors"] += 1
                logger.warning(f"⚠️ [EmbeddingCache] L2 delete failed: {e}")

    async def clear(self) -> int:
        """Clear both tiers. Returns the number of L2 keys removed."""
        self.lru.clear()
        removed = 0
        if self.store is not None:
            try:
                for key in await self.store.keys(CACHE_KEY_PREFIX):
                    if await self.store.delete(key):
                        removed += 1
            except Exception as e:
                self.stats["errors"] += 1
                logger.warning(f"⚠️ [EmbeddingCache] L2 clear failed: {e}")
        return removed

    def get_stats(self) -> Dict:
        hits = self.stats["hits_l1"] + self.stats["hits_l2"]
        lookups = hits + self.stats["misses"]
        return {
            **self.stats,
            "hits_total": hits,
            "hit_rate": round(hits / lookups, 4) if lookups else 0.0,
            "l1_size": len(self.lru),
            "l1_max_size": self.lru.max_size,
            "enabled": self.enabled,
        }
