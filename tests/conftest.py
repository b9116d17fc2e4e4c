"""
Shared fixtures and fakes for the test suite.

The fakes stand in for the external inference and storage services:
- FakeEmbeddingModel: deterministic hashed bag-of-words vectors
- ScriptedCompletionClient: canned completions chosen by prompt keyword
- FakeChromaClient: in-memory collections with cosine distance and `where` filters
- FailingStore: key/value store whose every call raises
"""

import hashlib
import math
import os
import re
import sys
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, os.path.join(project_root, "adaptive_tutor_core", "src"))
sys.path.insert(0, os.path.join(project_root, "backend"))

from adaptive_tutor_core.embedding_cache import EmbeddingCache
from adaptive_tutor_core.embedding_service import EmbeddingModel, EmbeddingService
from adaptive_tutor_core.kv_store import InMemoryKeyValueStore, KeyValueStore
from adaptive_tutor_core.llm_client import CompletionClient
from adaptive_tutor_core.vector_store import VectorStore

WORD_PATTERN = re.compile(r"[a-z0-9+#]+")


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeEmbeddingModel(EmbeddingModel):
    """Hashed bag-of-words, L2-normalized. Identical word sets give identical vectors."""

    model_name = "fake-bow"

    def __init__(self, dimension: int = 512):
        self.dimension = dimension
        self.calls: List[List[str]] = []
        self.fail: Optional[Exception] = None

    def vector(self, text: str) -> List[float]:
        vec = [0.0] * self.dimension
        for word in WORD_PATTERN.findall(text.lower()):
            idx = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dimension
            vec[idx] += 1.0
        norm = math.sqrt(sum(v * v for v in vec))
        return [v / norm for v in vec] if norm else vec

    async def embed_documents(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.fail is not None:
            raise self.fail
        return [self.vector(t) for t in texts]

    @property
    def texts_embedded(self) -> int:
        return sum(len(c) for c in self.calls)


class ScriptedCompletionClient(CompletionClient):
    """
    Returns the response registered for the first keyword found in the prompt.

    A list value is consumed one item per call; its last item repeats.
    An exception value is raised instead of returned.
    """

    def __init__(self, responses: Optional[Dict[str, Any]] = None, default: str = "Okay."):
        self.responses: Dict[str, Any] = {
            k: list(v) if isinstance(v, list) else v for k, v in (responses or {}).items()
        }
        self.default = default
        self.prompts: List[str] = []
        self.fail: Optional[Exception] = None

    def set(self, keyword: str, response: Any):
        self.responses[keyword] = list(response) if isinstance(response, list) else response

    def calls_matching(self, keyword: str) -> int:
        return sum(1 for p in self.prompts if keyword in p)

    async def complete(self, prompt, temperature=None, max_tokens=None, json_mode=False, system=None) -> str:
        self.prompts.append(prompt)
        if self.fail is not None:
            raise self.fail
        for keyword, value in self.responses.items():
            if keyword in prompt:
                if isinstance(value, Exception):
                    raise value
                if isinstance(value, list):
                    return value.pop(0) if len(value) > 1 else value[0]
                return value
        return self.default


def _cosine_distance(a: List[float], b: List[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 1.0
    return 1.0 - dot / (na * nb)


def _matches(metadata: Dict[str, Any], where: Optional[Dict[str, Any]]) -> bool:
    if not where:
        return True
    if "$and" in where:
        return all(_matches(metadata, clause) for clause in where["$and"])
    if "$or" in where:
        return any(_matches(metadata, clause) for clause in where["$or"])
    for field_name, condition in where.items():
        value = metadata.get(field_name)
        if not isinstance(condition, dict):
            condition = {"$eq": condition}
        for op, expected in condition.items():
            if op == "$eq" and value != expected:
                return False
            if op == "$ne" and value == expected:
                return False
            if op == "$in" and value not in expected:
                return False
            if op == "$nin" and value in expected:
                return False
            if op in ("$gt", "$gte", "$lt", "$lte"):
                if value is None:
                    return False
                if op == "$gt" and not value > expected:
                    return False
                if op == "$gte" and not value >= expected:
                    return False
                if op == "$lt" and not value < expected:
                    return False
                if op == "$lte" and not value <= expected:
                    return False
    return True


class FakeChromaCollection:
    def __init__(self, name: str, metadata: Optional[Dict[str, Any]] = None):
        self.name = name
        self.metadata = metadata or {}
        self.records: Dict[str, Dict[str, Any]] = {}

    def add(self, ids, embeddings, documents, metadatas):
        for i, doc_id in enumerate(ids):
            if doc_id in self.records:
                raise ValueError(f"Duplicate id {doc_id}")
            self.records[doc_id] = {"embedding": embeddings[i], "document": documents[i], "metadata": metadatas[i]}

    def update(self, ids, embeddings, documents, metadatas):
        for i, doc_id in enumerate(ids):
            if doc_id not in self.records:
                raise ValueError(f"Unknown id {doc_id}")
            self.records[doc_id] = {"embedding": embeddings[i], "document": documents[i], "metadata": metadatas[i]}

    def delete(self, ids):
        for doc_id in ids:
            self.records.pop(doc_id, None)

    def count(self) -> int:
        return len(self.records)

    def query(self, query_embeddings, n_results, where=None, include=None):
        query = query_embeddings[0]
        candidates = [
            (doc_id, rec, _cosine_distance(query, rec["embedding"]))
            for doc_id, rec in self.records.items()
            if _matches(rec["metadata"], where)
        ]
        candidates.sort(key=lambda c: c[2])
        top = candidates[:n_results]
        return {
            "ids": [[c[0] for c in top]],
            "documents": [[c[1]["document"] for c in top]],
            "metadatas": [[c[1]["metadata"] for c in top]],
            "distances": [[c[2] for c in top]],
        }


class FakeChromaClient:
    def __init__(self):
        self.collections: Dict[str, FakeChromaCollection] = {}
        self.alive = True

    def get_or_create_collection(self, name, metadata=None, embedding_function=None):
        if name not in self.collections:
            self.collections[name] = FakeChromaCollection(name, metadata)
        return self.collections[name]

    def delete_collection(self, name):
        self.collections.pop(name, None)

    def heartbeat(self):
        if not self.alive:
            raise ConnectionError("chroma down")
        return 1


class FailingStore(KeyValueStore):
    """Every operation fails as if the server were unreachable."""

    async def get(self, key):
        raise ConnectionError("store unreachable")

    async def set(self, key, value, ttl=None, keep_ttl=False):
        raise ConnectionError("store unreachable")

    async def delete(self, key):
        raise ConnectionError("store unreachable")

    async def keys(self, prefix=""):
        raise ConnectionError("store unreachable")

    async def ttl(self, key):
        raise ConnectionError("store unreachable")

    async def expire(self, key, seconds):
        raise ConnectionError("store unreachable")


# ==================== Fixtures ====================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture
def embedding_model():
    return FakeEmbeddingModel()


@pytest.fixture
def embedding_service(embedding_model, store, clock):
    cache = EmbeddingCache(store=store, max_size=100, ttl_seconds=3600, clock=clock)
    return EmbeddingService(embedding_model, cache=cache, dimension=512, batch_size=4)


@pytest.fixture
def chroma_client():
    return FakeChromaClient()


@pytest.fixture
def completion_client():
    return ScriptedCompletionClient()


@pytest_asyncio.fixture
async def vector_store(embedding_service, chroma_client):
    store = VectorStore(
        embedding_service,
        client=chroma_client,
        collections={"knowledge": "knowledge_base", "conversations": "conversations"},
    )
    await store.initialize()
    return store
