"""
Embedding Pipeline

Turns text into fixed-dimension vectors behind a two-tier cache:
in-process LRU -> durable key/value store -> model inference.

Inputs are truncated before hashing so cache keys stay stable for long texts.
Batch calls look every input up first and send only the misses to the model,
in fixed-size sub-batches that run concurrently.
"""

import asyncio
import logging
import math
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from langchain_huggingface import HuggingFaceEmbeddings

from adaptive_tutor_core.embedding_cache import (
    PROVENANCE_MODEL,
    EmbeddingCache,
    cache_key,
)
from adaptive_tutor_core.errors import TutorCoreError, UpstreamUnavailable, ValidationError

logger = logging.getLogger(__name__)

# Disable ChromaDB/HF telemetry noise
os.environ.setdefault("ANONYMIZED_TELEMETRY", "False")


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """
    Cosine similarity dot(a, b) / (|a| * |b|).

    Raises:
        ValidationError: if the vectors differ in length or are empty
    """
    if len(vec1) != len(vec2):
        raise ValidationError(
            f"Vector dimensions must match ({len(vec1)} != {len(vec2)})"
        )
    if not vec1:
        raise ValidationError("Cannot compare empty vectors")

    dot_product = sum(a * b for a, b in zip(vec1, vec2))
    magnitude1 = math.sqrt(sum(a * a for a in vec1))
    magnitude2 = math.sqrt(sum(b * b for b in vec2))

    if magnitude1 == 0 or magnitude2 == 0:
        return 0.0

    return dot_product / (magnitude1 * magnitude2)


class EmbeddingModel:
    """Opaque embedding inference: texts in, one vector per text out."""

    model_name: str = "unknown"

    async def embed_documents(self, texts: List[str]) -> List[List[float]]:
        raise NotImplementedError


class HuggingFaceEmbeddingModel(EmbeddingModel):
    """sentence-transformers model (mean pooling, L2-normalized), loaded on first use."""

    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2", device: str = "cpu"):
        self.model_name = model_name
        self.device = device
        self._embeddings: Optional[HuggingFaceEmbeddings] = None

    def _get_embeddings(self) -> HuggingFaceEmbeddings:
        """Lazy load embeddings."""
        if self._embeddings is None:
            logger.info(f"🔄 [Embeddings] Loading model {self.model_name}...")
            self._embeddings = HuggingFaceEmbeddings(
                model_name=self.model_name,
                model_kwargs={"device": self.device},
                encode_kwargs={"normalize_embeddings": True},
            )
            logger.info(f"✅ [Embeddings] Model loaded: {self.model_name}")
        return self._embeddings

    async def embed_documents(self, texts: List[str]) -> List[List[float]]:
        embeddings = await asyncio.to_thread(self._get_embeddings)
        return await embeddings.aembed_documents(texts)


@dataclass
class EmbeddingResult:
    vector: List[float]
    dimension: int
    provenance: str
    key: str

    @property
    def cached(self) -> bool:
        return self.provenance != PROVENANCE_MODEL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "embedding": self.vector,
            "dimension": self.dimension,
            "provenance": self.provenance,
            "cached": self.cached,
        }


@dataclass
class BatchEmbeddingResult:
    results: List[EmbeddingResult] = field(default_factory=list)

    @property
    def vectors(self) -> List[List[float]]:
        return [r.vector for r in self.results]

    @property
    def cached_count(self) -> int:
        return sum(1 for r in self.results if r.cached)

    @property
    def computed_count(self) -> int:
        return len(self.results) - self.cached_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "embeddings": self.vectors,
            "count": len(self.results),
            "cached": self.cached_count,
            "computed": self.computed_count,
            "provenance": [r.provenance for r in self.results],
        }


class EmbeddingService:
    """
    Cached embedding pipeline.

    Example:
        service = EmbeddingService(HuggingFaceEmbeddingModel(), EmbeddingCache(store))
        result = await service.embed("What is recursion?")
    """

    def __init__(
        self,
        model: EmbeddingModel,
        cache: Optional[EmbeddingCache] = None,
        dimension: int = 384,
        batch_size: int = 32,
        max_input_length: int = 10000,
    ):
        self.model = model
        self.cache = cache or EmbeddingCache(store=None, enabled=False)
        self.dimension = dimension
        self.batch_size = batch_size
        self.max_input_length = max_input_length
        self.stats = {
            "model_calls": 0,
            "texts_embedded": 0,
            "model_errors": 0,
            "total_model_time_ms": 0.0,
        }

    def prepare(self, text: str) -> str:
        """Validate and truncate a single input."""
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Text must be a non-empty string")
        return text[: self.max_input_length]

    async def _invoke_model(self, texts: List[str]) -> List[List[float]]:
        start = time.perf_counter()
        try:
            vectors = await self.model.embed_documents(texts)
        except TutorCoreError:
            self.stats["model_errors"] += 1
            raise
        except Exception as e:
            self.stats["model_errors"] += 1
            logger.error(f"❌ [Embeddings] Model call failed: {e}")
            raise UpstreamUnavailable(f"Embedding model failed: {e}") from e

        if len(vectors) != len(texts):
            self.stats["model_errors"] += 1
            raise UpstreamUnavailable(
                f"Embedding model returned {len(vectors)} vectors for {len(texts)} inputs"
            )

        self.stats["model_calls"] += 1
        self.stats["texts_embedded"] += len(texts)
        self.stats["total_model_time_ms"] += (time.perf_counter() - start) * 1000
        return [[float(x) for x in v] for v in vectors]

    async def embed(self, text: str) -> EmbeddingResult:
        """
        Embed one text.

        Args:
            text: Input text (truncated to max_input_length)

        Returns:
            EmbeddingResult with provenance cache-L1, cache-L2 or model
        """
        prepared = self.prepare(text)
        key = cache_key(prepared)

        vector, provenance = await self.cache.get(key)
        if vector is not None:
            return EmbeddingResult(vector=vector, dimension=len(vector), provenance=provenance, key=key)

        vector = (await self._invoke_model([prepared]))[0]
        await self.cache.set(key, vector)
        return EmbeddingResult(vector=vector, dimension=len(vector), provenance=PROVENANCE_MODEL, key=key)

    async def embed_batch(self, texts: List[str]) -> BatchEmbeddingResult:
        """
        Embed many texts, preserving input order.

        Duplicate inputs are computed once. Misses go to the model in
        sub-batches of batch_size, issued concurrently.
        """
        if not texts:
            raise ValidationError("texts must be a non-empty list")

        prepared = [self.prepare(t) for t in texts]
        keys = [cache_key(p) for p in prepared]

        results: List[Optional[EmbeddingResult]] = [None] * len(prepared)
        pending: Dict[str, str] = {}  # key -> prepared text
        for i, (text, key) in enumerate(zip(prepared, keys)):
            if key in pending:
                continue
            vector, provenance = await self.cache.get(key)
            if vector is not None:
                results[i] = EmbeddingResult(vector=vector, dimension=len(vector), provenance=provenance, key=key)
            else:
                pending[key] = text

        computed: Dict[str, List[float]] = {}
        if pending:
            miss_keys = list(pending.keys())
            chunks = [
                miss_keys[i:i + self.batch_size]
                for i in range(0, len(miss_keys), self.batch_size)
            ]
            logger.debug(
                f"🔢 [Embeddings] {len(miss_keys)} misses in {len(chunks)} sub-batches "
                f"({len(texts) - len(miss_keys)} served from cache)"
            )
            chunk_vectors = await asyncio.gather(
                *[self._invoke_model([pending[k] for k in chunk]) for chunk in chunks]
            )
            for chunk, vectors in zip(chunks, chunk_vectors):
                for key, vector in zip(chunk, vectors):
                    computed[key] = vector
                    await self.cache.set(key, vector)

        for i, key in enumerate(keys):
            if results[i] is None:
                results[i] = EmbeddingResult(
                    vector=computed[key],
                    dimension=len(computed[key]),
                    provenance=PROVENANCE_MODEL,
                    key=key,
                )

        return BatchEmbeddingResult(results=results)

    async def similarity(self, text1: str, text2: str) -> float:
        batch = await self.embed_batch([text1, text2])
        return cosine_similarity(batch.vectors[0], batch.vectors[1])

    async def find_most_similar(
        self,
        query: str,
        candidates: List[str],
        top_k: int = 5,
    ) -> List[Dict[str, Any]]:
        """Rank candidate texts by similarity to the query (highest first)."""
        if not candidates:
            return []
        batch = await self.embed_batch([query] + list(candidates))
        query_vector = batch.vectors[0]
        scored = [
            {"index": i, "text": text, "score": cosine_similarity(query_vector, vector)}
            for i, (text, vector) in enumerate(zip(candidates, batch.vectors[1:]))
        ]
        scored.sort(key=lambda item: item["score"], reverse=True)
        return scored[:top_k]

    async def health_check(self) -> Dict[str, Any]:
        try:
            result = await self.embed("health check")
            return {
                "status": "healthy",
                "model": self.model.model_name,
                "dimension": result.dimension,
                "dimension_ok": result.dimension == self.dimension,
            }
        except TutorCoreError as e:
            return {"status": "unhealthy", "model": self.model.model_name, "error": str(e)}

    def get_stats(self) -> Dict[str, Any]:
        calls = self.stats["model_calls"]
        return {
            "model": self.model.model_name,
            "dimension": self.dimension,
            "batch_size": self.batch_size,
            **self.stats,
            "avg_model_time_ms": round(self.stats["total_model_time_ms"] / calls, 2) if calls else 0.0,
            "cache": self.cache.get_stats(),
        }
