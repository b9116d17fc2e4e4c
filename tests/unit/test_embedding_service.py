"""
Unit Tests for the Embedding Service

Tests cached single/batch embedding, deduplication and similarity helpers.
"""

import pytest
import sys
import os

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "adaptive_tutor_core", "src"))

from adaptive_tutor_core.embedding_cache import (
    PROVENANCE_L1,
    PROVENANCE_L2,
    PROVENANCE_MODEL,
    EmbeddingCache,
)
from adaptive_tutor_core.embedding_service import EmbeddingService, cosine_similarity
from adaptive_tutor_core.errors import UpstreamUnavailable, ValidationError
from conftest import FailingStore, FakeEmbeddingModel


class TestCosineSimilarity:
    """Test suite for cosine_similarity."""

    def test_identical_and_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [2.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_symmetric(self):
        a, b = [0.3, 0.4, 0.5], [0.9, -0.1, 0.2]
        assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))

    def test_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_length_mismatch(self):
        with pytest.raises(ValidationError):
            cosine_similarity([1.0, 2.0], [1.0])


class TestEmbeddingService:
    """Test suite for EmbeddingService."""

    @pytest.mark.asyncio
    async def test_embed_computes_then_caches(self, embedding_service, embedding_model):
        """Test the second request is served from L1 without a model call."""
        first = await embedding_service.embed("What is recursion?")
        second = await embedding_service.embed("What is recursion?")

        assert first.provenance == PROVENANCE_MODEL
        assert first.cached is False
        assert second.provenance == PROVENANCE_L1
        assert second.cached is True
        assert first.vector == second.vector
        assert first.dimension == 512
        assert embedding_model.texts_embedded == 1

    @pytest.mark.asyncio
    async def test_shared_l2_between_instances(self, store, clock):
        """Test a vector computed by one instance is an L2 hit for another."""
        model_a, model_b = FakeEmbeddingModel(), FakeEmbeddingModel()
        service_a = EmbeddingService(model_a, cache=EmbeddingCache(store=store, clock=clock))
        service_b = EmbeddingService(model_b, cache=EmbeddingCache(store=store, clock=clock))

        await service_a.embed("gradient descent")
        result = await service_b.embed("gradient descent")
        assert result.provenance == PROVENANCE_L2
        assert model_b.calls == []

    @pytest.mark.asyncio
    async def test_store_failure_still_embeds(self, clock):
        """Test an unreachable L2 does not break embedding."""
        model = FakeEmbeddingModel()
        service = EmbeddingService(model, cache=EmbeddingCache(store=FailingStore(), clock=clock))
        result = await service.embed("still works")
        assert result.provenance == PROVENANCE_MODEL
        assert service.cache.stats["errors"] >= 1

    @pytest.mark.asyncio
    async def test_truncation_shares_cache_key(self, embedding_model):
        service = EmbeddingService(embedding_model, cache=EmbeddingCache(store=None), max_input_length=10)
        first = await service.embed("abcdefghij-first")
        second = await service.embed("abcdefghij-second")
        assert first.key == second.key
        assert second.cached is True
        assert embedding_model.calls == [["abcdefghij"]]

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self, embedding_service):
        with pytest.raises(ValidationError):
            await embedding_service.embed("   ")

    @pytest.mark.asyncio
    async def test_model_failure_is_upstream_error(self, embedding_service, embedding_model):
        embedding_model.fail = RuntimeError("model crashed")
        with pytest.raises(UpstreamUnavailable):
            await embedding_service.embed("anything")
        assert embedding_service.stats["model_errors"] == 1

    @pytest.mark.asyncio
    async def test_batch_preserves_order_and_dedupes(self, embedding_service, embedding_model):
        """Test duplicates are computed once and results follow input order."""
        texts = ["alpha", "beta", "alpha", "gamma"]
        batch = await embedding_service.embed_batch(texts)

        assert len(batch.results) == 4
        assert batch.vectors[0] == batch.vectors[2]
        assert batch.vectors[1] == embedding_model.vector("beta")
        assert batch.vectors[3] == embedding_model.vector("gamma")
        assert embedding_model.texts_embedded == 3

    @pytest.mark.asyncio
    async def test_batch_uses_cache_and_sub_batches(self, embedding_service, embedding_model):
        """Test cached entries are skipped and misses split by batch_size."""
        await embedding_service.embed("cached one")
        embedding_model.calls.clear()

        texts = ["cached one"] + [f"text number {i}" for i in range(5)]
        batch = await embedding_service.embed_batch(texts)

        assert batch.cached_count == 1
        assert batch.computed_count == 5
        assert sorted(len(c) for c in embedding_model.calls) == [1, 4]
        payload = batch.to_dict()
        assert payload["count"] == 6
        assert payload["provenance"][0] == PROVENANCE_L1

    @pytest.mark.asyncio
    async def test_empty_batch_rejected(self, embedding_service):
        with pytest.raises(ValidationError):
            await embedding_service.embed_batch([])

    @pytest.mark.asyncio
    async def test_similarity_and_ranking(self, embedding_service):
        """Test similar texts score higher than unrelated ones."""
        same = await embedding_service.similarity("neural networks learn", "neural networks learn")
        assert same == pytest.approx(1.0)

        ranked = await embedding_service.find_most_similar(
            "neural network training",
            ["baking bread at home", "training a neural network", "tax forms"],
            top_k=2,
        )
        assert len(ranked) == 2
        assert ranked[0]["text"] == "training a neural network"
        assert ranked[0]["index"] == 1
        assert ranked[0]["score"] >= ranked[1]["score"]

    @pytest.mark.asyncio
    async def test_health_check(self, embedding_service, embedding_model):
        health = await embedding_service.health_check()
        assert health["status"] == "healthy"
        assert health["dimension_ok"] is True

        embedding_service.cache.lru.clear()
        await embedding_service.cache.clear()
        embedding_model.fail = RuntimeError("down")
        health = await embedding_service.health_check()
        assert health["status"] == "unhealthy"
