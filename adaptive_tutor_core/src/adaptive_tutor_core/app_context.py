"""
Application Context

Builds every service once, with explicit collaborators, and hands them out by
reference. Tests assemble the same context from fakes.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from adaptive_tutor_core.config import Settings
from adaptive_tutor_core.context_manager import ContextManager
from adaptive_tutor_core.embedding_cache import EmbeddingCache
from adaptive_tutor_core.embedding_service import EmbeddingModel, EmbeddingService, HuggingFaceEmbeddingModel
from adaptive_tutor_core.kv_store import KeyValueStore, create_store
from adaptive_tutor_core.llm_client import CompletionClient, OpenAICompletionClient
from adaptive_tutor_core.query_classifier import QueryClassifier
from adaptive_tutor_core.state_persistence import LongTermStore, StatePersistence
from adaptive_tutor_core.tutor_graph import AdaptiveTutorGraph
from adaptive_tutor_core.vector_store import VectorStore

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    store: KeyValueStore
    completion_client: CompletionClient
    embedding_service: EmbeddingService
    vector_store: VectorStore
    classifier: QueryClassifier
    context_manager: ContextManager
    persistence: StatePersistence
    tutor: AdaptiveTutorGraph

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: Optional[KeyValueStore] = None,
        completion_client: Optional[CompletionClient] = None,
        embedding_model: Optional[EmbeddingModel] = None,
        chroma_client: Any = None,
        long_term_store: Optional[LongTermStore] = None,
    ) -> "AppContext":
        """
        Wire the services together.

        Raises:
            ConfigurationError: if no completion client is given and
                OPENAI_API_KEY is missing
        """
        store = store or create_store(settings.redis_url)

        if completion_client is None:
            completion_client = OpenAICompletionClient(
                api_key=settings.require_openai_key(),
                model=settings.openai_model,
                temperature=settings.llm_temperature,
                max_tokens=settings.llm_max_tokens,
            )

        embedding_service = EmbeddingService(
            model=embedding_model or HuggingFaceEmbeddingModel(settings.embedding_model),
            cache=EmbeddingCache(
                store=store,
                max_size=settings.embedding_lru_size,
                ttl_seconds=settings.embedding_cache_ttl,
                enabled=settings.embedding_cache_enabled,
            ),
            dimension=settings.embedding_dimensions,
            batch_size=settings.embedding_batch_size,
            max_input_length=settings.max_input_length,
        )

        vector_store = VectorStore(
            embedding_service,
            client=chroma_client,
            path=settings.chroma_path,
            collections=settings.collections,
            hnsw_m=settings.hnsw_m,
            hnsw_ef_construct=settings.hnsw_ef_construct,
            hnsw_ef_search=settings.hnsw_ef_search,
            default_top_k=settings.search_top_k,
        )

        classifier = QueryClassifier(
            embedding_service,
            vector_store=vector_store,
            completion_client=completion_client,
            knowledge_collection=settings.knowledge_collection,
            min_knowledge_score=settings.min_knowledge_score,
            semantic_threshold=settings.semantic_threshold,
        )

        context_manager = ContextManager(
            completion_client,
            store=store,
            recent_verbatim=settings.context_recent_verbatim,
            summary_threshold=settings.context_summary_threshold,
            max_tokens=settings.context_max_tokens,
            cache_ttl=settings.context_cache_ttl,
        )

        persistence = StatePersistence(store, default_ttl=settings.state_ttl_seconds)

        tutor = AdaptiveTutorGraph(
            completion_client,
            persistence,
            vector_store=vector_store,
            context_manager=context_manager,
            long_term_store=long_term_store,
            knowledge_collection=settings.knowledge_collection,
            extend_ttl_seconds=settings.state_extend_seconds,
        )

        return cls(
            settings=settings,
            store=store,
            completion_client=completion_client,
            embedding_service=embedding_service,
            vector_store=vector_store,
            classifier=classifier,
            context_manager=context_manager,
            persistence=persistence,
            tutor=tutor,
        )

    async def startup(self) -> None:
        await self.vector_store.initialize()
        logger.info("✅ [AppContext] Services ready")

    async def shutdown(self) -> None:
        await self.store.close()

    async def get_stats(self) -> Dict[str, Any]:
        return {
            "classifier": self.classifier.get_stats(),
            "embeddings": self.embedding_service.get_stats(),
            "vector_store": await self.vector_store.get_stats(),
            "context": self.context_manager.get_stats(),
            "persistence": await self.persistence.get_stats(),
        }
