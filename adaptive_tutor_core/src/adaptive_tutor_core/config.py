"""
Runtime Configuration

All knobs are read from the environment (a local .env file is honoured).
Defaults mirror the production deployment.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

from adaptive_tutor_core.errors import ConfigurationError


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() == "true"


@dataclass
class Settings:
    # LLM
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.7
    llm_max_tokens: int = 1024

    # Embeddings
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    embedding_dimensions: int = 384
    embedding_batch_size: int = 32
    embedding_cache_enabled: bool = True
    embedding_cache_ttl: int = 86400  # 24 hours
    embedding_lru_size: int = 1000
    max_input_length: int = 10000

    # Vector store
    chroma_path: str = "./data/chromadb"
    hnsw_m: int = 16
    hnsw_ef_construct: int = 200
    hnsw_ef_search: int = 50
    search_top_k: int = 5
    collections: Dict[str, str] = field(default_factory=lambda: {
        "knowledge": "knowledge_base",
        "conversations": "conversations",
    })

    # Classifier
    knowledge_collection: str = "knowledge"
    min_knowledge_score: float = 0.3
    semantic_threshold: float = 0.7

    # Conversation context
    context_recent_verbatim: int = 3
    context_summary_threshold: int = 5
    context_max_tokens: int = 2000
    context_cache_ttl: int = 3600

    # Persistence
    redis_url: Optional[str] = None
    state_ttl_seconds: int = 604800  # 7 days
    state_extend_seconds: int = 3600
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        load_dotenv()
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            llm_temperature=_env_float("LLM_TEMPERATURE", 0.7),
            llm_max_tokens=_env_int("LLM_MAX_TOKENS", 1024),
            embedding_model=os.getenv("EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2"),
            embedding_dimensions=_env_int("EMBEDDING_DIMENSIONS", 384),
            embedding_batch_size=_env_int("EMBEDDING_BATCH_SIZE", 32),
            embedding_cache_enabled=_env_bool("EMBEDDING_CACHE_ENABLED", True),
            embedding_cache_ttl=_env_int("EMBEDDING_CACHE_TTL", 86400),
            embedding_lru_size=_env_int("EMBEDDING_LRU_SIZE", 1000),
            max_input_length=_env_int("MAX_INPUT_LENGTH", 10000),
            chroma_path=os.getenv("CHROMA_PATH", "./data/chromadb"),
            hnsw_m=_env_int("HNSW_M", 16),
            hnsw_ef_construct=_env_int("HNSW_EF_CONSTRUCT", 200),
            hnsw_ef_search=_env_int("HNSW_EF_SEARCH", 50),
            search_top_k=_env_int("VECTOR_SEARCH_TOP_K", 5),
            knowledge_collection=os.getenv("CLASSIFIER_KNOWLEDGE_COLLECTION", "knowledge"),
            min_knowledge_score=_env_float("CLASSIFIER_MIN_KNOWLEDGE_SCORE", 0.3),
            semantic_threshold=_env_float("CLASSIFIER_SEMANTIC_THRESHOLD", 0.7),
            context_recent_verbatim=_env_int("CONTEXT_RECENT_VERBATIM", 3),
            context_summary_threshold=_env_int("CONTEXT_SUMMARY_THRESHOLD", 5),
            context_max_tokens=_env_int("CONTEXT_MAX_TOKENS", 2000),
            context_cache_ttl=_env_int("CONTEXT_CACHE_TTL", 3600),
            redis_url=os.getenv("REDIS_URL") or None,
            state_ttl_seconds=_env_int("STATE_TTL_SECONDS", 604800),
            state_extend_seconds=_env_int("STATE_EXTEND_SECONDS", 3600),
            supabase_url=os.getenv("SUPABASE_URL") or None,
            supabase_service_key=os.getenv("SUPABASE_SERVICE_KEY") or None,
        )

    def require_openai_key(self) -> str:
        if not self.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY not found in environment variables")
        return self.openai_api_key

    @property
    def archive_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)
