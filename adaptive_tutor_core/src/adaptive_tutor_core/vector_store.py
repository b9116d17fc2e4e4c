"""
Vector Index Service

Named collections of (id, text, metadata, embedding) backed by ChromaDB.
Each collection has its own cosine space and HNSW build parameters.
Embeddings are computed through the cached EmbeddingService, never by Chroma.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import chromadb
from chromadb.config import Settings as ChromaSettings

from adaptive_tutor_core.embedding_service import EmbeddingService
from adaptive_tutor_core.errors import (
    CollectionNotFoundError,
    NotInitializedError,
    UpstreamUnavailable,
    ValidationError,
)

logger = logging.getLogger(__name__)

RANGE_OPERATORS = {"gte", "gt", "lte", "lt", "ne", "eq", "in", "nin"}


@dataclass
class Document:
    id: str
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    collection: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], collection: Optional[str] = None) -> "Document":
        return cls(
            id=str(data.get("id") or ""),
            text=data.get("text") or data.get("content") or "",
            metadata=dict(data.get("metadata") or {}),
            collection=collection,
        )


@dataclass
class SearchResult:
    id: str
    text: str
    metadata: Dict[str, Any]
    distance: float
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "metadata": self.metadata,
            "distance": self.distance,
            "score": self.score,
        }


def build_where(metadata_filter: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Translate a metadata filter into a Chroma `where` clause.

    Supports equality ({"level": "beginner"}) and ranges
    ({"difficulty": {"gte": 2, "lt": 5}}). Several conditions are ANDed.
    """
    if not metadata_filter:
        return None

    clauses: List[Dict[str, Any]] = []
    for field_name, condition in metadata_filter.items():
        if isinstance(condition, dict):
            if not condition:
                raise ValidationError(f"Empty filter condition for '{field_name}'")
            for op, value in condition.items():
                op_name = op.lstrip("$")
                if op_name not in RANGE_OPERATORS:
                    raise ValidationError(f"Unsupported filter operator '{op}' on '{field_name}'")
                clauses.append({field_name: {f"${op_name}": value}})
        else:
            clauses.append({field_name: {"$eq": condition}})

    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


class VectorStore:
    """
    ChromaDB-backed similarity index.

    Example:
        store = VectorStore(embedding_service, path="./data/chromadb")
        await store.initialize()
        await store.add_documents("knowledge", [Document(id="d1", text="...")])
        results = await store.search("knowledge", "what is recursion", top_k=3)
    """

    def __init__(
        self,
        embedding_service: EmbeddingService,
        client=None,
        path: str = "./data/chromadb",
        collections: Optional[Dict[str, str]] = None,
        hnsw_m: int = 16,
        hnsw_ef_construct: int = 200,
        hnsw_ef_search: int = 50,
        default_top_k: int = 5,
    ):
        self.embedding_service = embedding_service
        self.client = client
        self.path = path
        self.collection_names = dict(collections or {"knowledge": "knowledge_base"})
        self.collection_metadata = {
            "hnsw:space": "cosine",
            "hnsw:M": hnsw_m,
            "hnsw:construction_ef": hnsw_ef_construct,
            "hnsw:search_ef": hnsw_ef_search,
        }
        self.default_top_k = default_top_k
        self._collections: Dict[str, Any] = {}
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Connect and create every configured collection if missing."""
        if self._initialized:
            return
        try:
            if self.client is None:
                self.client = await asyncio.to_thread(
                    chromadb.PersistentClient,
                    path=self.path,
                    settings=ChromaSettings(anonymized_telemetry=False),
                )
            for alias, name in self.collection_names.items():
                self._collections[alias] = await asyncio.to_thread(
                    self.client.get_or_create_collection,
                    name=name,
                    metadata=self.collection_metadata,
                    embedding_function=None,
                )
        except Exception as e:
            logger.error(f"❌ [VectorStore] Initialization failed: {e}")
            raise UpstreamUnavailable(f"ChromaDB unavailable: {e}") from e

        self._initialized = True
        logger.info(
            f"✅ [VectorStore] Ready with {len(self._collections)} collections: "
            f"{', '.join(self.collection_names.values())}"
        )

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except Exception as e:
            raise UpstreamUnavailable(f"ChromaDB call {getattr(fn, '__name__', fn)} failed: {e}") from e

    def _resolve(self, collection: str) -> str:
        if collection in self.collection_names:
            return collection
        for alias, name in self.collection_names.items():
            if name == collection:
                return alias
        raise CollectionNotFoundError(collection)

    def _get_collection(self, collection: str):
        if not self._initialized:
            raise NotInitializedError("Vector store not initialized")
        return self._collections[self._resolve(collection)]

    def _coerce_documents(
        self,
        collection: str,
        documents: List[Union[Document, Dict[str, Any]]],
    ) -> List[Document]:
        if not documents:
            raise ValidationError("documents must be a non-empty list")
        docs = [
            d if isinstance(d, Document) else Document.from_dict(d, collection=collection)
            for d in documents
        ]
        for doc in docs:
            if not doc.id:
                raise ValidationError("Every document needs an id")
            if not doc.text or not doc.text.strip():
                raise ValidationError(f"Document '{doc.id}' has no text")
            doc.collection = collection
        return docs

    @staticmethod
    def _stored_metadata(doc: Document) -> Dict[str, Any]:
        # Chroma rejects empty metadata dicts
        return {**doc.metadata, "collection": doc.collection}

    async def add_documents(
        self,
        collection: str,
        documents: List[Union[Document, Dict[str, Any]]],
    ) -> int:
        """Embed and add documents. Returns the number added."""
        target = self._get_collection(collection)
        docs = self._coerce_documents(collection, documents)
        batch = await self.embedding_service.embed_batch([d.text for d in docs])

        await self._call(
            target.add,
            ids=[d.id for d in docs],
            embeddings=batch.vectors,
            documents=[d.text for d in docs],
            metadatas=[self._stored_metadata(d) for d in docs],
        )
        logger.info(f"📚 [VectorStore] Added {len(docs)} documents to '{collection}'")
        return len(docs)

    async def update_documents(
        self,
        collection: str,
        documents: List[Union[Document, Dict[str, Any]]],
    ) -> int:
        """Re-embed and overwrite existing documents by id."""
        target = self._get_collection(collection)
        docs = self._coerce_documents(collection, documents)
        batch = await self.embedding_service.embed_batch([d.text for d in docs])

        await self._call(
            target.update,
            ids=[d.id for d in docs],
            embeddings=batch.vectors,
            documents=[d.text for d in docs],
            metadatas=[self._stored_metadata(d) for d in docs],
        )
        return len(docs)

    async def delete_documents(self, collection: str, ids: List[str]) -> int:
        target = self._get_collection(collection)
        if not ids:
            raise ValidationError("ids must be a non-empty list")
        await self._call(target.delete, ids=list(ids))
        return len(ids)

    async def count(self, collection: str) -> int:
        target = self._get_collection(collection)
        return await self._call(target.count)

    async def search(
        self,
        collection: str,
        query: str,
        top_k: Optional[int] = None,
        metadata_filter: Optional[Dict[str, Any]] = None,
    ) -> List[SearchResult]:
        """
        Nearest-neighbour search.

        Args:
            collection: Collection alias (e.g. "knowledge") or physical name
            query: Query text (embedded through the cache)
            top_k: Number of neighbours (defaults to VECTOR_SEARCH_TOP_K)
            metadata_filter: Equality/range filter, see build_where

        Returns:
            Results sorted by score (1 - cosine distance), highest first
        """
        target = self._get_collection(collection)
        if top_k is None:
            top_k = self.default_top_k
        if top_k < 1:
            raise ValidationError("top_k must be >= 1")
        where = build_where(metadata_filter)

        size = await self._call(target.count)
        if size == 0:
            return []

        embedding = await self.embedding_service.embed(query)
        raw = await self._call(
            target.query,
            query_embeddings=[embedding.vector],
            n_results=min(top_k, size),
            where=where,
            include=["documents", "metadatas", "distances"],
        )

        results: List[SearchResult] = []
        ids = (raw.get("ids") or [[]])[0]
        texts = (raw.get("documents") or [[]])[0]
        metadatas = (raw.get("metadatas") or [[]])[0]
        distances = (raw.get("distances") or [[]])[0]
        for i, doc_id in enumerate(ids):
            distance = float(distances[i])
            results.append(SearchResult(
                id=doc_id,
                text=texts[i] if i < len(texts) else "",
                metadata=dict(metadatas[i] or {}) if i < len(metadatas) else {},
                distance=distance,
                score=1.0 - distance,
            ))

        results.sort(key=lambda r: r.score, reverse=True)
        return results

    async def clear_collection(self, collection: str) -> None:
        """Drop every document by recreating the collection."""
        self._get_collection(collection)
        alias = self._resolve(collection)
        name = self.collection_names[alias]
        await self._call(self.client.delete_collection, name=name)
        self._collections[alias] = await self._call(
            self.client.get_or_create_collection,
            name=name,
            metadata=self.collection_metadata,
            embedding_function=None,
        )
        logger.info(f"🧹 [VectorStore] Cleared collection '{alias}'")

    async def get_stats(self) -> Dict[str, Any]:
        if not self._initialized:
            return {"initialized": False, "collections": {}}
        counts = {}
        for alias in self.collection_names:
            counts[alias] = await self.count(alias)
        return {
            "initialized": True,
            "collections": counts,
            "total_documents": sum(counts.values()),
            "index": self.collection_metadata,
        }

    async def health_check(self) -> Dict[str, Any]:
        if not self._initialized:
            return {"status": "not_initialized"}
        try:
            await self._call(self.client.heartbeat)
            return {"status": "healthy", "collections": list(self.collection_names.keys())}
        except Exception as e:
            logger.warning(f"⚠️ [VectorStore] Health check failed: {e}")
            return {"status": "unhealthy", "error": str(e)}
