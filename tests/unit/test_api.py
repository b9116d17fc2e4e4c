"""
Unit Tests for the FastAPI Backend

Runs the HTTP surface against an application context assembled from fakes.
"""

import pytest
import sys
import os

from fastapi.testclient import TestClient

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "adaptive_tutor_core", "src"))
sys.path.insert(0, os.path.join(project_root, "backend"))

import main
from adaptive_tutor_core.app_context import AppContext
from adaptive_tutor_core.config import Settings
from adaptive_tutor_core.kv_store import InMemoryKeyValueStore
from conftest import FakeChromaClient, FakeEmbeddingModel, ScriptedCompletionClient


class TestAPI:
    """Test suite for the REST endpoints."""

    @pytest.fixture
    def context(self):
        llm = ScriptedCompletionClient({
            "Ask exactly ONE Socratic question": "What is a base case?",
            "Explain the concept": "A function calling itself.",
            "Create a brief summary": "Nice work.",
        })
        return AppContext.from_settings(
            Settings(embedding_dimensions=512),
            store=InMemoryKeyValueStore(),
            completion_client=llm,
            embedding_model=FakeEmbeddingModel(),
            chroma_client=FakeChromaClient(),
        )

    @pytest.fixture
    def client(self, context, monkeypatch):
        monkeypatch.setattr(main, "_context", context)
        with TestClient(main.app) as test_client:
            yield test_client

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["vector_store"]["status"] == "healthy"

    def test_classify(self, client):
        response = client.post("/api/classify", json={"query": "What is recursion in programming?"})
        assert response.status_code == 200
        body = response.json()
        assert body["mode"] == "retrieval"
        assert body["method"] == "rule"

    def test_classify_forced(self, client):
        response = client.post("/api/classify", json={"query": "hi", "force_mode": "session-memory"})
        assert response.json()["mode"] == "session-memory"

    def test_classify_validation_error(self, client):
        """Test core ValidationError maps to 400."""
        response = client.post("/api/classify", json={"query": "   "})
        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    def test_embed_and_batch(self, client):
        first = client.post("/api/embed", json={"text": "hello world"}).json()
        second = client.post("/api/embed", json={"text": "hello world"}).json()
        assert first["dimension"] == 512
        assert first["cached"] is False
        assert second["provenance"] == "cache-L1"

        batch = client.post("/api/embed/batch", json={"texts": ["a b", "c d", "a b"]}).json()
        assert batch["count"] == 3
        assert batch["embeddings"][0] == batch["embeddings"][2]

    def test_search(self, client, context):
        client.portal.call(
            context.vector_store.add_documents,
            "knowledge",
            [{"id": "d1", "text": "Recursion is a function calling itself", "metadata": {"level": "beginner"}}],
        )
        response = client.post(
            "/api/search/knowledge",
            json={"query": "recursion function", "top_k": 2, "filter": {"level": "beginner"}},
        )
        body = response.json()
        assert body["count"] == 1
        assert body["results"][0]["id"] == "d1"

    def test_search_unknown_collection(self, client):
        response = client.post("/api/search/nope", json={"query": "anything"})
        assert response.status_code == 404

    def test_tutor_session_lifecycle(self, client):
        started = client.post("/api/tutor/sessions", json={"user_id": "u1", "topic": "Recursion"})
        assert started.status_code == 200
        session_id = started.json()["session_id"]
        assert started.json()["next_action"] == "question"

        reply = client.post(f"/api/tutor/sessions/{session_id}/interact", json={"message": "ready"})
        assert reply.json()["message"] == "What is a base case?"

        view = client.get(f"/api/tutor/sessions/{session_id}")
        assert view.status_code == 200
        assert view.json()["state"]["topic"] == "Recursion"

        listed = client.get("/api/tutor/users/u1/sessions").json()
        assert [s["session_id"] for s in listed["sessions"]] == [session_id]

        ended = client.delete(f"/api/tutor/sessions/{session_id}")
        assert ended.json()["summary"] == "Nice work."
        assert client.get(f"/api/tutor/sessions/{session_id}").status_code == 404

    def test_unknown_session(self, client):
        response = client.post("/api/tutor/sessions/tutor:u1:missing/interact", json={"message": "hi"})
        assert response.status_code == 404
        assert "not found" in response.json()["detail"]

    def test_upstream_error_maps_to_502(self, client, context):
        context.embedding_service.model.fail = RuntimeError("model down")
        response = client.post("/api/embed", json={"text": "never seen before"})
        assert response.status_code == 502

    def test_stats(self, client):
        client.post("/api/classify", json={"query": "hello"})
        stats = client.get("/api/stats").json()
        assert stats["classifier"]["total_classifications"] == 1
        assert "knowledge" in stats["vector_store"]["collections"]
