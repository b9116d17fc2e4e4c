"""
Unit Tests for the incremental ingestion script
"""

import pytest
import sys
import os

from langchain_core.documents import Document as LCDocument

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "adaptive_tutor_core", "src"))
sys.path.insert(0, os.path.join(project_root, "scripts"))

import ingest_documents


class TestIngestDocuments:
    """Test suite for ingestion helpers."""

    def test_new_and_changed_files(self, tmp_path):
        unchanged = tmp_path / "a.txt"
        changed = tmp_path / "b.txt"
        fresh = tmp_path / "c.md"
        unchanged.write_text("same content")
        changed.write_text("new content")
        fresh.write_text("# Title")

        processed = {
            "a.txt": {"hash": ingest_documents.get_file_hash(str(unchanged))},
            "b.txt": {"hash": "stale"},
        }
        new_files = ingest_documents.get_new_files([str(unchanged), str(changed), str(fresh)], processed)
        assert new_files == [str(changed), str(fresh)]

    def test_processed_log_round_trip(self, tmp_path):
        log_path = str(tmp_path / "logs" / "processed.json")
        assert ingest_documents.load_processed_files(log_path) == {}
        ingest_documents.save_processed_files(log_path, {"a.txt": {"hash": "h", "chunks": 2}})
        assert ingest_documents.load_processed_files(log_path) == {"a.txt": {"hash": "h", "chunks": 2}}

    def test_load_documents_adds_metadata(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("Recursion\nA function that calls itself.")
        docs = ingest_documents.load_documents([str(path)])

        assert len(docs) == 1
        assert docs[0].metadata["source_file"] == "notes.txt"
        assert docs[0].metadata["source_type"] == "txt"
        assert docs[0].metadata["title"] == "Recursion"

    def test_chunks_have_stable_ids(self):
        text = " ".join(f"sentence {i} about recursion." for i in range(60))
        source = [LCDocument(page_content=text, metadata={"source_file": "r.txt", "page_number": 1})]

        first = ingest_documents.create_chunks(source, chunk_size=200, chunk_overlap=20)
        second = ingest_documents.create_chunks(source, chunk_size=200, chunk_overlap=20)

        assert len(first) > 1
        assert [c.id for c in first] == [c.id for c in second]
        assert len({c.id for c in first}) == len(first)
        assert all(len(c.text) <= 200 for c in first)
        assert first[0].metadata["source_file"] == "r.txt"
