"""
Knowledge Base Ingestion Script (incremental)

This script:
1. Tracks processed files by content hash so unchanged files are skipped
2. Loads .pdf, .txt and .md files from a directory
3. Splits them into overlapping chunks
4. Adds the chunks to a vector store collection (embeddings go through the
   shared embedding cache)

Usage:
    python scripts/ingest_documents.py --source data/materials --collection knowledge
"""

import argparse
import asyncio
import glob
import hashlib
import json
import os
import sys
from pathlib import Path
from typing import Dict, List

from dotenv import load_dotenv
from langchain_community.document_loaders import PyPDFLoader, TextLoader
from langchain_core.documents import Document as LCDocument
from langchain_text_splitters import RecursiveCharacterTextSplitter

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'adaptive_tutor_core', 'src'))

from adaptive_tutor_core.config import Settings
from adaptive_tutor_core.embedding_cache import EmbeddingCache
from adaptive_tutor_core.embedding_service import EmbeddingService, HuggingFaceEmbeddingModel
from adaptive_tutor_core.kv_store import create_store
from adaptive_tutor_core.vector_store import Document, VectorStore

load_dotenv()

SUPPORTED_PATTERNS = ("*.pdf", "*.txt", "*.md")
PROCESSED_FILES_LOG = os.path.join(os.path.dirname(__file__), "../data/processed_files.json")


def get_file_hash(file_path: str) -> str:
    """SHA-256 of the file contents."""
    digest = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(4096), b""):
            digest.update(chunk)
    return digest.hexdigest()


def load_processed_files(log_path: str) -> Dict[str, dict]:
    if os.path.exists(log_path):
        with open(log_path, 'r') as f:
            return json.load(f)
    return {}


def save_processed_files(log_path: str, processed_files: Dict[str, dict]):
    os.makedirs(os.path.dirname(log_path), exist_ok=True)
    with open(log_path, 'w') as f:
        json.dump(processed_files, f, indent=2)


def get_new_files(paths: List[str], processed_files: Dict[str, dict]) -> List[str]:
    """Files that are new or whose content changed since the last run."""
    new_files = []
    for path in paths:
        filename = os.path.basename(path)
        if processed_files.get(filename, {}).get('hash') != get_file_hash(path):
            new_files.append(path)
            print(f"   📄 New/Modified: {filename}")
        else:
            print(f"   ✓ Already processed: {filename}")
    return new_files


def load_documents(paths: List[str]) -> List[LCDocument]:
    documents: List[LCDocument] = []
    for path in paths:
        filename = os.path.basename(path)
        loader = PyPDFLoader(path) if path.lower().endswith(".pdf") else TextLoader(path, encoding="utf-8")
        try:
            loaded = loader.load()
        except Exception as e:
            print(f"   ✗ Error loading {filename}: {e}")
            continue

        for i, doc in enumerate(loaded):
            doc.metadata = {
                "source_file": filename,
                "source_type": Path(path).suffix.lstrip("."),
                "page_number": int(doc.metadata.get("page", i)) + 1,
            }
            first_line = doc.page_content.strip().split('\n', 1)[0].strip()
            if first_line and len(first_line) < 100:
                doc.metadata["title"] = first_line
        documents.extend(loaded)
        print(f"   ✓ Loaded {len(loaded)} section(s) from {filename}")
    return documents


def create_chunks(documents: List[LCDocument], chunk_size: int, chunk_overlap: int) -> List[Document]:
    splitter = RecursiveCharacterTextSplitter(
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
        separators=["\n\n", "\n", ". ", " ", ""],
        length_function=len,
    )
    chunks = []
    for i, chunk in enumerate(splitter.split_documents(documents)):
        text = chunk.page_content.strip()
        if not text:
            continue
        chunk_id = hashlib.sha256(f"{chunk.metadata['source_file']}:{i}:{text}".encode()).hexdigest()[:24]
        chunks.append(Document(id=chunk_id, text=text, metadata=dict(chunk.metadata)))
    return chunks


async def ingest(source: str, collection: str, chunk_size: int, chunk_overlap: int, log_path: str) -> int:
    settings = Settings.from_env()
    store = create_store(settings.redis_url)
    embedding_service = EmbeddingService(
        HuggingFaceEmbeddingModel(settings.embedding_model),
        cache=EmbeddingCache(store=store, max_size=settings.embedding_lru_size, ttl_seconds=settings.embedding_cache_ttl),
        dimension=settings.embedding_dimensions,
        batch_size=settings.embedding_batch_size,
        max_input_length=settings.max_input_length,
    )
    vector_store = VectorStore(embedding_service, path=settings.chroma_path, collections=settings.collections)
    await vector_store.initialize()

    paths = sorted(p for pattern in SUPPORTED_PATTERNS for p in glob.glob(os.path.join(source, pattern)))
    if not paths:
        print(f"\n⚠️  No supported files found in {source}")
        return 0

    processed_files = load_processed_files(log_path)
    print(f"\n📚 Found {len(paths)} file(s), {len(processed_files)} tracked")
    new_files = get_new_files(paths, processed_files)
    if not new_files:
        print("\n✅ All files are up to date! No new files to process.")
        return 0

    chunks = create_chunks(load_documents(new_files), chunk_size, chunk_overlap)
    print(f"\n✂️  Created {len(chunks)} chunks")

    added = 0
    for start in range(0, len(chunks), settings.embedding_batch_size):
        added += await vector_store.add_documents(collection, chunks[start:start + settings.embedding_batch_size])

    for path in new_files:
        filename = os.path.basename(path)
        processed_files[filename] = {
            'hash': get_file_hash(path),
            'chunks': sum(1 for c in chunks if c.metadata.get('source_file') == filename),
        }
    save_processed_files(log_path, processed_files)

    total = await vector_store.count(collection)
    print(f"   📊 Total chunks in '{collection}': {total}")
    await store.close()
    return added


def main():
    parser = argparse.ArgumentParser(description="Ingest documents into the knowledge base")
    parser.add_argument("--source", default=os.path.join(os.path.dirname(__file__), "../data/materials"))
    parser.add_argument("--collection", default="knowledge")
    parser.add_argument("--chunk-size", type=int, default=600)
    parser.add_argument("--chunk-overlap", type=int, default=100)
    parser.add_argument("--log", default=PROCESSED_FILES_LOG, help="Processed files log (JSON)")
    args = parser.parse_args()

    print("=" * 70)
    print("🚀 Knowledge Base Ingestion (incremental)")
    print("=" * 70)
    added = asyncio.run(ingest(args.source, args.collection, args.chunk_size, args.chunk_overlap, args.log))
    print(f"\n✅ Ingestion complete: {added} new chunk(s) added")


if __name__ == "__main__":
    main()
