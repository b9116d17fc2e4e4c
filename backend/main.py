"""
FastAPI Backend for the Adaptive Tutor Core

REST endpoints for:
- Query routing (rule + semantic classification)
- Cached embeddings
- Vector search over named collections
- Adaptive tutoring sessions (start / interact / inspect / end)
"""

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
import os
import sys
import time
import logging

# Add the adaptive_tutor_core package to Python path
backend_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(backend_dir)
package_src = os.path.join(project_root, 'adaptive_tutor_core', 'src')
if os.path.exists(package_src) and package_src not in sys.path:
    sys.path.insert(0, package_src)

from lib.logger import setup_logging, get_logger

setup_logging(level=logging.INFO, use_colors=True)
logger = get_logger("backend.main")

from lib.supabase_client import get_supabase_client
from adaptive_tutor_core.app_context import AppContext
from adaptive_tutor_core.config import Settings
from adaptive_tutor_core.errors import (
    NotFoundError,
    NotInitializedError,
    TutorCoreError,
    UpstreamUnavailable,
    ValidationError,
)
from adaptive_tutor_core.state_persistence import SupabaseSessionArchive

# Singleton application context, built on first use
_context: Optional[AppContext] = None


def get_context() -> AppContext:
    """Get or create the application context."""
    global _context
    if _context is None:
        settings = Settings.from_env()
        long_term_store = None
        if settings.archive_enabled:
            long_term_store = SupabaseSessionArchive(get_supabase_client())
        _context = AppContext.from_settings(settings, long_term_store=long_term_store)
    return _context


app = FastAPI(
    title="Adaptive Tutor Core API",
    description="Query routing, embeddings, vector search and adaptive tutoring sessions",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:3001",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ==================== Error Mapping ====================

ERROR_STATUS = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (NotInitializedError, 503),
    (UpstreamUnavailable, 502),
]


@app.exception_handler(TutorCoreError)
async def tutor_core_error_handler(request: Request, exc: TutorCoreError):
    status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed", error=exc)
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(
        status_code=status,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    if request.url.path.startswith("/api/"):
        logger.response(response.status_code, request.url.path, duration=time.time() - start_time)
    return response

# ==================== Pydantic Models ====================


class Turn(BaseModel):
    role: str
    content: str


class ClassifyRequest(BaseModel):
    query: str
    conversation_history: List[Turn] = Field(default_factory=list)
    knowledge_check: bool = True
    force_mode: Optional[str] = None
    use_semantic: bool = False
    use_llm: bool = False


class EmbedRequest(BaseModel):
    text: str


class EmbedBatchRequest(BaseModel):
    texts: List[str]


class SearchRequest(BaseModel):
    query: str
    top_k: Optional[int] = None
    filter: Optional[Dict[str, Any]] = None


class StartSessionRequest(BaseModel):
    user_id: str
    topic: str
    level: str = "beginner"


class InteractRequest(BaseModel):
    message: str


# ==================== API Endpoints ====================

@app.get("/")
async def root():
    """Health check endpoint."""
    ctx = get_context()
    return {
        "status": "ok",
        "service": "Adaptive Tutor Core API",
        "version": "1.0.0",
        "vector_store": await ctx.vector_store.health_check(),
        "store_connected": await ctx.store.ping(),
    }


@app.post("/api/classify")
async def classify(request: ClassifyRequest):
    """Route a query to retrieval, conversational, session-memory or platform-action."""
    ctx = get_context()
    result = await ctx.classifier.classify(
        request.query,
        conversation_history=[t.model_dump() for t in request.conversation_history],
        knowledge_check=request.knowledge_check,
        force_mode=request.force_mode,
        use_semantic=request.use_semantic,
        use_llm=request.use_llm,
    )
    return result.to_dict()


@app.post("/api/embed")
async def embed(request: EmbedRequest):
    result = await get_context().embedding_service.embed(request.text)
    return result.to_dict()


@app.post("/api/embed/batch")
async def embed_batch(request: EmbedBatchRequest):
    result = await get_context().embedding_service.embed_batch(request.texts)
    return result.to_dict()


@app.post("/api/search/{collection}")
async def search(collection: str, request: SearchRequest):
    results = await get_context().vector_store.search(
        collection,
        request.query,
        top_k=request.top_k,
        metadata_filter=request.filter,
    )
    return {
        "collection": collection,
        "count": len(results),
        "results": [r.to_dict() for r in results],
    }


@app.post("/api/tutor/sessions")
async def start_session(request: StartSessionRequest):
    """Start an adaptive tutoring session."""
    logger.request("POST", "/api/tutor/sessions", data={"user_id": request.user_id, "topic": request.topic})
    return await get_context().tutor.start(request.user_id, request.topic, request.level)


@app.post("/api/tutor/sessions/{session_id}/interact")
async def interact(session_id: str, request: InteractRequest):
    return await get_context().tutor.interact(session_id, request.message)


@app.get("/api/tutor/sessions/{session_id}")
async def get_session(session_id: str):
    session = await get_context().tutor.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@app.delete("/api/tutor/sessions/{session_id}")
async def end_session(session_id: str):
    """End a session: summary, optional archive, checkpoint removed."""
    return await get_context().tutor.end_session(session_id)


@app.get("/api/tutor/users/{user_id}/sessions")
async def list_user_sessions(user_id: str):
    sessions = await get_context().tutor.list_user_sessions(user_id)
    return {"user_id": user_id, "sessions": sessions}


@app.get("/api/stats")
async def stats():
    return await get_context().get_stats()


@app.on_event("startup")
async def startup_event():
    """Startup event - open the vector index."""
    ctx = get_context()
    await ctx.startup()
    logger.success("Adaptive tutor core ready", data={"collections": list(ctx.settings.collections.keys())})


@app.on_event("shutdown")
async def shutdown_event():
    """Shutdown event - close the shared store."""
    if _context is not None:
        await _context.shutdown()
        logger.info("🛑 Services stopped")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
