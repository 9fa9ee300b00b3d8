from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from memory_engine.app.settings import AppSettings
from memory_engine.app.wiring import build_bundle
from memory_engine.domain.errors import (
    MemoryEngineError,
    NotFoundError,
    ProviderError,
    QuotaExceededError,
    ValidationError,
)
from memory_engine.domain.memory_models import CandidateMemory, Memory, MemoryCategory, MemoryHit
from memory_engine.domain.models import ExtractionRequest, Message
from memory_engine.domain.rag_models import Document
from memory_engine.use_cases.retrieval import RetrievalState
from memory_engine.use_cases.vector_gateway import MemoryScope, format_bytes

logging.basicConfig(level=logging.INFO, format="%(message)s")
log = logging.getLogger("memory_engine")

settings = AppSettings.from_env()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    yield
    # extraction and access tracking may still be in flight
    await build_bundle(settings).tasks.drain(timeout=5.0)


app = FastAPI(title="memory_engine", lifespan=lifespan)

UPLOADS_DIR = Path("./uploads")
ALLOWED_EXTS = {".txt", ".md", ".pdf"}


class MessageIn(BaseModel):
    role: str = "user"
    content: str = ""


class InjectRequest(BaseModel):
    user_id: str
    messages: List[MessageIn]
    count: Optional[int] = None
    min_importance: Optional[float] = None


class ExtractRequest(BaseModel):
    user_id: str
    messages: List[MessageIn]
    chat_id: Optional[str] = None


class RememberRequest(BaseModel):
    content: str
    category: str = "user_info"
    tags: List[str] = Field(default_factory=lambda: ["explicit", "user-requested"])
    context: str = ""
    chat_id: Optional[str] = None


class MemorySearchRequest(BaseModel):
    query: str
    limit: int = 5
    similarity_threshold: float = 0.5
    memory_type: Optional[str] = None
    min_importance: float = 0.0


class DocumentSearchRequest(BaseModel):
    query: str
    max_results: int = 5
    similarity_threshold: float = 0.5
    document_ids: Optional[List[str]] = None


def _status_for(err: MemoryEngineError) -> int:
    if isinstance(err, ValidationError):
        return 400
    if isinstance(err, NotFoundError):
        return 404
    if isinstance(err, QuotaExceededError):
        return 429
    if isinstance(err, ProviderError):
        return 502
    return 500


@app.exception_handler(MemoryEngineError)
async def engine_error_handler(request: Request, err: MemoryEngineError) -> JSONResponse:
    status = _status_for(err)
    body: Dict[str, Any] = {"error": type(err).__name__, "detail": str(err)}
    if isinstance(err, QuotaExceededError):
        body.update({"reason": err.reason, "limit": err.limit, "used": err.used})
    log.info(json.dumps({"event": "error", "path": request.url.path, "status": status, **body}, ensure_ascii=False))
    return JSONResponse(status_code=status, content=body)


def _api_key(header: Optional[str]) -> str:
    return header or settings.api_key


def m2d(m: Memory) -> Dict[str, Any]:
    return {
        "id": m.id,
        "content": m.content,
        "memory_type": m.memory_type,
        "importance": m.importance,
        "category": m.metadata.category.value,
        "tags": m.metadata.tags,
        "context": m.metadata.context,
        "source_chat_id": m.metadata.source_chat_id,
        "access_count": m.access_count,
        "last_accessed_at": m.last_accessed_at.isoformat() if m.last_accessed_at else None,
        "created_at": m.created_at.isoformat(),
        "updated_at": m.updated_at.isoformat(),
    }


def d2d(d: Document) -> Dict[str, Any]:
    return {
        "id": d.id,
        "name": d.name,
        "size_bytes": d.size_bytes,
        "mime_type": d.mime_type,
        "page_count": d.page_count,
        "word_count": d.word_count,
        "language": d.language,
        "tags": d.tags,
        "status": d.status.value,
        "error_message": d.error_message,
        "created_at": d.created_at.isoformat(),
        "processed_at": d.processed_at.isoformat() if d.processed_at else None,
    }


def _messages(items: List[MessageIn]) -> List[Message]:
    return Message.from_pairs([(m.role, m.content) for m in items])


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/inject")
async def inject(req: InjectRequest, x_api_key: Optional[str] = Header(default=None)):
    bundle = build_bundle(settings)
    if not settings.enable_memory:
        return {"context": "", "trace": []}
    orch = bundle.orchestrator
    context = orch.build_conversation_context(_messages(req.messages))
    states: List[RetrievalState] = [RetrievalState.IDLE]
    block = await orch.inject_relevant(
        context, req.user_id, _api_key(x_api_key), req.count, req.min_importance, trace=states,
    )
    trace = [s.value for s in states]
    log.info(json.dumps({
        "event": "inject",
        "user_id": req.user_id,
        "chars": len(block),
        "timed_out": RetrievalState.TIMED_OUT.value in trace,
    }))
    return {"context": block, "trace": trace}


@app.post("/extract")
async def extract(req: ExtractRequest, x_api_key: Optional[str] = Header(default=None)):
    bundle = build_bundle(settings)
    if not settings.enable_memory:
        return {"scheduled": False}
    request = ExtractionRequest(owner_id=req.user_id, messages=_messages(req.messages), chat_id=req.chat_id)
    bundle.orchestrator.schedule_extraction(request, _api_key(x_api_key))
    return {"scheduled": True}


@app.get("/memories/{user_id}")
async def list_memories(
    user_id: str,
    limit: int = Query(default=50, ge=0, le=500),
    offset: int = Query(default=0, ge=0),
    memory_type: Optional[str] = Query(default=None),
):
    bundle = build_bundle(settings)
    items = await bundle.memories.list(user_id, limit=limit, offset=offset, memory_type=memory_type)  # type: ignore[arg-type]
    return [m2d(m) for m in items]


@app.get("/memories/{user_id}/stats")
async def memory_stats(user_id: str):
    bundle = build_bundle(settings)
    s = await bundle.memories.stats(user_id)
    return {
        "total": s.total,
        "auto": s.auto,
        "explicit": s.explicit,
        "avg_importance": s.avg_importance,
        "most_recent": s.most_recent.isoformat() if s.most_recent else None,
    }


@app.post("/memories/{user_id}")
async def create_memory(user_id: str, req: RememberRequest, x_api_key: Optional[str] = Header(default=None)):
    bundle = build_bundle(settings)
    candidate = CandidateMemory(
        content=req.content,
        importance=settings.extraction.explicit_importance,
        category=MemoryCategory.parse(req.category),
        tags=req.tags,
        context=req.context,
    )
    memory = await bundle.orchestrator.remember(user_id, candidate, _api_key(x_api_key), req.chat_id)
    if memory is None:
        return {"saved": False, "reason": "duplicate"}
    return {"saved": True, "memory": m2d(memory)}


@app.post("/memories/{user_id}/search")
async def search_memories(user_id: str, req: MemorySearchRequest, x_api_key: Optional[str] = Header(default=None)):
    bundle = build_bundle(settings)
    if req.memory_type not in (None, "auto", "explicit"):
        raise HTTPException(status_code=400, detail=f"unknown memory_type: {req.memory_type}")
    hits = await bundle.gateway.search_text(
        req.query,
        user_id,
        _api_key(x_api_key),
        max_results=req.limit,
        similarity_threshold=req.similarity_threshold,
        scope=MemoryScope(memory_type=req.memory_type, min_importance=req.min_importance),  # type: ignore[arg-type]
    )
    out = []
    for h in hits:
        if isinstance(h, MemoryHit):
            bundle.tasks.spawn(bundle.memories.increment_access(h.memory.id))
            out.append({**m2d(h.memory), "similarity": h.similarity})
    return out


@app.delete("/memories/{user_id}/{memory_id}")
async def delete_memory(user_id: str, memory_id: str):
    bundle = build_bundle(settings)
    await bundle.memories.delete(user_id, memory_id)
    return {"deleted": True}


@app.delete("/memories/{user_id}")
async def delete_memories(user_id: str, memory_type: Optional[str] = Query(default=None)):
    bundle = build_bundle(settings)
    if memory_type is None:
        n = await bundle.memories.delete_all(user_id)
    else:
        n = await bundle.memories.delete_by_type(user_id, memory_type)  # type: ignore[arg-type]
    return {"deleted": n}


@app.post("/memories/{user_id}/prune")
async def prune_memories(user_id: str, keep_count: int = Query(default=100, ge=0)):
    bundle = build_bundle(settings)
    n = await bundle.memories.prune(user_id, keep_count)
    return {"deleted": n}


@app.post("/documents/upload")
async def upload_document(
    user_id: str = Query(default="default"),
    tags: List[str] = Query(default=[]),
    file: UploadFile = File(...),
    x_api_key: Optional[str] = Header(default=None),
):
    if not file.filename:
        raise HTTPException(status_code=400, detail="Empty filename")

    safe_name = Path(file.filename).name
    ext = Path(safe_name).suffix.lower()
    if ext not in ALLOWED_EXTS:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file type: {ext}. Allowed: {sorted(ALLOWED_EXTS)}",
        )

    # user_id becomes a directory name under UPLOADS_DIR
    if Path(user_id).name != user_id or user_id == "..":
        raise HTTPException(status_code=400, detail="Invalid user_id")

    dst_dir = UPLOADS_DIR / user_id
    dst_dir.mkdir(parents=True, exist_ok=True)
    dst = dst_dir / safe_name

    try:
        data = await file.read()
        dst.write_bytes(data)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to save file: {e}")

    bundle = build_bundle(settings)
    try:
        doc = await bundle.ingestor.ingest_path(user_id, str(dst), tags=tags, api_key=_api_key(x_api_key))
    except Exception:
        dst.unlink(missing_ok=True)
        raise
    chunks = await bundle.store.list_chunks(user_id, doc.id)
    log.info(json.dumps({"event": "ingest", "user_id": user_id, "document_id": doc.id, "chunks": len(chunks)}))
    return {"document": d2d(doc), "chunk_count": len(chunks)}


@app.get("/documents/{user_id}")
async def list_documents(user_id: str, q: Optional[str] = Query(default=None)):
    bundle = build_bundle(settings)
    if q:
        docs = await bundle.ingestor.search_documents(user_id, q)
    else:
        docs = await bundle.ingestor.list_documents(user_id)
    return [d2d(d) for d in docs]


@app.delete("/documents/{user_id}/{document_id}")
async def delete_document(user_id: str, document_id: str):
    bundle = build_bundle(settings)
    n = await bundle.ingestor.delete_document(user_id, document_id)
    return {"deleted": True, "chunks_removed": n}


@app.post("/documents/{user_id}/search")
async def search_documents(user_id: str, req: DocumentSearchRequest, x_api_key: Optional[str] = Header(default=None)):
    bundle = build_bundle(settings)
    hits = await bundle.orchestrator.search_documents_text(
        req.query,
        user_id,
        _api_key(x_api_key),
        max_results=req.max_results,
        similarity_threshold=req.similarity_threshold,
        document_ids=req.document_ids,
    )
    return [
        {
            "document_id": h.chunk.document_id,
            "document_name": h.document_name,
            "chunk_index": h.chunk.index,
            "page_number": h.chunk.page_number,
            "content": h.chunk.content,
            "similarity": h.similarity,
        }
        for h in hits
    ]


@app.get("/usage/{user_id}")
async def usage(user_id: str):
    bundle = build_bundle(settings)
    gw = bundle.gateway
    u = await gw.storage_usage(user_id)
    q = settings.quotas
    return {
        "document_count": u.document_count,
        "total_bytes": u.total_bytes,
        "chunk_count": u.chunk_count,
        "remaining_bytes": gw.remaining_storage(u.total_bytes),
        "storage_percentage": gw.storage_percentage(u.total_bytes),
        "total_readable": format_bytes(u.total_bytes),
        "limits": {
            "max_documents": q.max_documents,
            "max_storage_bytes": q.max_storage_bytes,
            "max_daily_uploads": q.max_daily_uploads,
            "max_file_bytes": q.max_file_bytes,
        },
    }
