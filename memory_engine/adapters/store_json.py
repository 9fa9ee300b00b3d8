from __future__ import annotations

import asyncio
import json
import logging
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from memory_engine.domain.errors import ValidationError
from memory_engine.domain.memory_models import (
    Memory,
    MemoryCategory,
    MemoryHit,
    MemoryMetadata,
    MemoryType,
)
from memory_engine.domain.rag_models import Chunk, ChunkHit, Document, DocumentStatus, StorageUsage
from memory_engine.ports.document_store import DocumentRepository
from memory_engine.ports.memory_store import MemoryRepository
from memory_engine.ports.vector_store import VectorIndex

log = logging.getLogger(__name__)


def _dt_to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    dt = dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _dt_from_iso(s: Optional[str]) -> Optional[datetime]:
    s = (s or "").strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _atomic_write(path: Path, text: str) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(path)


def serialize_vector(vec: Sequence[float]) -> str:
    """pgvector text form: [0.1,0.2,...]"""
    return "[" + ",".join(repr(float(v)) for v in vec) + "]"


def deserialize_vector(raw: Any) -> List[float]:
    if isinstance(raw, list):
        return [float(v) for v in raw]
    if isinstance(raw, str) and raw.strip():
        return [float(v) for v in json.loads(raw)]
    return []


def cosine(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na <= 0.0 or nb <= 0.0:
        return 0.0
    return dot / (na * nb)


def _rank_rows(
    query_vector: Sequence[float],
    rows: List[Dict[str, Any]],
    threshold: float,
    limit: int,
) -> List[Tuple[float, Dict[str, Any]]]:
    """Косинус перебором по снимку строк. Нагружает CPU, поэтому вызывается в рабочем потоке."""
    scored = [(cosine(query_vector, deserialize_vector(r.get("embedding"))), r) for r in rows]
    kept = [(s, r) for s, r in scored if s > threshold]
    kept.sort(key=lambda x: x[0], reverse=True)
    return kept[: max(0, int(limit))]


def _doc_to_dict(d: Document) -> Dict[str, Any]:
    return {
        "id": d.id,
        "owner_id": d.owner_id,
        "name": d.name,
        "size_bytes": int(d.size_bytes),
        "mime_type": d.mime_type,
        "page_count": d.page_count,
        "word_count": d.word_count,
        "language": d.language,
        "tags": list(d.tags),
        "status": d.status.value,
        "error_message": d.error_message,
        "created_at": _dt_to_iso(d.created_at),
        "processed_at": _dt_to_iso(d.processed_at),
    }


def _doc_from_dict(r: Dict[str, Any]) -> Document:
    return Document(
        id=str(r["id"]),
        owner_id=str(r["owner_id"]),
        name=str(r.get("name", "")),
        size_bytes=int(r.get("size_bytes", 0) or 0),
        mime_type=str(r.get("mime_type", "text/plain")),
        page_count=r.get("page_count"),
        word_count=r.get("word_count"),
        language=str(r.get("language", "en")),
        tags=list(r.get("tags") or []),
        status=DocumentStatus(r.get("status", "uploading")),
        error_message=r.get("error_message"),
        created_at=_dt_from_iso(r.get("created_at")) or datetime.now(timezone.utc),
        processed_at=_dt_from_iso(r.get("processed_at")),
    )


def _chunk_to_dict(c: Chunk) -> Dict[str, Any]:
    return {
        "id": c.id,
        "document_id": c.document_id,
        "owner_id": c.owner_id,
        "index": int(c.index),
        "content": c.content,
        "page_number": c.page_number,
        "embedding": serialize_vector(c.embedding),
        "token_count": int(c.token_count),
        "created_at": _dt_to_iso(c.created_at),
    }


def _chunk_from_dict(r: Dict[str, Any]) -> Chunk:
    return Chunk(
        id=str(r["id"]),
        document_id=str(r["document_id"]),
        owner_id=str(r["owner_id"]),
        index=int(r.get("index", 0)),
        content=str(r.get("content", "")),
        page_number=r.get("page_number"),
        embedding=deserialize_vector(r.get("embedding")),
        token_count=int(r.get("token_count", 0) or 0),
        created_at=_dt_from_iso(r.get("created_at")) or datetime.now(timezone.utc),
    )


def _memory_to_dict(m: Memory) -> Dict[str, Any]:
    md = m.metadata
    return {
        "id": m.id,
        "owner_id": m.owner_id,
        "content": m.content,
        "memory_type": m.memory_type,
        "importance": float(m.importance),
        "metadata": {
            "category": md.category.value,
            "tags": list(md.tags),
            "context": md.context,
            "source_chat_id": md.source_chat_id,
            "original_text": md.original_text,
        },
        "embedding": serialize_vector(m.embedding),
        "access_count": int(m.access_count),
        "last_accessed_at": _dt_to_iso(m.last_accessed_at),
        "created_at": _dt_to_iso(m.created_at),
        "updated_at": _dt_to_iso(m.updated_at),
    }


def _memory_from_dict(r: Dict[str, Any]) -> Memory:
    md = r.get("metadata") or {}
    now = datetime.now(timezone.utc)
    return Memory(
        id=str(r["id"]),
        owner_id=str(r["owner_id"]),
        content=str(r.get("content", "")),
        memory_type=r.get("memory_type", "auto"),
        importance=float(r.get("importance", 0.5)),
        metadata=MemoryMetadata(
            category=MemoryCategory.parse(md.get("category")),
            tags=list(md.get("tags") or []),
            context=str(md.get("context") or ""),
            source_chat_id=md.get("source_chat_id"),
            original_text=md.get("original_text"),
        ),
        embedding=deserialize_vector(r.get("embedding")),
        access_count=int(r.get("access_count", 0) or 0),
        last_accessed_at=_dt_from_iso(r.get("last_accessed_at")),
        created_at=_dt_from_iso(r.get("created_at")) or now,
        updated_at=_dt_from_iso(r.get("updated_at")) or now,
    )


class JsonStore(DocumentRepository, MemoryRepository, VectorIndex):
    """
    Простой persisted store: документы, чанки и воспоминания в одном JSON-файле
    (или только в памяти, если `path` is None), поиск косинусом перебором.

    файл JSON:
    { "documents": {"<id>": {...}}, "chunks": {"<id>": {...}}, "memories": {"<id>": {...}} }
    векторы хранятся в текстовом виде pgvector.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else None
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {"documents": {}, "chunks": {}, "memories": {}}
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._load()

    def _load(self) -> None:
        assert self.path is not None
        if not self.path.exists():
            return
        raw = self.path.read_text(encoding="utf-8")
        data = json.loads(raw) if raw.strip() else {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.path}: expected a JSON object at top level")
        for table in ("documents", "chunks", "memories"):
            rows = data.get(table, {})
            self._data[table] = rows if isinstance(rows, dict) else {}

    def _save(self) -> None:
        if self.path is None:
            return
        _atomic_write(self.path, json.dumps(self._data, ensure_ascii=False, indent=2))

    def _rows(self, table: str, owner_id: str) -> List[Dict[str, Any]]:
        return [r for r in self._data[table].values() if r.get("owner_id") == owner_id]

    # ------------------------------------------------------------------
    # documents / chunks
    # ------------------------------------------------------------------

    async def save_document(self, document: Document) -> Document:
        self._data["documents"][document.id] = _doc_to_dict(document)
        self._save()
        return document

    async def get_document(self, owner_id: str, document_id: str) -> Optional[Document]:
        r = self._data["documents"].get(document_id)
        if r is None or r.get("owner_id") != owner_id:
            return None
        return _doc_from_dict(r)

    async def list_documents(self, owner_id: str) -> List[Document]:
        docs = [_doc_from_dict(r) for r in self._rows("documents", owner_id)]
        docs.sort(key=lambda d: d.created_at, reverse=True)
        return docs

    async def insert_chunks(self, chunks: Sequence[Chunk]) -> int:
        rows = [_chunk_to_dict(c) for c in chunks]
        seen = set()
        for c in chunks:
            key = (c.document_id, c.index)
            if key in seen:
                raise ValidationError(f"duplicate chunk index {c.index} for document {c.document_id}")
            seen.add(key)
        existing = {(r["document_id"], r["index"]) for r in self._data["chunks"].values()}
        clash = seen & existing
        if clash:
            raise ValidationError(f"chunk indices already stored: {sorted(clash)[:3]}")

        for r in rows:
            self._data["chunks"][r["id"]] = r
        self._save()
        return len(rows)

    async def list_chunks(self, owner_id: str, document_id: str) -> List[Chunk]:
        rows = [r for r in self._rows("chunks", owner_id) if r.get("document_id") == document_id]
        rows.sort(key=lambda r: int(r.get("index", 0)))
        return [_chunk_from_dict(r) for r in rows]

    async def delete_document(self, owner_id: str, document_id: str) -> int:
        r = self._data["documents"].get(document_id)
        if r is None or r.get("owner_id") != owner_id:
            return 0
        doomed = [cid for cid, c in self._data["chunks"].items() if c.get("document_id") == document_id]
        for cid in doomed:
            del self._data["chunks"][cid]
        del self._data["documents"][document_id]
        self._save()
        return len(doomed)

    # ------------------------------------------------------------------
    # memories
    # ------------------------------------------------------------------

    async def insert_memory(self, memory: Memory) -> Memory:
        self._data["memories"][memory.id] = _memory_to_dict(memory)
        self._save()
        return memory

    async def get_memory(self, owner_id: str, memory_id: str) -> Optional[Memory]:
        r = self._data["memories"].get(memory_id)
        if r is None or r.get("owner_id") != owner_id:
            return None
        return _memory_from_dict(r)

    async def list_memories(self, owner_id: str, *, memory_type: Optional[MemoryType] = None) -> List[Memory]:
        out = [_memory_from_dict(r) for r in self._rows("memories", owner_id)]
        if memory_type is not None:
            out = [m for m in out if m.memory_type == memory_type]
        out.sort(key=lambda m: m.created_at, reverse=True)
        return out

    async def count_memories(self, owner_id: str) -> int:
        return len(self._rows("memories", owner_id))

    async def update_memory(self, memory: Memory) -> Memory:
        if memory.id not in self._data["memories"]:
            raise KeyError(memory.id)
        self._data["memories"][memory.id] = _memory_to_dict(memory)
        self._save()
        return memory

    async def delete_memories(self, owner_id: str, memory_ids: List[str]) -> int:
        removed = 0
        for mid in memory_ids:
            r = self._data["memories"].get(mid)
            if r is not None and r.get("owner_id") == owner_id:
                del self._data["memories"][mid]
                removed += 1
        if removed:
            self._save()
        return removed

    async def increment_access(self, memory_id: str, accessed_at: datetime) -> None:
        r = self._data["memories"].get(memory_id)
        if r is None:
            raise KeyError(memory_id)
        r["access_count"] = int(r.get("access_count", 0) or 0) + 1
        r["last_accessed_at"] = _dt_to_iso(accessed_at)
        self._save()

    # ------------------------------------------------------------------
    # vector index
    # ------------------------------------------------------------------

    async def search_chunks(
        self,
        query_vector: Sequence[float],
        owner_id: str,
        *,
        limit: int,
        threshold: float,
        document_ids: Optional[Sequence[str]] = None,
    ) -> List[ChunkHit]:
        docs = {
            r["id"]: r for r in self._rows("documents", owner_id)
            if r.get("status") == DocumentStatus.READY.value
        }
        allowed = set(document_ids) if document_ids is not None else None

        rows = [
            r for r in self._rows("chunks", owner_id)
            if r.get("document_id") in docs and (allowed is None or r.get("document_id") in allowed)
        ]
        ranked = await asyncio.to_thread(_rank_rows, list(query_vector), rows, threshold, limit)

        return [
            ChunkHit(chunk=_chunk_from_dict(r), document_name=str(docs[r["document_id"]].get("name", "")), similarity=s)
            for s, r in ranked
        ]

    async def search_memories(
        self,
        query_vector: Sequence[float],
        owner_id: str,
        *,
        limit: int,
        threshold: float,
        memory_type: Optional[MemoryType] = None,
        min_importance: float = 0.0,
    ) -> List[MemoryHit]:
        rows = [
            r for r in self._rows("memories", owner_id)
            if (memory_type is None or r.get("memory_type") == memory_type)
            and float(r.get("importance", 0.0)) >= min_importance
        ]
        ranked = await asyncio.to_thread(_rank_rows, list(query_vector), rows, threshold, limit)

        return [MemoryHit(memory=_memory_from_dict(r), similarity=s) for s, r in ranked]

    async def storage_usage(self, owner_id: str) -> StorageUsage:
        live = [r for r in self._rows("documents", owner_id) if r.get("status") != DocumentStatus.FAILED.value]
        ids = {r["id"] for r in live}
        chunks = sum(1 for c in self._rows("chunks", owner_id) if c.get("document_id") in ids)
        return StorageUsage(
            document_count=len(live),
            total_bytes=sum(int(r.get("size_bytes", 0) or 0) for r in live),
            chunk_count=chunks,
        )

    async def count_uploads_since(self, owner_id: str, since: datetime) -> int:
        n = 0
        for r in self._rows("documents", owner_id):
            created = _dt_from_iso(r.get("created_at"))
            if created is not None and created >= since:
                n += 1
        return n
