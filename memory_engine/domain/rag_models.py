from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import List, Optional

from memory_engine.domain.errors import InvalidTransition
from memory_engine.domain.models import new_id, utcnow


class DocumentStatus(str, Enum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (DocumentStatus.READY, DocumentStatus.FAILED)


_ALLOWED = {
    DocumentStatus.UPLOADING: {DocumentStatus.PROCESSING, DocumentStatus.FAILED},
    DocumentStatus.PROCESSING: {DocumentStatus.READY, DocumentStatus.FAILED},
    DocumentStatus.READY: set(),
    DocumentStatus.FAILED: set(),
}


@dataclass(frozen=True)
class Document:
    owner_id: str
    name: str
    size_bytes: int
    mime_type: str = "text/plain"
    id: str = field(default_factory=new_id)
    page_count: Optional[int] = None
    word_count: Optional[int] = None
    language: str = "en"
    tags: List[str] = field(default_factory=list)
    status: DocumentStatus = DocumentStatus.UPLOADING
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    processed_at: Optional[datetime] = None

    def transition(self, status: DocumentStatus, *, error_message: Optional[str] = None, **changes) -> "Document":
        if status not in _ALLOWED[self.status]:
            raise InvalidTransition(f"document {self.id}: {self.status.value} -> {status.value} is not allowed")
        if status is DocumentStatus.FAILED and not error_message:
            raise InvalidTransition("failed documents must carry an error message")
        if status is not DocumentStatus.FAILED and error_message:
            raise InvalidTransition("only failed documents carry an error message")

        if status.terminal:
            changes.setdefault("processed_at", utcnow())
        return replace(self, status=status, error_message=error_message, **changes)


@dataclass(frozen=True)
class TextChunk:
    """Chunker output. `page_number` is a linear-interpolation estimate, advisory only."""
    content: str
    index: int
    token_count: int
    start_token: int = 0
    page_number: Optional[int] = None


@dataclass(frozen=True)
class Chunk:
    document_id: str
    owner_id: str
    index: int
    content: str
    embedding: List[float]
    token_count: int
    page_number: Optional[int] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ChunkHit:
    chunk: Chunk
    document_name: str
    similarity: float


@dataclass(frozen=True)
class StorageUsage:
    document_count: int = 0
    total_bytes: int = 0
    chunk_count: int = 0


@dataclass(frozen=True)
class LoadedDocument:
    """Extracted text of a source file plus what the loader could tell about it."""
    source: str
    text: str
    page_count: int = 0
    mime_type: str = "text/plain"
