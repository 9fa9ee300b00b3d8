from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from memory_engine.domain.errors import NotFoundError, ValidationError
from memory_engine.domain.rag_models import Chunk, Document, DocumentStatus, TextChunk
from memory_engine.ports.chunker import Chunker
from memory_engine.ports.document_store import DocumentRepository
from memory_engine.ports.loaders import DocumentLoader
from memory_engine.use_cases.embedding_client import EmbeddingClient
from memory_engine.use_cases.vector_gateway import VectorIndexGateway

log = logging.getLogger(__name__)


def count_words(text: str) -> int:
    return len(text.split())


def detect_language(text: str) -> str:
    """Mostly-ASCII text is taken as English; anything else is "multilingual"."""
    if not text:
        return "en"
    ascii_chars = sum(1 for ch in text if ord(ch) < 128)
    return "en" if ascii_chars / len(text) > 0.9 else "multilingual"


@dataclass
class DocumentIngestor:
    """
    text -> chunker -> embedding client -> store, with quota checks up front and
    the document lifecycle kept honest: a document that fails partway is
    marked `failed` and none of its chunks are written.
    """
    gateway: VectorIndexGateway
    documents: DocumentRepository
    chunker: Chunker
    embedder: EmbeddingClient
    loaders: Dict[str, DocumentLoader] = field(default_factory=dict)

    async def _fail(self, doc: Document, err: BaseException) -> Document:
        message = str(err) or type(err).__name__
        if doc.status.terminal:
            log.warning("ingestion error after document %s reached %s: %s", doc.id, doc.status.value, message)
            return doc
        failed = doc.transition(DocumentStatus.FAILED, error_message=message)
        await self.documents.save_document(failed)
        log.warning("ingestion failed for document %s (%s): %s", doc.id, doc.name, message)
        return failed

    async def _process(self, doc: Document, text: str, page_count: int, api_key: Optional[str]) -> Document:
        doc = doc.transition(DocumentStatus.PROCESSING)
        await self.documents.save_document(doc)

        if not text or not text.strip():
            raise ValidationError("no text could be extracted from the document")

        pieces: List[TextChunk] = list(self.chunker.chunk(text, page_count))
        if not pieces:
            raise ValidationError("document produced no chunks")

        vectors = await self.embedder.embed_in_batches([p.content for p in pieces], api_key)
        if len(vectors) != len(pieces):
            raise RuntimeError(f"embedder returned {len(vectors)} vectors for {len(pieces)} chunks")

        chunks = [
            Chunk(
                document_id=doc.id,
                owner_id=doc.owner_id,
                index=p.index,
                content=p.content,
                embedding=v,
                token_count=p.token_count,
                page_number=p.page_number,
            )
            for p, v in zip(pieces, vectors)
        ]
        await self.documents.insert_chunks(chunks)

        ready = doc.transition(
            DocumentStatus.READY,
            page_count=page_count or None,
            word_count=count_words(text),
            language=detect_language(text),
        )
        await self.documents.save_document(ready)
        log.info("document %s ready: %d chunks", doc.id, len(chunks))
        return ready

    async def _start(
        self,
        owner_id: str,
        name: str,
        size_bytes: int,
        mime_type: str,
        tags: Optional[Sequence[str]],
    ) -> Document:
        if not name or not name.strip():
            raise ValidationError("document name is required")
        await self.gateway.check_upload_allowed(owner_id, size_bytes)
        doc = Document(
            owner_id=owner_id,
            name=name.strip(),
            size_bytes=int(size_bytes),
            mime_type=mime_type,
            tags=list(tags or []),
        )
        return await self.documents.save_document(doc)

    async def ingest_text(
        self,
        owner_id: str,
        name: str,
        text: str,
        *,
        size_bytes: Optional[int] = None,
        mime_type: str = "text/plain",
        page_count: int = 0,
        tags: Optional[Sequence[str]] = None,
        api_key: Optional[str] = None,
    ) -> Document:
        size = len((text or "").encode("utf-8")) if size_bytes is None else int(size_bytes)
        doc = await self._start(owner_id, name, size, mime_type, tags)
        try:
            return await self._process(doc, text, page_count, api_key)
        except Exception as e:
            await self._fail(await self._current(doc), e)
            raise

    async def ingest_path(
        self,
        owner_id: str,
        path: str,
        *,
        tags: Optional[Sequence[str]] = None,
        api_key: Optional[str] = None,
    ) -> Document:
        p = Path(path)
        ext = p.suffix.lower().lstrip(".")
        loader = self.loaders.get(ext)
        if loader is None:
            raise ValidationError(f"no loader for extension .{ext} (path={path})")
        if not p.is_file():
            raise NotFoundError(f"file not found: {path}")

        doc = await self._start(owner_id, p.name, p.stat().st_size, "application/octet-stream", tags)
        try:
            loaded = loader.load(str(p))
            doc = replace(doc, mime_type=loaded.mime_type)
            return await self._process(doc, loaded.text, loaded.page_count, api_key)
        except Exception as e:
            await self._fail(await self._current(doc), e)
            raise

    async def _current(self, doc: Document) -> Document:
        stored = await self.documents.get_document(doc.owner_id, doc.id)
        return stored or doc

    async def delete_document(self, owner_id: str, document_id: str) -> int:
        doc = await self.documents.get_document(owner_id, document_id)
        if doc is None:
            raise NotFoundError(f"document {document_id} not found")
        removed = await self.documents.delete_document(owner_id, document_id)
        log.info("deleted document %s with %d chunks", document_id, removed)
        return removed

    async def list_documents(self, owner_id: str) -> List[Document]:
        return await self.documents.list_documents(owner_id)

    async def get_document(self, owner_id: str, document_id: str) -> Document:
        doc = await self.documents.get_document(owner_id, document_id)
        if doc is None:
            raise NotFoundError(f"document {document_id} not found")
        return doc

    async def update_tags(self, owner_id: str, document_id: str, tags: Sequence[str]) -> Document:
        doc = await self.get_document(owner_id, document_id)
        clean = [t.strip() for t in tags if t and t.strip()]
        return await self.documents.save_document(replace(doc, tags=clean))

    async def search_documents(self, owner_id: str, query: str) -> List[Document]:
        """Name substring (case-insensitive) or exact tag match, newest first."""
        q = (query or "").strip()
        if not q:
            return []
        needle = q.lower()
        return [
            d for d in await self.documents.list_documents(owner_id)
            if needle in d.name.lower() or q in d.tags
        ]
