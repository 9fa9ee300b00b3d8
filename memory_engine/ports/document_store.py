from __future__ import annotations

from collections.abc import Sequence
from typing import Optional, Protocol, runtime_checkable

from memory_engine.domain.rag_models import Chunk, Document


@runtime_checkable
class DocumentRepository(Protocol):
    """Персистентное хранилище документов и их чанков."""

    async def save_document(self, document: Document) -> Document:
        ...

    async def get_document(self, owner_id: str, document_id: str) -> Optional[Document]:
        ...

    async def list_documents(self, owner_id: str) -> list[Document]:
        ...

    async def insert_chunks(self, chunks: Sequence[Chunk]) -> int:
        """Вставка всё-или-ничего."""
        ...

    async def list_chunks(self, owner_id: str, document_id: str) -> list[Chunk]:
        ...

    async def delete_document(self, owner_id: str, document_id: str) -> int:
        """Удаляет документ вместе с чанками, возвращает число удалённых чанков."""
        ...
