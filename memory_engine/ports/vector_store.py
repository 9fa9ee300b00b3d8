from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from memory_engine.domain.memory_models import MemoryHit, MemoryType
from memory_engine.domain.rag_models import ChunkHit, StorageUsage


@runtime_checkable
class VectorIndex(Protocol):
    """
    Поиск по косинусной близости в персистентном хранилище. Каждый запрос в рамках владельца;
    результаты по убыванию близости, все строго выше порога.
    """

    async def search_chunks(
        self,
        query_vector: Sequence[float],
        owner_id: str,
        *,
        limit: int,
        threshold: float,
        document_ids: Optional[Sequence[str]] = None,
    ) -> list[ChunkHit]:
        ...

    async def search_memories(
        self,
        query_vector: Sequence[float],
        owner_id: str,
        *,
        limit: int,
        threshold: float,
        memory_type: Optional[MemoryType] = None,
        min_importance: float = 0.0,
    ) -> list[MemoryHit]:
        ...

    async def storage_usage(self, owner_id: str) -> StorageUsage:
        ...

    async def count_uploads_since(self, owner_id: str, since: datetime) -> int:
        ...
