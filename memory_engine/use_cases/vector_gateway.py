from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence, Union

from memory_engine.domain.errors import (
    DailyUploadLimitExceeded,
    DocumentLimitExceeded,
    StorageLimitExceeded,
    ValidationError,
)
from memory_engine.domain.memory_models import MemoryHit, MemoryType
from memory_engine.domain.rag_models import ChunkHit, StorageUsage
from memory_engine.ports.vector_store import VectorIndex
from memory_engine.use_cases.embedding_client import EmbeddingClient

log = logging.getLogger(__name__)

MB = 1024 * 1024


@dataclass(frozen=True)
class SearchSettings:
    max_results: int = 5
    similarity_threshold: float = 0.5
    # hard ceiling on any single search, whatever the caller asks for
    max_search_results: int = 20


@dataclass(frozen=True)
class QuotaSettings:
    max_documents: int = 50
    max_storage_bytes: int = 500 * MB
    max_daily_uploads: int = 10
    max_file_bytes: int = 50 * MB


@dataclass(frozen=True)
class ChunkScope:
    """Restrict a search to document chunks, optionally to a subset of documents."""
    document_ids: Optional[Sequence[str]] = None


@dataclass(frozen=True)
class MemoryScope:
    memory_type: Optional[MemoryType] = None
    min_importance: float = 0.0


Scope = Union[ChunkScope, MemoryScope]
Hit = Union[ChunkHit, MemoryHit]


def format_bytes(n: int) -> str:
    if n <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    size = float(n)
    i = 0
    while size >= 1024 and i < len(units) - 1:
        size /= 1024
        i += 1
    return f"{round(size, 2):g} {units[i]}"


def start_of_utc_day(now: datetime) -> datetime:
    now = now if now.tzinfo else now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass
class VectorIndexGateway:
    """
    Owner-scoped similarity search and storage accounting over a VectorIndex.

    The index does the nearest-neighbour work and returns hits in descending
    similarity; the gateway passes that order through untouched.
    """
    index: VectorIndex
    embedder: EmbeddingClient
    quotas: QuotaSettings = field(default_factory=QuotaSettings)
    search_settings: SearchSettings = field(default_factory=SearchSettings)

    def _limit(self, max_results: Optional[int]) -> int:
        n = self.search_settings.max_results if max_results is None else int(max_results)
        return max(0, min(n, self.search_settings.max_search_results))

    async def search(
        self,
        query_vector: Sequence[float],
        owner_id: str,
        max_results: Optional[int] = None,
        similarity_threshold: Optional[float] = None,
        scope: Optional[Scope] = None,
    ) -> List[Hit]:
        if not owner_id:
            raise ValidationError("owner_id is required for search")
        if not query_vector:
            raise ValidationError("query vector is empty")

        limit = self._limit(max_results)
        threshold = self.search_settings.similarity_threshold if similarity_threshold is None else float(similarity_threshold)
        if limit == 0:
            return []

        if isinstance(scope, MemoryScope):
            hits: List[Hit] = list(await self.index.search_memories(
                query_vector,
                owner_id,
                limit=limit,
                threshold=threshold,
                memory_type=scope.memory_type,
                min_importance=scope.min_importance,
            ))
        else:
            document_ids = scope.document_ids if isinstance(scope, ChunkScope) else None
            hits = list(await self.index.search_chunks(
                query_vector,
                owner_id,
                limit=limit,
                threshold=threshold,
                document_ids=document_ids,
            ))

        log.debug("search owner=%s scope=%s hits=%d", owner_id, type(scope).__name__, len(hits))
        return hits

    async def search_text(
        self,
        query: str,
        owner_id: str,
        api_key: Optional[str],
        max_results: Optional[int] = None,
        similarity_threshold: Optional[float] = None,
        scope: Optional[Scope] = None,
    ) -> List[Hit]:
        vector = await self.embedder.embed_query(query, api_key)
        return await self.search(vector, owner_id, max_results, similarity_threshold, scope)

    async def storage_usage(self, owner_id: str) -> StorageUsage:
        return await self.index.storage_usage(owner_id)

    async def check_upload_allowed(self, owner_id: str, size_bytes: int, now: Optional[datetime] = None) -> StorageUsage:
        """
        Raises the QuotaExceededError subtype naming the first limit the upload
        would break. Returns the usage it checked against.
        """
        q = self.quotas
        if size_bytes < 0:
            raise ValidationError("file size cannot be negative")
        if size_bytes > q.max_file_bytes:
            raise ValidationError(
                f"file is too large ({format_bytes(size_bytes)}); the limit is {format_bytes(q.max_file_bytes)}"
            )

        usage = await self.index.storage_usage(owner_id)

        if usage.document_count >= q.max_documents:
            raise DocumentLimitExceeded(
                f"document limit reached ({q.max_documents} documents)",
                limit=q.max_documents,
                used=usage.document_count,
            )

        if usage.total_bytes + size_bytes > q.max_storage_bytes:
            raise StorageLimitExceeded(
                f"storage limit would be exceeded: {format_bytes(usage.total_bytes)} used of "
                f"{format_bytes(q.max_storage_bytes)}",
                limit=q.max_storage_bytes,
                used=usage.total_bytes,
            )

        since = start_of_utc_day(now or datetime.now(timezone.utc))
        uploads = await self.index.count_uploads_since(owner_id, since)
        if uploads >= q.max_daily_uploads:
            raise DailyUploadLimitExceeded(
                f"daily upload limit reached ({q.max_daily_uploads} per day)",
                limit=q.max_daily_uploads,
                used=uploads,
            )

        return usage

    def remaining_storage(self, used_bytes: int) -> int:
        return max(0, self.quotas.max_storage_bytes - used_bytes)

    def storage_percentage(self, used_bytes: int) -> float:
        if self.quotas.max_storage_bytes <= 0:
            return 100.0
        return min(100.0, used_bytes / self.quotas.max_storage_bytes * 100.0)

    def resets_at(self, now: Optional[datetime] = None) -> datetime:
        """When the daily upload counter starts over."""
        return start_of_utc_day(now or datetime.now(timezone.utc)) + timedelta(days=1)
