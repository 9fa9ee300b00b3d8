from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional, Sequence

from memory_engine.domain.errors import CapacityExceededError, NotFoundError, ValidationError
from memory_engine.domain.memory_models import Memory, MemoryMetadata, MemoryStats, MemoryType, clamp01
from memory_engine.domain.models import utcnow
from memory_engine.ports.memory_store import MemoryRepository
from memory_engine.use_cases.scorer import (
    DEFAULT_PRUNE_POLICY,
    PrunePolicy,
    days_between,
    prune_order_key,
    should_prune,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class MemorySettings:
    max_memories_per_user: int = 1000
    max_content_length: int = 500
    default_list_limit: int = 50


class MemoryStore:
    """
    Owner-scoped memory CRUD on top of a MemoryRepository, plus the capacity
    cap and the pruning policy.
    """

    def __init__(
        self,
        repo: MemoryRepository,
        settings: Optional[MemorySettings] = None,
        prune_policy: PrunePolicy = DEFAULT_PRUNE_POLICY,
    ):
        self.repo = repo
        self.settings = settings or MemorySettings()
        self.prune_policy = prune_policy

    def _validate_content(self, content: str) -> str:
        text = (content or "").strip()
        if not text:
            raise ValidationError("memory content is empty")
        if len(text) > self.settings.max_content_length:
            raise ValidationError(
                f"memory content is {len(text)} characters; the limit is {self.settings.max_content_length}"
            )
        return text

    async def create(
        self,
        owner_id: str,
        content: str,
        embedding: Sequence[float],
        memory_type: MemoryType = "auto",
        importance: float = 0.5,
        metadata: Optional[MemoryMetadata] = None,
    ) -> Memory:
        text = self._validate_content(content)
        if not embedding:
            raise ValidationError("memory embedding is empty")

        count = await self.repo.count_memories(owner_id)
        cap = self.settings.max_memories_per_user
        if count >= cap:
            raise CapacityExceededError(
                f"memory limit reached; maximum {cap} memories per user",
                limit=cap,
                used=count,
            )

        memory = Memory(
            owner_id=owner_id,
            content=text,
            embedding=list(embedding),
            memory_type=memory_type,
            importance=clamp01(importance),
            metadata=metadata or MemoryMetadata(),
        )
        return await self.repo.insert_memory(memory)

    async def get(self, owner_id: str, memory_id: str) -> Memory:
        memory = await self.repo.get_memory(owner_id, memory_id)
        if memory is None:
            raise NotFoundError(f"memory {memory_id} not found")
        return memory

    async def list(
        self,
        owner_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
        memory_type: Optional[MemoryType] = None,
    ) -> List[Memory]:
        """Newest first."""
        items = await self.repo.list_memories(owner_id, memory_type=memory_type)
        n = self.settings.default_list_limit if limit is None else max(0, int(limit))
        start = max(0, int(offset))
        return items[start: start + n]

    async def stats(self, owner_id: str) -> MemoryStats:
        items = await self.repo.list_memories(owner_id)
        if not items:
            return MemoryStats()
        return MemoryStats(
            total=len(items),
            auto=sum(1 for m in items if m.memory_type == "auto"),
            explicit=sum(1 for m in items if m.memory_type == "explicit"),
            avg_importance=sum(m.importance for m in items) / len(items),
            most_recent=max(m.created_at for m in items),
        )

    async def update(
        self,
        owner_id: str,
        memory_id: str,
        *,
        content: Optional[str] = None,
        importance: Optional[float] = None,
        metadata: Optional[MemoryMetadata] = None,
        embedding: Optional[Sequence[float]] = None,
    ) -> Memory:
        current = await self.get(owner_id, memory_id)
        changes = {"updated_at": utcnow()}
        if content is not None:
            changes["content"] = self._validate_content(content)
        if importance is not None:
            changes["importance"] = clamp01(importance)
        if metadata is not None:
            changes["metadata"] = metadata
        if embedding is not None:
            if not embedding:
                raise ValidationError("memory embedding is empty")
            changes["embedding"] = list(embedding)
        return await self.repo.update_memory(replace(current, **changes))

    async def delete(self, owner_id: str, memory_id: str) -> None:
        removed = await self.repo.delete_memories(owner_id, [memory_id])
        if removed == 0:
            raise NotFoundError(f"memory {memory_id} not found")

    async def delete_all(self, owner_id: str) -> int:
        items = await self.repo.list_memories(owner_id)
        return await self.repo.delete_memories(owner_id, [m.id for m in items])

    async def delete_by_type(self, owner_id: str, memory_type: MemoryType) -> int:
        items = await self.repo.list_memories(owner_id, memory_type=memory_type)
        return await self.repo.delete_memories(owner_id, [m.id for m in items])

    async def prune(self, owner_id: str, keep_count: int) -> int:
        """Keep the top `keep_count` by importance then recency; delete the rest."""
        if keep_count < 0:
            raise ValidationError("keep_count cannot be negative")

        items = await self.repo.list_memories(owner_id)
        if len(items) <= keep_count:
            return 0

        ranked = sorted(items, key=lambda m: prune_order_key(m.importance, m.created_at), reverse=True)
        doomed = [m.id for m in ranked[keep_count:]]
        removed = await self.repo.delete_memories(owner_id, doomed)
        log.info("pruned %d memories for owner=%s (kept %d)", removed, owner_id, keep_count)
        return removed

    async def sweep(self, owner_id: str, now: Optional[datetime] = None) -> int:
        """Scheduled cleanup: drops every memory the prune policy gives up on."""
        now = now or utcnow()
        doomed: List[str] = []
        for m in await self.repo.list_memories(owner_id):
            age = days_between(m.created_at, now)
            idle = days_between(m.last_accessed_at or m.created_at, now)
            if should_prune(m.importance, m.access_count, age, idle, self.prune_policy):
                doomed.append(m.id)
        if not doomed:
            return 0
        removed = await self.repo.delete_memories(owner_id, doomed)
        log.info("swept %d stale memories for owner=%s", removed, owner_id)
        return removed

    async def increment_access(self, memory_id: str) -> None:
        # secondary side effect: must never fail the caller
        try:
            await self.repo.increment_access(memory_id, utcnow())
        except Exception as e:
            log.warning("failed to track memory access for %s: %s", memory_id, e)
