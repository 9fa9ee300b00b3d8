from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from memory_engine.domain.memory_models import Memory, MemoryType


@runtime_checkable
class MemoryRepository(Protocol):
    """Персистентное хранилище воспоминаний, всегда в рамках владельца."""

    async def insert_memory(self, memory: Memory) -> Memory:
        ...

    async def get_memory(self, owner_id: str, memory_id: str) -> Optional[Memory]:
        ...

    async def list_memories(
        self,
        owner_id: str,
        *,
        memory_type: Optional[MemoryType] = None,
    ) -> list[Memory]:
        ...

    async def count_memories(self, owner_id: str) -> int:
        ...

    async def update_memory(self, memory: Memory) -> Memory:
        ...

    async def delete_memories(self, owner_id: str, memory_ids: list[str]) -> int:
        ...

    async def increment_access(self, memory_id: str, accessed_at: datetime) -> None:
        ...
