from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from memory_engine.domain.models import new_id, utcnow

MemoryType = Literal["auto", "explicit"]


class MemoryCategory(str, Enum):
    USER_INFO = "user_info"
    PREFERENCES = "preferences"
    CONTEXT = "context"
    RELATIONSHIPS = "relationships"
    SKILLS = "skills"
    HISTORY = "history"
    FACTS = "facts"
    OTHER = "other"

    @classmethod
    def parse(cls, value: object) -> "MemoryCategory":
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.OTHER


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


@dataclass(frozen=True)
class MemoryMetadata:
    category: MemoryCategory = MemoryCategory.OTHER
    tags: List[str] = field(default_factory=list)
    context: str = ""
    source_chat_id: Optional[str] = None
    original_text: Optional[str] = None


@dataclass(frozen=True)
class Memory:
    owner_id: str
    content: str
    embedding: List[float]
    memory_type: MemoryType = "auto"
    importance: float = 0.5
    metadata: MemoryMetadata = field(default_factory=MemoryMetadata)
    access_count: int = 0
    last_accessed_at: Optional[datetime] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        object.__setattr__(self, "importance", clamp01(self.importance))
        object.__setattr__(self, "access_count", max(0, int(self.access_count)))


@dataclass(frozen=True)
class MemoryHit:
    memory: Memory
    similarity: float


@dataclass(frozen=True)
class ScoredMemory:
    memory: Memory
    similarity: float
    relevance: float


@dataclass(frozen=True)
class CandidateMemory:
    content: str
    importance: float
    category: MemoryCategory = MemoryCategory.OTHER
    tags: List[str] = field(default_factory=list)
    context: str = ""

    @property
    def explicit(self) -> bool:
        return "explicit" in self.tags


@dataclass(frozen=True)
class MemoryStats:
    total: int = 0
    auto: int = 0
    explicit: int = 0
    avg_importance: float = 0.0
    most_recent: Optional[datetime] = None
