from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Sequence
from uuid import uuid4

Role = Literal["system", "user", "assistant", "tool"]


def utcnow() -> datetime:
    """Всегда timezone-aware UTC."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


@dataclass(frozen=True)
class Message:
    role: Role
    content: str = ""
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_pairs(pairs: Sequence[tuple[str, str]]) -> List["Message"]:
        return [Message(role=r, content=c or "") for r, c in pairs]  # type: ignore[arg-type]


@dataclass(frozen=True)
class ExtractionRequest:
    owner_id: str
    messages: List[Message]
    chat_id: Optional[str] = None
