from __future__ import annotations

from typing import Protocol, runtime_checkable

from memory_engine.domain.rag_models import TextChunk


@runtime_checkable
class Chunker(Protocol):
    """Режет полный текст документа на перекрывающиеся окна токенов."""

    def chunk(self, text: str, page_count: int = 0) -> list[TextChunk]:
        ...
