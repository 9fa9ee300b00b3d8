from __future__ import annotations

from typing import Protocol, runtime_checkable

from memory_engine.domain.rag_models import LoadedDocument


@runtime_checkable
class DocumentLoader(Protocol):
    """Загрузка документа: полный текст и число страниц (1 для txt)."""

    def load(self, path: str) -> LoadedDocument:
        ...
