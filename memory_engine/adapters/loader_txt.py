from __future__ import annotations

from pathlib import Path

from memory_engine.domain.rag_models import LoadedDocument
from memory_engine.ports.loaders import DocumentLoader

_MIME = {".md": "text/markdown", ".markdown": "text/markdown"}


class TxtLoader(DocumentLoader):
    def load(self, path: str) -> LoadedDocument:
        p = Path(path)
        text = p.read_text(encoding="utf-8", errors="ignore")
        return LoadedDocument(
            source=str(p),
            text=text,
            page_count=1 if text.strip() else 0,
            mime_type=_MIME.get(p.suffix.lower(), "text/plain"),
        )
