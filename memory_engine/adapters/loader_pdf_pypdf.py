from __future__ import annotations

from pathlib import Path

from memory_engine.domain.rag_models import LoadedDocument
from memory_engine.ports.loaders import DocumentLoader


class PdfLoaderPyPDF(DocumentLoader):
    """Страницы склеиваются через пустую строку, чтобы чанкер мог оценить номер страницы."""

    def load(self, path: str) -> LoadedDocument:
        try:
            from pypdf import PdfReader
        except Exception as e:
            raise RuntimeError("Для PDF нужен пакет pypdf: pip install pypdf") from e

        p = Path(path)
        reader = PdfReader(str(p))
        pages = [(page.extract_text() or "").strip() for page in reader.pages]
        return LoadedDocument(
            source=str(p),
            text="\n\n".join(t for t in pages if t),
            page_count=len(pages),
            mime_type="application/pdf",
        )
