from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from memory_engine.domain.errors import ValidationError
from memory_engine.domain.rag_models import TextChunk
from memory_engine.ports.chunker import Chunker
from memory_engine.ports.tokens import Tokenizer

_PARAGRAPH_RE = re.compile(r"\n\s*\n")


def estimate_page(start_token: int, total_tokens: int, total_chars: int, page_count: int) -> Optional[int]:
    """
    Linear interpolation of the chunk's character offset over the page count.
    A heuristic with no back-reference to real page breaks: treat it as advisory.
    """
    if page_count <= 0 or total_tokens <= 0 or total_chars <= 0:
        return None
    char_pos = math.floor((start_token / total_tokens) * total_chars)
    page = math.ceil((char_pos / total_chars) * page_count)
    return max(1, min(page, page_count))


@dataclass
class TokenChunker(Chunker):
    tokenizer: Tokenizer
    chunk_tokens: int = 500
    overlap_tokens: int = 75
    max_chunk_tokens: int = 800

    def _validate(self, chunk_tokens: int, overlap_tokens: int) -> None:
        if chunk_tokens <= 0 or chunk_tokens > self.max_chunk_tokens:
            raise ValidationError(
                f"Invalid chunk size: {chunk_tokens}. Must be between 1 and {self.max_chunk_tokens}"
            )
        if overlap_tokens < 0 or overlap_tokens >= chunk_tokens:
            raise ValidationError(
                f"Invalid overlap size: {overlap_tokens}. Must be between 0 and {chunk_tokens - 1}"
            )

    def chunk(
        self,
        text: str,
        page_count: int = 0,
        *,
        chunk_tokens: Optional[int] = None,
        overlap_tokens: Optional[int] = None,
    ) -> List[TextChunk]:
        size = self.chunk_tokens if chunk_tokens is None else int(chunk_tokens)
        overlap = self.overlap_tokens if overlap_tokens is None else int(overlap_tokens)
        self._validate(size, overlap)

        if not text or not text.strip():
            return []

        tokens = self.tokenizer.encode(text)
        total = len(tokens)
        total_chars = len(text)
        step = size - overlap

        chunks: List[TextChunk] = []
        pos = 0
        while pos < total:
            window = tokens[pos: pos + size]
            chunks.append(
                TextChunk(
                    content=self.tokenizer.decode(window).strip(),
                    index=len(chunks),
                    token_count=len(window),
                    start_token=pos,
                    page_number=estimate_page(pos, total, total_chars, page_count),
                )
            )
            pos += step

        return chunks

    def chunk_paragraphs(self, text: str, page_count: int = 0) -> List[TextChunk]:
        """Chunks every blank-line separated paragraph on its own, indices stay global."""
        out: List[TextChunk] = []
        for para in _PARAGRAPH_RE.split(text or ""):
            if not para.strip():
                continue
            for ch in self.chunk(para, page_count):
                out.append(
                    TextChunk(
                        content=ch.content,
                        index=len(out),
                        token_count=ch.token_count,
                        start_token=ch.start_token,
                        page_number=ch.page_number,
                    )
                )
        return out


def chunking_stats(chunks: Sequence[TextChunk]) -> Dict[str, int]:
    if not chunks:
        return {"total_chunks": 0, "total_tokens": 0, "avg_tokens": 0, "min_tokens": 0, "max_tokens": 0}

    counts = [c.token_count for c in chunks]
    total = sum(counts)
    return {
        "total_chunks": len(chunks),
        "total_tokens": total,
        "avg_tokens": round(total / len(chunks)),
        "min_tokens": min(counts),
        "max_tokens": max(counts),
    }
