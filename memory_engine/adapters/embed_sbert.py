from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Sequence

from memory_engine.ports.embeddings import EmbeddingItem, EmbeddingProvider, EmbeddingResponse


@dataclass
class SentenceTransformerEmbeddingProvider(EmbeddingProvider):
    """Локальная модель. `model` из вызова игнорируется: один процесс, одна загруженная модель."""
    model_name: str = "sentence-transformers/all-MiniLM-L6-v2"

    def __post_init__(self) -> None:
        from sentence_transformers import SentenceTransformer
        self._model = SentenceTransformer(self.model_name)

    def _encode(self, texts: List[str]) -> List[List[float]]:
        vecs = self._model.encode(texts, normalize_embeddings=True, show_progress_bar=False)
        return [v.tolist() for v in vecs]

    async def create_embeddings(
        self,
        inputs: Sequence[str],
        *,
        model: str,
        api_key: Optional[str] = None,
    ) -> EmbeddingResponse:
        vectors = await asyncio.to_thread(self._encode, list(inputs))
        return EmbeddingResponse(
            data=[EmbeddingItem(embedding=v, index=i) for i, v in enumerate(vectors)],
            model=self.model_name,
        )
