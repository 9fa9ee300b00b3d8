from __future__ import annotations

import hashlib
import math
import re
from dataclasses import dataclass
from typing import List, Optional
from collections.abc import Sequence

from memory_engine.ports.embeddings import EmbeddingItem, EmbeddingProvider, EmbeddingResponse, EmbeddingUsage

_WORD_RE = re.compile(r"\w+", re.UNICODE)


def _l2_normalize(vec: List[float]) -> List[float]:
    norm = math.sqrt(sum(v * v for v in vec))
    if norm <= 0.0:
        return vec
    return [v / norm for v in vec]


def hash_embed(text: str, dim: int) -> List[float]:
    toks = _WORD_RE.findall((text or "").lower())
    vec = [0.0] * dim
    for t in toks:
        h = hashlib.md5(t.encode("utf-8")).digest()
        idx = int.from_bytes(h[:4], "little") % dim
        sign = 1.0 if (h[4] & 1) == 1 else -1.0
        vec[idx] += sign
    return _l2_normalize(vec)


@dataclass
class HashingEmbeddingProvider(EmbeddingProvider):
    """
    Провайдер без сети: хэшированный мешок слов, L2-нормализованный.
    Тот же текст -> тот же вектор, общие слова -> положительный косинус. Ключ не нужен.
    """
    dim: int = 256

    async def create_embeddings(
        self,
        inputs: Sequence[str],
        *,
        model: str,
        api_key: Optional[str] = None,
    ) -> EmbeddingResponse:
        data = [EmbeddingItem(embedding=hash_embed(t, self.dim), index=i) for i, t in enumerate(inputs)]
        tokens = sum(len(_WORD_RE.findall(t or "")) for t in inputs)
        return EmbeddingResponse(
            data=data,
            model=model,
            usage=EmbeddingUsage(prompt_tokens=tokens, total_tokens=tokens),
        )
