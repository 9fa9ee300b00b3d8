from __future__ import annotations

import asyncio
import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence

from memory_engine.adapters.embedding_cache import EmbeddingCache
from memory_engine.domain.errors import (
    ProviderContractError,
    ProviderExhaustedError,
    ProviderRateLimited,
    ValidationError,
)
from memory_engine.ports.embeddings import EmbeddingProvider, EmbeddingResponse

log = logging.getLogger(__name__)

EMPTY_PLACEHOLDER = "[empty content]"

# C0, DEL and C1 control characters become spaces; unpaired surrogates are dropped
_CONTROL_RE = re.compile(r"[\u0000-\u001f\u007f-\u009f]")
_SURROGATE_RE = re.compile(r"[\ud800-\udfff]")
_WS_RE = re.compile(r"\s+")


def sanitize(text: str) -> str:
    if not text:
        return ""
    s = unicodedata.normalize("NFC", text)
    s = _CONTROL_RE.sub(" ", s)
    s = _SURROGATE_RE.sub("", s)
    return _WS_RE.sub(" ", s).strip()


def truncate_vector(vector: Sequence[float], dimensions: int) -> List[float]:
    """
    Matryoshka truncation: keep the leading prefix. Only meaningful for model
    families trained for it (gemini-embedding, text-embedding-3-*).
    """
    if dimensions <= 0 or len(vector) <= dimensions:
        return list(vector)
    return list(vector[:dimensions])


@dataclass(frozen=True)
class EmbeddingResult:
    embedding: List[float]
    model: str
    total_tokens: int = 0


@dataclass
class EmbeddingClient:
    provider: EmbeddingProvider
    dimensions: int = 1536
    model: str = "google/gemini-embedding-001"
    fallback_model: Optional[str] = "openai/text-embedding-3-large"
    max_retries: int = 3
    retry_base_delay: float = 1.0
    batch_size: int = 100
    cache: Optional[EmbeddingCache] = None
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    async def _request(self, inputs: List[str], model: str, api_key: Optional[str]) -> EmbeddingResponse:
        attempts = max(1, int(self.max_retries))
        last: Optional[ProviderRateLimited] = None

        for attempt in range(attempts):
            try:
                return await self.provider.create_embeddings(inputs, model=model, api_key=api_key)
            except ProviderRateLimited as e:
                last = e
                if attempt + 1 >= attempts:
                    break
                delay = self.retry_base_delay * (2 ** attempt)
                if e.retry_after is not None:
                    # the provider asked for a longer pause than our backoff
                    delay = max(delay, e.retry_after)
                log.warning(
                    "embedding rate limited (model=%s), retrying in %.2fs (attempt %d/%d)",
                    model, delay, attempt + 1, attempts,
                )
                await self.sleep(delay)

        raise ProviderExhaustedError(
            f"embedding failed after {attempts} attempts: {last}",
            last_error=last,
        )

    def _vectors(self, resp: EmbeddingResponse, expected: int) -> List[List[float]]:
        if len(resp.data) != expected:
            raise ProviderContractError(f"embedding count mismatch: expected {expected}, got {len(resp.data)}")

        items = sorted(resp.data, key=lambda it: it.index)
        if [it.index for it in items] != list(range(expected)):
            raise ProviderContractError("embedding indices are not a permutation of the request order")

        return [truncate_vector(it.embedding, self.dimensions) for it in items]

    async def embed(self, text: str, api_key: Optional[str], model: Optional[str] = None) -> EmbeddingResult:
        clean = sanitize(text)
        if not clean:
            raise ValidationError("cannot generate an embedding for empty text")

        use_model = model or self.model
        resp = await self._request([clean], use_model, api_key)
        vector = self._vectors(resp, 1)[0]
        return EmbeddingResult(
            embedding=vector,
            model=resp.model or use_model,
            total_tokens=resp.usage.total_tokens,
        )

    async def embed_batch(
        self,
        texts: Sequence[str],
        api_key: Optional[str],
        model: Optional[str] = None,
    ) -> List[List[float]]:
        if not texts:
            return []

        # never drop entries: output index i must belong to input index i
        cleaned = [sanitize(t) or EMPTY_PLACEHOLDER for t in texts]
        if all(c == EMPTY_PLACEHOLDER for c in cleaned):
            raise ValidationError("all texts are empty after sanitization")

        resp = await self._request(cleaned, model or self.model, api_key)
        return self._vectors(resp, len(cleaned))

    async def embed_with_fallback(self, text: str, api_key: Optional[str]) -> EmbeddingResult:
        try:
            return await self.embed(text, api_key, self.model)
        except ValidationError:
            raise
        except Exception as e:
            if not self.fallback_model:
                raise
            log.warning("embedding model %s failed (%s), falling back to %s", self.model, e, self.fallback_model)
            return await self.embed(text, api_key, self.fallback_model)

    async def embed_batch_with_fallback(self, texts: Sequence[str], api_key: Optional[str]) -> List[List[float]]:
        try:
            return await self.embed_batch(texts, api_key, self.model)
        except ValidationError:
            raise
        except Exception as e:
            if not self.fallback_model:
                raise
            log.warning("batch embedding with %s failed (%s), falling back to %s", self.model, e, self.fallback_model)
            return await self.embed_batch(texts, api_key, self.fallback_model)

    async def embed_in_batches(
        self,
        texts: Sequence[str],
        api_key: Optional[str],
        batch_size: Optional[int] = None,
    ) -> List[List[float]]:
        size = max(1, int(batch_size or self.batch_size))
        total = (len(texts) + size - 1) // size
        out: List[List[float]] = []
        for n, start in enumerate(range(0, len(texts), size), start=1):
            batch = list(texts[start: start + size])
            log.info("embedding batch %d/%d (%d texts)", n, total, len(batch))
            out.extend(await self.embed_batch_with_fallback(batch, api_key))
        return out

    async def embed_query(self, text: str, api_key: Optional[str]) -> List[float]:
        """Single embedding through the cache. Used on the latency-sensitive path."""
        if self.cache is not None:
            cached = self.cache.get(text)
            if cached is not None:
                return cached

        result = await self.embed_with_fallback(text, api_key)
        if self.cache is not None:
            self.cache.put(text, result.embedding)
        return result.embedding
