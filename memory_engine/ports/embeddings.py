from __future__ import annotations

from collections.abc import Sequence
from typing import List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field


class EmbeddingItem(BaseModel):
    embedding: List[float] = Field(min_length=1)
    index: int = Field(ge=0)


class EmbeddingUsage(BaseModel):
    prompt_tokens: int = 0
    total_tokens: int = 0


class EmbeddingResponse(BaseModel):
    """Provider reply: {data: [{embedding, index}], model, usage}."""
    data: List[EmbeddingItem]
    model: Optional[str] = None
    usage: EmbeddingUsage = Field(default_factory=EmbeddingUsage)


@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    One request to the embedding backend. Raises ProviderRateLimited on 429,
    ProviderError on any other failure, ProviderContractError on a bad shape.
    """

    async def create_embeddings(
        self,
        inputs: Sequence[str],
        *,
        model: str,
        api_key: Optional[str],
    ) -> EmbeddingResponse:
        ...
