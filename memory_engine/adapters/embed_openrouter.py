from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence

import httpx
from pydantic import ValidationError as SchemaError

from memory_engine.domain.errors import (
    ProviderContractError,
    ProviderError,
    ProviderRateLimited,
    ValidationError,
)
from memory_engine.ports.embeddings import EmbeddingProvider, EmbeddingResponse


def _strip_trailing_slash(url: str) -> str:
    return url[:-1] if url.endswith("/") else url


def _retry_after(resp: httpx.Response) -> Optional[float]:
    raw = resp.headers.get("retry-after")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def raise_for_provider_status(resp: httpx.Response) -> None:
    """429 is retryable, everything else non-2xx is fatal for this attempt."""
    if resp.is_success:
        return
    detail = resp.text[:300] if resp.content else ""
    if resp.status_code == 429:
        raise ProviderRateLimited(f"rate limited by provider: {detail}", retry_after=_retry_after(resp))
    raise ProviderError(
        f"provider error {resp.status_code} {resp.reason_phrase}: {detail}",
        status_code=resp.status_code,
    )


def parse_json(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError as e:
        raise ProviderContractError(f"provider returned non-JSON body: {e}") from e


@dataclass
class OpenRouterEmbeddingProvider(EmbeddingProvider):
    base_url: str = "https://openrouter.ai/api/v1"
    timeout_s: float = 30.0
    app_title: str = "memory-engine embeddings"
    referer: str = "http://localhost:3000"

    client: Optional[httpx.AsyncClient] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.base_url = _strip_trailing_slash(self.base_url)
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=self.timeout_s)

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json; charset=utf-8",
            "Authorization": f"Bearer {api_key}",
            "HTTP-Referer": self.referer,
            # HTTP headers must stay ASCII
            "X-Title": self.app_title,
        }

    async def create_embeddings(
        self,
        inputs: Sequence[str],
        *,
        model: str,
        api_key: Optional[str],
    ) -> EmbeddingResponse:
        assert self.client is not None
        if not api_key:
            raise ValidationError("an API key is required for embedding generation")

        payload: Dict[str, Any] = {"model": model, "input": list(inputs)}
        try:
            r = await self.client.post(f"{self.base_url}/embeddings", json=payload, headers=self._headers(api_key))
        except httpx.HTTPError as e:
            raise ProviderError(f"embedding request failed: {e}") from e

        raise_for_provider_status(r)
        data = parse_json(r)

        try:
            return EmbeddingResponse.model_validate(data)
        except SchemaError as e:
            raise ProviderContractError(f"invalid embedding response: {e.error_count()} schema errors") from e
