from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic import BaseModel, ValidationError as SchemaError

from memory_engine.adapters.embed_openrouter import parse_json, raise_for_provider_status
from memory_engine.domain.errors import ProviderContractError, ProviderError, ValidationError
from memory_engine.domain.models import Message
from memory_engine.ports.llm import LLMResponse, TextGenerator


class _ChatMessage(BaseModel):
    content: Optional[str] = None


class _ChatChoice(BaseModel):
    message: _ChatMessage


class _ChatUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0


class ChatCompletion(BaseModel):
    choices: List[_ChatChoice]
    usage: _ChatUsage = _ChatUsage()


def _strip_trailing_slash(url: str) -> str:
    return url[:-1] if url.endswith("/") else url


@dataclass
class OpenRouterChatClient(TextGenerator):
    base_url: str = "https://openrouter.ai/api/v1"
    temperature: float = 0.2
    timeout_s: float = 60.0

    client: Optional[httpx.AsyncClient] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.base_url = _strip_trailing_slash(self.base_url)
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=self.timeout_s)

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()

    async def generate(
        self,
        messages: Sequence[Message],
        *,
        model: str,
        api_key: Optional[str],
        max_output_tokens: int,
    ) -> LLMResponse:
        assert self.client is not None
        if not api_key:
            raise ValidationError("an API key is required for text generation")

        payload: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": m.role, "content": (m.content or "")} for m in messages],
            "temperature": float(self.temperature),
            "max_tokens": int(max_output_tokens),
        }

        try:
            r = await self.client.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers={"Authorization": f"Bearer {api_key}"},
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"chat request failed: {e}") from e

        raise_for_provider_status(r)

        try:
            completion = ChatCompletion.model_validate(parse_json(r))
        except SchemaError as e:
            raise ProviderContractError(f"invalid chat completion: {e.error_count()} schema errors") from e
        if not completion.choices:
            raise ProviderContractError("chat completion has no choices")

        text = (completion.choices[0].message.content or "").strip()
        usage = {
            "input_tokens": completion.usage.prompt_tokens,
            "output_tokens": completion.usage.completion_tokens,
        }
        return LLMResponse(text=text, usage=usage)
