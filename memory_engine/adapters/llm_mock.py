from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from memory_engine.domain.models import Message
from memory_engine.ports.llm import LLMResponse, TextGenerator


@dataclass
class ScriptedMockLLM(TextGenerator):
    """
    Возвращает первое правило, ключ которого есть в последнем сообщении пользователя, иначе `default`.
    Запоминает каждый полученный промпт. `delay` имитирует медленного провайдера.
    """
    rules: Dict[str, str] = field(default_factory=dict)
    default: str = "[]"
    delay: float = 0.0
    fail_with: Optional[BaseException] = None
    calls: List[List[Message]] = field(default_factory=list)

    async def generate(
        self,
        messages: Sequence[Message],
        *,
        model: str,
        api_key: Optional[str] = None,
        max_output_tokens: int = 256,
    ) -> LLMResponse:
        self.calls.append(list(messages))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with

        last_user: Optional[Message] = next((m for m in reversed(messages) if m.role == "user"), None)
        prompt = (last_user.content if last_user else "").lower()

        for k, v in self.rules.items():
            if k.lower() in prompt:
                return LLMResponse(text=v, usage={"input_tokens": 0, "output_tokens": 0})

        return LLMResponse(text=self.default, usage={"input_tokens": 0, "output_tokens": 0})
