from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from memory_engine.ports.tokens import Tokenizer


@dataclass
class TiktokenTokenizer(Tokenizer):
    """
    Практичная версия для проекта:
    - cl100k_base достаточно близок к токенизации моделей эмбеддингов,
      чтобы чанки не превышали лимит провайдера.
    """
    encoding_name: str = "cl100k_base"

    def __post_init__(self) -> None:
        import tiktoken
        self._enc = tiktoken.get_encoding(self.encoding_name)

    def encode(self, text: str) -> list[int]:
        return self._enc.encode(text or "", disallowed_special=())

    def decode(self, tokens: Sequence[int]) -> str:
        return self._enc.decode(list(tokens))

    def count(self, text: str) -> int:
        return len(self.encode(text))
