from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable


@runtime_checkable
class Tokenizer(Protocol):
    """
    Обратимая токенизация для чанкера.
    Конвенция: decode(encode(text)) возвращает исходный текст.
    """

    def encode(self, text: str) -> list[int]:
        ...

    def decode(self, tokens: Sequence[int]) -> str:
        ...

    def count(self, text: str) -> int:
        ...
