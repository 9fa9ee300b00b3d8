from __future__ import annotations

import re
from threading import Lock
from typing import Dict, List, Sequence

from memory_engine.ports.tokens import Tokenizer

# a word together with the whitespace in front of it; trailing whitespace is its own piece
_PIECE_RE = re.compile(r"\s*\S+|\s+")


class ApproxTokenizer(Tokenizer):
    """
    Токенизатор без сети: один токен на слово.
    Без потерь (decode(encode(t)) == t), потому что куски хранят ведущие пробелы.
    """

    def __init__(self) -> None:
        self._ids: Dict[str, int] = {}
        self._pieces: List[str] = []
        self._lock = Lock()

    def _id_for(self, piece: str) -> int:
        tid = self._ids.get(piece)
        if tid is not None:
            return tid
        with self._lock:
            tid = self._ids.get(piece)
            if tid is None:
                tid = len(self._pieces)
                self._pieces.append(piece)
                self._ids[piece] = tid
        return tid

    def encode(self, text: str) -> list[int]:
        return [self._id_for(p) for p in _PIECE_RE.findall(text or "")]

    def decode(self, tokens: Sequence[int]) -> str:
        return "".join(self._pieces[t] for t in tokens)

    def count(self, text: str) -> int:
        return len(_PIECE_RE.findall(text or ""))
