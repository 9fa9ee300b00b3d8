from __future__ import annotations

import hashlib
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple


@dataclass(frozen=True)
class CacheStats:
    size: int
    max_size: int
    hits: int
    misses: int


class EmbeddingCache:
    """
    Bounded TTL memoization of text -> vector.

    The key is built from a prefix of the normalized text plus its full length, so
    two different texts that share both collide and get each other's vector. That
    risk is accepted: the cache only ever saves a provider call.

    Construct one per process and pass it to the EmbeddingClient. Concurrent writes
    of the same key are last-writer-wins, which is fine since values are a pure
    function of the key.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        max_entries: int = 100,
        key_prefix_chars: int = 200,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = max(1, int(max_entries))
        self.key_prefix_chars = max(1, int(key_prefix_chars))
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[List[float], float]]" = OrderedDict()
        self._hits = 0
        self._misses = 0

    def key_for(self, text: str) -> str:
        normalized = (text or "").strip().lower()
        digest = hashlib.sha1(normalized[: self.key_prefix_chars].encode("utf-8")).hexdigest()
        return f"{len(normalized)}:{digest}"

    def _expired(self, stored_at: float, now: float) -> bool:
        return now - stored_at > self.ttl_seconds

    def get(self, text: str) -> Optional[List[float]]:
        key = self.key_for(text)
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        vector, stored_at = entry
        if self._expired(stored_at, self._clock()):
            self._entries.pop(key, None)
            self._misses += 1
            return None

        self._hits += 1
        return list(vector)

    def put(self, text: str, vector: List[float]) -> None:
        key = self.key_for(text)
        if key in self._entries:
            # overwrite keeps one slot; refresh insertion order and timestamp
            self._entries.pop(key, None)
        while len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
        self._entries[key] = (list(vector), self._clock())

    def clean_expired(self) -> int:
        now = self._clock()
        stale = [k for k, (_, ts) in list(self._entries.items()) if self._expired(ts, now)]
        for k in stale:
            self._entries.pop(k, None)
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()
        self._hits = 0
        self._misses = 0

    def stats(self) -> CacheStats:
        return CacheStats(size=len(self._entries), max_size=self.max_entries, hits=self._hits, misses=self._misses)

    def __len__(self) -> int:
        return len(self._entries)
