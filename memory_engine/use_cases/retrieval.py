from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from memory_engine.domain.errors import CapacityExceededError
from memory_engine.domain.memory_models import (
    CandidateMemory,
    Memory,
    MemoryHit,
    MemoryMetadata,
    ScoredMemory,
)
from memory_engine.domain.models import ExtractionRequest, Message
from memory_engine.domain.rag_models import ChunkHit
from memory_engine.use_cases.background import BackgroundTasks
from memory_engine.use_cases.embedding_client import EmbeddingClient
from memory_engine.use_cases.extractor import MemoryExtractor
from memory_engine.use_cases.memory_manager import MemoryStore
from memory_engine.use_cases.scorer import DEFAULT_POLICY, ScoringPolicy, importance_score, rank_by_relevance
from memory_engine.use_cases.vector_gateway import ChunkScope, MemoryScope, VectorIndexGateway

log = logging.getLogger(__name__)


class RetrievalState(str, Enum):
    IDLE = "idle"
    EMBEDDING_QUERY = "embedding_query"
    SEARCHING = "searching"
    SCORING = "scoring"
    DONE = "done"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class RetrievalSettings:
    timeout_s: float = 0.2
    auto_inject_count: int = 5
    auto_inject_min_importance: float = 0.3
    similarity_threshold: float = 0.5
    similar_threshold: float = 0.85
    dedup_threshold: float = 0.9
    context_messages: int = 5
    context_max_chars: int = 1000


MEMORY_BLOCK_HEADER = "# User Memory Context"


def format_memories(scored: Sequence[ScoredMemory]) -> str:
    if not scored:
        return ""
    lines = [
        f"{i}. [{s.memory.metadata.category.value.upper()}] {s.memory.content}"
        for i, s in enumerate(scored, start=1)
    ]
    return (
        f"\n{MEMORY_BLOCK_HEADER}\n\n"
        "The following are important facts you should remember about this user:\n\n"
        + "\n".join(lines)
        + "\n\nPlease use these memories to personalize your responses and maintain context across conversations.\n"
    )


def build_conversation_context(messages: Sequence[Message], max_length: int = 1000, last_n: int = 5) -> str:
    if not messages:
        return ""
    text = "\n".join(f"{m.role}: {m.content}" for m in list(messages)[-last_n:])
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


class RetrievalOrchestrator:
    """
    Latency-bounded entry point for the chat handler.

    Retrieval is an enhancement: anything that goes wrong on the inject path
    (timeout, provider, store) degrades to an empty string.
    """

    def __init__(
        self,
        gateway: VectorIndexGateway,
        memories: MemoryStore,
        extractor: MemoryExtractor,
        embedder: EmbeddingClient,
        settings: Optional[RetrievalSettings] = None,
        tasks: Optional[BackgroundTasks] = None,
        scoring: ScoringPolicy = DEFAULT_POLICY,
    ):
        self.gateway = gateway
        self.memories = memories
        self.extractor = extractor
        self.embedder = embedder
        self.settings = settings or RetrievalSettings()
        self.tasks = tasks or BackgroundTasks()
        self.scoring = scoring

    async def retrieve(
        self,
        context: str,
        owner_id: str,
        api_key: Optional[str],
        count: Optional[int] = None,
        min_importance: Optional[float] = None,
        trace: Optional[List[RetrievalState]] = None,
    ) -> List[ScoredMemory]:
        s = self.settings
        trace = trace if trace is not None else [RetrievalState.IDLE]

        trace.append(RetrievalState.EMBEDDING_QUERY)
        vector = await self.embedder.embed_query(context, api_key)

        trace.append(RetrievalState.SEARCHING)
        hits = await self.gateway.search(
            vector,
            owner_id,
            max_results=s.auto_inject_count if count is None else count,
            similarity_threshold=s.similarity_threshold,
            scope=MemoryScope(
                min_importance=s.auto_inject_min_importance if min_importance is None else min_importance,
            ),
        )

        trace.append(RetrievalState.SCORING)
        scored = rank_by_relevance([h for h in hits if isinstance(h, MemoryHit)], self.scoring)

        for item in scored:
            self.tasks.spawn(self.memories.increment_access(item.memory.id), name=f"access:{item.memory.id}")

        trace.append(RetrievalState.DONE)
        return scored

    async def inject_relevant(
        self,
        context: str,
        owner_id: str,
        api_key: Optional[str],
        count: Optional[int] = None,
        min_importance: Optional[float] = None,
        trace: Optional[List[RetrievalState]] = None,
    ) -> str:
        """`trace`, when given, is filled with the states this call went through."""
        trace = trace if trace is not None else [RetrievalState.IDLE]
        if not api_key or not context or not context.strip():
            return ""

        started = time.monotonic()

        # race and ignore: a late result is dropped, the task is cancelled and supervised
        task = asyncio.ensure_future(self.retrieve(context, owner_id, api_key, count, min_importance, trace))
        try:
            done, _ = await asyncio.wait({task}, timeout=self.settings.timeout_s)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task not in done:
            trace.append(RetrievalState.TIMED_OUT)
            task.cancel()
            self.tasks.spawn(task, name="retrieval:timed-out")
            log.info(
                "memory retrieval timed out after %.0fms, continuing without memories",
                (time.monotonic() - started) * 1000,
            )
            return ""

        exc = task.exception()
        if exc is not None:
            log.warning("memory retrieval failed, continuing without memories: %r", exc)
            return ""

        return format_memories(task.result())

    def format_memories(self, scored: Sequence[ScoredMemory]) -> str:
        return format_memories(scored)

    def build_conversation_context(self, messages: Sequence[Message], max_length: Optional[int] = None) -> str:
        s = self.settings
        return build_conversation_context(
            messages,
            max_length=s.context_max_chars if max_length is None else max_length,
            last_n=s.context_messages,
        )

    async def _similar_to_vector(self, vector: Sequence[float], owner_id: str, threshold: float) -> List[MemoryHit]:
        hits = await self.gateway.search(vector, owner_id, max_results=5, similarity_threshold=threshold, scope=MemoryScope())
        return [h for h in hits if isinstance(h, MemoryHit)]

    async def find_similar(
        self,
        content: str,
        owner_id: str,
        api_key: Optional[str],
        threshold: Optional[float] = None,
    ) -> List[MemoryHit]:
        vector = await self.embedder.embed_query(content, api_key)
        t = self.settings.similar_threshold if threshold is None else threshold
        return await self._similar_to_vector(vector, owner_id, t)

    async def exists(self, content: str, owner_id: str, api_key: Optional[str]) -> bool:
        return bool(await self.find_similar(content, owner_id, api_key, self.settings.dedup_threshold))

    async def remember(
        self,
        owner_id: str,
        candidate: CandidateMemory,
        api_key: Optional[str],
        source_chat_id: Optional[str] = None,
    ) -> Optional[Memory]:
        """Dedup, score, embed, create. Returns None when a near-duplicate already exists."""
        vector = await self.embedder.embed_query(candidate.content, api_key)
        if await self._similar_to_vector(vector, owner_id, self.settings.dedup_threshold):
            log.info("skipping duplicate memory for owner=%s", owner_id)
            return None

        metadata = MemoryMetadata(
            category=candidate.category,
            tags=list(candidate.tags),
            context=candidate.context,
            source_chat_id=source_chat_id,
        )
        importance = importance_score(candidate.content, candidate.category, metadata, self.scoring)
        memory_type = "explicit" if candidate.explicit else "auto"

        try:
            return await self.memories.create(owner_id, candidate.content, vector, memory_type, importance, metadata)
        except CapacityExceededError:
            keep = max(0, self.memories.settings.max_memories_per_user - 1)
            removed = await self.memories.prune(owner_id, keep)
            log.info("memory cap reached for owner=%s, pruned %d and retrying", owner_id, removed)
            return await self.memories.create(owner_id, candidate.content, vector, memory_type, importance, metadata)

    async def process_conversation(self, request: ExtractionRequest, api_key: Optional[str]) -> List[Memory]:
        if not api_key:
            return []
        candidates = await self.extractor.extract_all(request, api_key)
        saved: List[Memory] = []
        for c in candidates:
            try:
                m = await self.remember(request.owner_id, c, api_key, request.chat_id)
            except Exception as e:
                log.warning("failed to save extracted memory for owner=%s: %s", request.owner_id, e)
                continue
            if m is not None:
                saved.append(m)
        log.info("extraction for owner=%s: %d candidates, %d saved", request.owner_id, len(candidates), len(saved))
        return saved

    def schedule_extraction(self, request: ExtractionRequest, api_key: Optional[str]) -> "asyncio.Task[object]":
        """Post-response extraction; the caller never waits on it and never sees its errors."""
        return self.tasks.spawn(self.process_conversation(request, api_key), name=f"extract:{request.owner_id}")

    async def search_documents_text(
        self,
        query: str,
        owner_id: str,
        api_key: Optional[str],
        max_results: Optional[int] = None,
        similarity_threshold: Optional[float] = None,
        document_ids: Optional[Sequence[str]] = None,
    ) -> List[ChunkHit]:
        hits = await self.gateway.search_text(
            query,
            owner_id,
            api_key,
            max_results=max_results,
            similarity_threshold=similarity_threshold,
            scope=ChunkScope(document_ids=document_ids),
        )
        return [h for h in hits if isinstance(h, ChunkHit)]

