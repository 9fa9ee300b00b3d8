import asyncio
import time

from memory_engine.adapters.embed_hash import HashingEmbeddingProvider
from memory_engine.adapters.llm_mock import ScriptedMockLLM
from memory_engine.adapters.store_json import JsonStore
from memory_engine.domain.errors import ProviderError
from memory_engine.domain.memory_models import CandidateMemory, MemoryCategory, MemoryMetadata
from memory_engine.domain.models import ExtractionRequest, Message
from memory_engine.use_cases.background import BackgroundTasks
from memory_engine.use_cases.embedding_client import EmbeddingClient
from memory_engine.use_cases.extractor import MemoryExtractor
from memory_engine.use_cases.memory_manager import MemorySettings, MemoryStore
from memory_engine.use_cases.retrieval import (
    MEMORY_BLOCK_HEADER,
    RetrievalOrchestrator,
    RetrievalSettings,
    RetrievalState,
    build_conversation_context,
)
from memory_engine.use_cases.vector_gateway import VectorIndexGateway


class HangingProvider:
    async def create_embeddings(self, inputs, *, model, api_key=None):
        await asyncio.Event().wait()


class BrokenProvider:
    async def create_embeddings(self, inputs, *, model, api_key=None):
        raise ProviderError("upstream unavailable", status_code=503)


class ExplodingExtractor:
    async def extract_all(self, request, api_key):
        raise RuntimeError("extractor crashed")


def _engine(provider=None, llm=None, cap=1000, timeout_s=0.2, extractor=None):
    store = JsonStore()
    embedder = EmbeddingClient(provider=provider or HashingEmbeddingProvider(dim=256), model="hash", fallback_model=None)
    gateway = VectorIndexGateway(index=store, embedder=embedder)
    memories = MemoryStore(store, MemorySettings(max_memories_per_user=cap))
    orch = RetrievalOrchestrator(
        gateway=gateway,
        memories=memories,
        extractor=extractor or MemoryExtractor(llm=llm or ScriptedMockLLM()),
        embedder=embedder,
        settings=RetrievalSettings(timeout_s=timeout_s),
        tasks=BackgroundTasks(),
    )
    return orch, store


def _candidate(text, tags=()):
    return CandidateMemory(content=text, importance=0.7, category=MemoryCategory.CONTEXT, tags=list(tags))


def test_conversation_context_takes_last_messages_and_truncates():
    msgs = Message.from_pairs([("user", f"m{i}") for i in range(7)])
    assert build_conversation_context(msgs) == "\n".join(f"user: m{i}" for i in range(2, 7))
    assert build_conversation_context(msgs, max_length=10) == "user: m2\nu..."
    assert build_conversation_context([]) == ""


def test_inject_without_key_or_context_is_empty():
    orch, _ = _engine()
    assert asyncio.run(orch.inject_relevant("anything", "u1", None)) == ""
    assert asyncio.run(orch.inject_relevant("   ", "u1", "k")) == ""


def test_inject_formats_relevant_important_memories():
    orch, store = _engine()

    async def go():
        fact = "prefers email updates about grants"
        vec = await orch.embedder.embed_query(fact, "k")
        kept = await orch.memories.create(
            "u1", fact, vec, "explicit", 0.9, MemoryMetadata(category=MemoryCategory.PREFERENCES)
        )
        await orch.memories.create("u1", "prefers email updates about grants too", vec, "auto", 0.1)
        other = await orch.embedder.embed_query("office dog is called biscuit", "k")
        await orch.memories.create("u1", "office dog is called biscuit", other, "auto", 0.9)

        trace = [RetrievalState.IDLE]
        block = await orch.inject_relevant(fact, "u1", "k", trace=trace)
        await orch.tasks.drain(timeout=1.0)
        return kept, block, trace, await store.get_memory("u1", kept.id)

    kept, block, trace, after = asyncio.run(go())
    assert MEMORY_BLOCK_HEADER in block
    assert "1. [PREFERENCES] prefers email updates about grants\n" in block
    assert "too" not in block
    assert "biscuit" not in block
    assert trace == [
        RetrievalState.IDLE,
        RetrievalState.EMBEDDING_QUERY,
        RetrievalState.SEARCHING,
        RetrievalState.SCORING,
        RetrievalState.DONE,
    ]
    assert after.access_count == 1


def test_inject_gives_up_after_the_timeout():
    orch, _ = _engine(provider=HangingProvider(), timeout_s=0.05)
    trace = [RetrievalState.IDLE]

    async def go():
        started = time.monotonic()
        block = await orch.inject_relevant("what did we decide about the gala", "u1", "k", trace=trace)
        return block, time.monotonic() - started

    block, elapsed = asyncio.run(go())
    assert block == ""
    assert elapsed < 1.0
    assert trace[-1] is RetrievalState.TIMED_OUT
    assert RetrievalState.DONE not in trace


class SlowOrBrokenProvider:
    """Fails for texts mentioning "broken", answers the rest after a short delay."""

    def __init__(self):
        self.inner = HashingEmbeddingProvider(dim=256)

    async def create_embeddings(self, inputs, *, model, api_key=None):
        if any("broken" in t for t in inputs):
            await asyncio.sleep(0.01)
            raise ProviderError("upstream unavailable", status_code=503)
        await asyncio.sleep(0.03)
        return await self.inner.create_embeddings(inputs, model=model, api_key=api_key)


def test_concurrent_injections_keep_their_own_trace():
    orch, _ = _engine(provider=SlowOrBrokenProvider(), timeout_s=1.0)
    ok_trace = [RetrievalState.IDLE]
    bad_trace = [RetrievalState.IDLE]

    async def go():
        return await asyncio.gather(
            orch.inject_relevant("grant deadlines", "u1", "k", trace=ok_trace),
            orch.inject_relevant("broken request", "u2", "k", trace=bad_trace),
        )

    assert asyncio.run(go()) == ["", ""]
    assert ok_trace == [
        RetrievalState.IDLE,
        RetrievalState.EMBEDDING_QUERY,
        RetrievalState.SEARCHING,
        RetrievalState.SCORING,
        RetrievalState.DONE,
    ]
    assert bad_trace == [RetrievalState.IDLE, RetrievalState.EMBEDDING_QUERY]


def test_inject_timeout_holds_with_a_full_store_of_large_vectors():
    orch, _ = _engine(provider=HashingEmbeddingProvider(dim=1536), cap=1000, timeout_s=0.05)
    query = "what about grants"
    trace = [RetrievalState.IDLE]

    async def go():
        vec = await orch.embedder.embed_query(query, "k")
        for i in range(1000):
            await orch.memories.create("u1", f"grant note number {i}", vec, "auto", 0.9)
        started = time.monotonic()
        block = await orch.inject_relevant(query, "u1", "k", trace=trace)
        return block, time.monotonic() - started

    block, elapsed = asyncio.run(go())
    assert block == ""
    assert elapsed < 0.3
    assert trace[-1] is RetrievalState.TIMED_OUT


def test_inject_swallows_provider_failures():
    orch, _ = _engine(provider=BrokenProvider())
    trace = [RetrievalState.IDLE]
    assert asyncio.run(orch.inject_relevant("grant status", "u1", "k", trace=trace)) == ""
    assert RetrievalState.DONE not in trace


def test_remember_skips_near_duplicates():
    orch, _ = _engine()

    async def go():
        first = await orch.remember("u1", _candidate("board meets every second tuesday"), "k", "chat-1")
        second = await orch.remember("u1", _candidate("Board meets every second Tuesday."), "k")
        exists = await orch.exists("board meets every second tuesday", "u1", "k")
        return first, second, exists, await orch.memories.stats("u1")

    first, second, exists, stats = asyncio.run(go())
    assert first is not None
    assert first.metadata.source_chat_id == "chat-1"
    assert first.memory_type == "auto"
    assert second is None
    assert exists is True
    assert stats.total == 1


def test_remember_prunes_when_the_cap_is_reached():
    orch, _ = _engine(cap=2)

    async def go():
        await orch.remember("u1", _candidate("alpha bravo charlie"), "k")
        await orch.remember("u1", _candidate("delta echo foxtrot"), "k")
        third = await orch.remember("u1", _candidate("golf hotel india", tags=["explicit"]), "k")
        return third, await orch.memories.list("u1")

    third, left = asyncio.run(go())
    assert third is not None
    assert third.memory_type == "explicit"
    assert len(left) == 2
    assert third.id in {m.id for m in left}


def test_process_conversation_saves_explicit_and_extracted_memories():
    llm = ScriptedMockLLM(
        default='Sure: [{"content": "Runs a food bank in Ohio", "importance": 0.8, "category": "user_info", "tags": ["org"]},'
        ' {"content": "said hi", "importance": 0.1}]'
    )
    orch, _ = _engine(llm=llm)
    request = ExtractionRequest(
        owner_id="u1",
        chat_id="chat-9",
        messages=Message.from_pairs([
            ("user", "remember that our fiscal year starts in July"),
            ("assistant", "Noted, fiscal year starts in July."),
        ]),
    )

    saved = asyncio.run(orch.process_conversation(request, "k"))
    contents = {m.content: m for m in saved}
    assert set(contents) == {"our fiscal year starts in July", "Runs a food bank in Ohio"}
    assert contents["our fiscal year starts in July"].memory_type == "explicit"
    assert contents["Runs a food bank in Ohio"].memory_type == "auto"
    assert all(m.metadata.source_chat_id == "chat-9" for m in saved)
    assert len(llm.calls) == 1

    assert asyncio.run(orch.process_conversation(request, None)) == []


def test_scheduled_extraction_runs_in_the_background():
    llm = ScriptedMockLLM(default='[{"content": "Works with 40 volunteers", "importance": 0.7}]', delay=0.01)
    orch, _ = _engine(llm=llm)
    request = ExtractionRequest(owner_id="u1", messages=Message.from_pairs([("user", "we have about 40 volunteers")]))

    async def go():
        task = orch.schedule_extraction(request, "k")
        pending = not task.done()
        await orch.tasks.drain(timeout=2.0)
        return pending, await orch.memories.list("u1")

    pending, memories = asyncio.run(go())
    assert pending
    assert [m.content for m in memories] == ["Works with 40 volunteers"]


def test_background_failure_never_reaches_the_caller():
    orch, _ = _engine(extractor=ExplodingExtractor())
    request = ExtractionRequest(owner_id="u1", messages=Message.from_pairs([("user", "hello there")]))

    async def go():
        task = orch.schedule_extraction(request, "k")
        await orch.tasks.drain(timeout=1.0)
        return task

    task = asyncio.run(go())
    assert task.done()
    assert isinstance(task.exception(), RuntimeError)
