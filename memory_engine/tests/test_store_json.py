import asyncio
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from memory_engine.adapters.store_json import JsonStore, cosine, deserialize_vector, serialize_vector
from memory_engine.domain.errors import ValidationError
from memory_engine.domain.memory_models import Memory, MemoryCategory, MemoryMetadata
from memory_engine.domain.rag_models import Chunk, Document, DocumentStatus


def _ready_doc(owner="u1", name="plan.txt", size=100):
    doc = Document(owner_id=owner, name=name, size_bytes=size)
    return doc.transition(DocumentStatus.PROCESSING).transition(DocumentStatus.READY)


def test_vector_serialization_and_cosine():
    raw = serialize_vector([0.5, -1.0, 2.0])
    assert raw.startswith("[") and raw.endswith("]")
    assert deserialize_vector(raw) == [0.5, -1.0, 2.0]
    assert abs(cosine([1.0, 0.0], [1.0, 0.0]) - 1.0) < 1e-9
    assert cosine([1.0, 0.0], [0.0, 1.0]) == 0.0
    assert cosine([1.0], [1.0, 0.0]) == 0.0
    assert cosine([0.0, 0.0], [1.0, 0.0]) == 0.0


def test_memories_persist_across_instances():
    with tempfile.TemporaryDirectory() as d:
        path = str(Path(d) / "store.json")
        store = JsonStore(path)
        m = Memory(
            owner_id="u1",
            content="Prefers email",
            embedding=[1.0, 0.0],
            memory_type="explicit",
            importance=0.8,
            metadata=MemoryMetadata(category=MemoryCategory.PREFERENCES, tags=["explicit"], source_chat_id="c1"),
        )
        asyncio.run(store.insert_memory(m))

        again = JsonStore(path)
        got = asyncio.run(again.get_memory("u1", m.id))
        assert got == m
        assert asyncio.run(again.get_memory("someone-else", m.id)) is None


def test_search_memories_filters_and_orders():
    store = JsonStore()

    async def go():
        await store.insert_memory(Memory(owner_id="u1", content="close", embedding=[1.0, 0.1], importance=0.9))
        await store.insert_memory(Memory(owner_id="u1", content="exact", embedding=[1.0, 0.0], importance=0.2))
        await store.insert_memory(Memory(owner_id="u1", content="far", embedding=[0.0, 1.0], importance=0.9))
        await store.insert_memory(Memory(owner_id="u2", content="foreign", embedding=[1.0, 0.0], importance=0.9))
        await store.insert_memory(Memory(owner_id="u1", content="other dim", embedding=[1.0, 0.0, 0.0], importance=0.9))

        all_hits = await store.search_memories([1.0, 0.0], "u1", limit=10, threshold=0.5)
        important = await store.search_memories([1.0, 0.0], "u1", limit=10, threshold=0.5, min_importance=0.5)
        exact_only = await store.search_memories([1.0, 0.0], "u1", limit=10, threshold=0.999999)
        return all_hits, important, exact_only

    all_hits, important, exact_only = asyncio.run(go())
    assert [h.memory.content for h in all_hits] == ["exact", "close"]
    assert all_hits[0].similarity >= all_hits[1].similarity
    assert [h.memory.content for h in important] == ["close"]
    assert [h.memory.content for h in exact_only] == ["exact"]


def test_chunk_search_only_sees_ready_documents():
    store = JsonStore()

    async def go():
        ready = await store.save_document(_ready_doc(name="ready.txt"))
        pending = await store.save_document(Document(owner_id="u1", name="pending.txt", size_bytes=5))
        await store.insert_chunks([
            Chunk(document_id=ready.id, owner_id="u1", index=0, content="r0", embedding=[1.0, 0.0], token_count=1),
            Chunk(document_id=ready.id, owner_id="u1", index=1, content="r1", embedding=[0.9, 0.3], token_count=1),
        ])
        await store.insert_chunks([
            Chunk(document_id=pending.id, owner_id="u1", index=0, content="p0", embedding=[1.0, 0.0], token_count=1),
        ])
        hits = await store.search_chunks([1.0, 0.0], "u1", limit=5, threshold=0.1)
        scoped = await store.search_chunks([1.0, 0.0], "u1", limit=5, threshold=0.1, document_ids=["nope"])
        return ready, hits, scoped

    ready, hits, scoped = asyncio.run(go())
    assert [h.chunk.content for h in hits] == ["r0", "r1"]
    assert all(h.document_name == "ready.txt" for h in hits)
    assert scoped == []


def test_insert_chunks_is_all_or_nothing():
    store = JsonStore()
    doc = _ready_doc()

    async def go():
        await store.save_document(doc)
        await store.insert_chunks([Chunk(document_id=doc.id, owner_id="u1", index=0, content="a", embedding=[1.0], token_count=1)])
        with pytest.raises(ValidationError):
            await store.insert_chunks([
                Chunk(document_id=doc.id, owner_id="u1", index=1, content="b", embedding=[1.0], token_count=1),
                Chunk(document_id=doc.id, owner_id="u1", index=0, content="dup", embedding=[1.0], token_count=1),
            ])
        return await store.list_chunks("u1", doc.id)

    chunks = asyncio.run(go())
    assert [c.content for c in chunks] == ["a"]


def test_usage_excludes_failed_and_delete_cascades():
    store = JsonStore()

    async def go():
        kept = await store.save_document(_ready_doc(size=300))
        failed = Document(owner_id="u1", name="bad.pdf", size_bytes=999).transition(
            DocumentStatus.FAILED, error_message="parse error"
        )
        await store.save_document(failed)
        await store.insert_chunks([
            Chunk(document_id=kept.id, owner_id="u1", index=i, content=str(i), embedding=[1.0], token_count=1)
            for i in range(3)
        ])
        before = await store.storage_usage("u1")
        removed = await store.delete_document("u1", kept.id)
        after = await store.storage_usage("u1")
        return before, removed, after

    before, removed, after = asyncio.run(go())
    assert (before.document_count, before.total_bytes, before.chunk_count) == (1, 300, 3)
    assert removed == 3
    assert (after.document_count, after.total_bytes, after.chunk_count) == (0, 0, 0)


def test_count_uploads_since_and_increment_access():
    store = JsonStore()
    now = datetime.now(timezone.utc)

    async def go():
        await store.save_document(Document(owner_id="u1", name="old", size_bytes=1, created_at=now - timedelta(days=2)))
        await store.save_document(Document(owner_id="u1", name="new", size_bytes=1, created_at=now))
        n = await store.count_uploads_since("u1", now - timedelta(hours=1))

        m = await store.insert_memory(Memory(owner_id="u1", content="x", embedding=[1.0]))
        await store.increment_access(m.id, now)
        await store.increment_access(m.id, now)
        return n, await store.get_memory("u1", m.id)

    n, m = asyncio.run(go())
    assert n == 1
    assert m.access_count == 2
    assert m.last_accessed_at == now
