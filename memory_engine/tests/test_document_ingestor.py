import asyncio
import tempfile
from pathlib import Path

import pytest

from memory_engine.adapters.chunker_token import TokenChunker
from memory_engine.adapters.embed_hash import HashingEmbeddingProvider
from memory_engine.adapters.loader_txt import TxtLoader
from memory_engine.adapters.store_json import JsonStore
from memory_engine.adapters.tokens_approx import ApproxTokenizer
from memory_engine.domain.errors import DocumentLimitExceeded, NotFoundError, ProviderError, ValidationError
from memory_engine.domain.rag_models import DocumentStatus
from memory_engine.use_cases.document_ingestor import DocumentIngestor, count_words, detect_language
from memory_engine.use_cases.embedding_client import EmbeddingClient
from memory_engine.use_cases.vector_gateway import QuotaSettings, VectorIndexGateway


class FailingProvider:
    async def create_embeddings(self, inputs, *, model, api_key=None):
        raise ProviderError("provider returned 500", status_code=500)


def _ingestor(provider=None, quotas=None):
    store = JsonStore()
    embedder = EmbeddingClient(
        provider=provider or HashingEmbeddingProvider(dim=32),
        dimensions=32,
        model="hash",
        fallback_model=None,
        batch_size=2,
    )
    gateway = VectorIndexGateway(index=store, embedder=embedder, quotas=quotas or QuotaSettings())
    ingestor = DocumentIngestor(
        gateway=gateway,
        documents=store,
        chunker=TokenChunker(tokenizer=ApproxTokenizer(), chunk_tokens=500, overlap_tokens=75),
        embedder=embedder,
        loaders={"txt": TxtLoader(), "md": TxtLoader()},
    )
    return ingestor, store


def _words(n):
    return " ".join(f"w{i}" for i in range(n))


def test_word_count_and_language():
    assert count_words("  one two\nthree  ") == 3
    assert detect_language("") == "en"
    assert detect_language("Quarterly donor report") == "en"
    assert detect_language("Отчёт для доноров") == "multilingual"


def test_three_page_document_becomes_five_ready_chunks():
    ingestor, store = _ingestor()

    async def go():
        doc = await ingestor.ingest_text("u1", "report.pdf", _words(1800), page_count=3, api_key="k")
        chunks = await store.list_chunks("u1", doc.id)
        usage = await store.storage_usage("u1")
        return doc, chunks, usage

    doc, chunks, usage = asyncio.run(go())
    assert doc.status is DocumentStatus.READY
    assert doc.processed_at is not None
    assert (doc.page_count, doc.word_count, doc.language) == (3, 1800, "en")
    assert [c.index for c in chunks] == [0, 1, 2, 3, 4]
    assert all(len(c.embedding) == 32 for c in chunks)
    assert chunks[0].page_number == 1 and chunks[-1].page_number == 3
    assert usage.chunk_count == 5
    assert usage.total_bytes == len(_words(1800).encode("utf-8"))


def test_provider_failure_marks_document_failed_without_chunks():
    ingestor, store = _ingestor(provider=FailingProvider())

    async def go():
        with pytest.raises(ProviderError):
            await ingestor.ingest_text("u1", "notes.txt", _words(50), api_key="k")
        docs = await ingestor.list_documents("u1")
        return docs, await store.list_chunks("u1", docs[0].id), await store.storage_usage("u1")

    docs, chunks, usage = asyncio.run(go())
    assert len(docs) == 1
    assert docs[0].status is DocumentStatus.FAILED
    assert "500" in docs[0].error_message
    assert chunks == []
    assert usage.document_count == 0


def test_empty_text_fails_the_document():
    ingestor, _ = _ingestor()

    async def go():
        with pytest.raises(ValidationError):
            await ingestor.ingest_text("u1", "blank.txt", "   \n ", api_key="k")
        return await ingestor.list_documents("u1")

    docs = asyncio.run(go())
    assert docs[0].status is DocumentStatus.FAILED
    assert docs[0].error_message


def test_quota_is_checked_before_the_document_exists():
    ingestor, _ = _ingestor(quotas=QuotaSettings(max_documents=1))

    async def go():
        first = await ingestor.ingest_text("u1", "a.txt", "first document text", api_key="k")
        with pytest.raises(DocumentLimitExceeded):
            await ingestor.ingest_text("u1", "b.txt", "second document text", api_key="k")
        names = [d.name for d in await ingestor.list_documents("u1")]

        removed = await ingestor.delete_document("u1", first.id)
        again = await ingestor.ingest_text("u1", "b.txt", "second document text", api_key="k")
        return names, removed, again

    names, removed, again = asyncio.run(go())
    assert names == ["a.txt"]
    assert removed == 1
    assert again.status is DocumentStatus.READY


def test_delete_and_get_unknown_document():
    ingestor, _ = _ingestor()
    with pytest.raises(NotFoundError):
        asyncio.run(ingestor.delete_document("u1", "missing"))
    with pytest.raises(NotFoundError):
        asyncio.run(ingestor.get_document("u1", "missing"))


def test_ingest_path_uses_the_loader():
    ingestor, store = _ingestor()
    with tempfile.TemporaryDirectory() as d:
        md = Path(d) / "Board Minutes.md"
        md.write_text("# Minutes\n\nThe board approved the budget.", encoding="utf-8")
        unknown = Path(d) / "deck.pptx"
        unknown.write_bytes(b"binary")

        doc = asyncio.run(ingestor.ingest_path("u1", str(md), tags=["board"], api_key="k"))
        with pytest.raises(ValidationError):
            asyncio.run(ingestor.ingest_path("u1", str(unknown), api_key="k"))
        with pytest.raises(NotFoundError):
            asyncio.run(ingestor.ingest_path("u1", str(Path(d) / "gone.txt"), api_key="k"))

    assert doc.name == "Board Minutes.md"
    assert doc.mime_type == "text/markdown"
    assert doc.status is DocumentStatus.READY
    assert doc.tags == ["board"]
    assert len(asyncio.run(store.list_documents("u1"))) == 1


def test_search_documents_by_name_or_tag_and_update_tags():
    ingestor, _ = _ingestor()

    async def go():
        a = await ingestor.ingest_text("u1", "Annual Report 2024.txt", "annual numbers", tags=["finance"], api_key="k")
        await ingestor.ingest_text("u1", "volunteer-handbook.txt", "how to volunteer", api_key="k")
        by_name = await ingestor.search_documents("u1", "annual")
        by_tag = await ingestor.search_documents("u1", "finance")
        nothing = await ingestor.search_documents("u1", "  ")
        retagged = await ingestor.update_tags("u1", a.id, [" audit ", "", "finance"])
        return by_name, by_tag, nothing, retagged

    by_name, by_tag, nothing, retagged = asyncio.run(go())
    assert [d.name for d in by_name] == ["Annual Report 2024.txt"]
    assert [d.name for d in by_tag] == ["Annual Report 2024.txt"]
    assert nothing == []
    assert retagged.tags == ["audit", "finance"]
