from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, Tuple

from memory_engine.app.settings import AppSettings

from memory_engine.ports.embeddings import EmbeddingProvider
from memory_engine.ports.llm import TextGenerator
from memory_engine.ports.tokens import Tokenizer

from memory_engine.adapters.chunker_token import TokenChunker
from memory_engine.adapters.embedding_cache import EmbeddingCache
from memory_engine.adapters.loader_pdf_pypdf import PdfLoaderPyPDF
from memory_engine.adapters.loader_txt import TxtLoader
from memory_engine.adapters.store_json import JsonStore

from memory_engine.use_cases.background import BackgroundTasks
from memory_engine.use_cases.document_ingestor import DocumentIngestor
from memory_engine.use_cases.embedding_client import EmbeddingClient
from memory_engine.use_cases.extractor import MemoryExtractor
from memory_engine.use_cases.memory_manager import MemoryStore
from memory_engine.use_cases.retrieval import RetrievalOrchestrator
from memory_engine.use_cases.vector_gateway import VectorIndexGateway


@dataclass(frozen=True)
class EngineBundle:
    store: JsonStore
    cache: EmbeddingCache
    embedder: EmbeddingClient
    gateway: VectorIndexGateway
    memories: MemoryStore
    extractor: MemoryExtractor
    ingestor: DocumentIngestor
    orchestrator: RetrievalOrchestrator
    tasks: BackgroundTasks
    tokenizer: Tokenizer


# -----------------------
# Internal shared cache
# -----------------------
_cache_lock = Lock()
_shared: Dict[Tuple[Any, ...], EngineBundle] = {}


def _settings_key(s: AppSettings) -> Tuple[Any, ...]:
    # ScoringPolicy holds a dict, so it goes in by repr
    return (
        s.store_path,
        s.enable_memory,
        s.embedding,
        s.chunks,
        s.search,
        s.quotas,
        s.memory,
        s.retrieval,
        s.extraction,
        repr(s.scoring),
        s.pruning,
    )


def _tokenizer(settings: AppSettings) -> Tokenizer:
    if settings.chunks.tokenizer_backend == "tiktoken":
        from memory_engine.adapters.tokens_tiktoken import TiktokenTokenizer
        return TiktokenTokenizer()
    from memory_engine.adapters.tokens_approx import ApproxTokenizer
    return ApproxTokenizer()


def _provider(settings: AppSettings) -> EmbeddingProvider:
    e = settings.embedding
    if e.backend == "openrouter":
        from memory_engine.adapters.embed_openrouter import OpenRouterEmbeddingProvider
        return OpenRouterEmbeddingProvider(base_url=e.base_url, timeout_s=e.timeout_s)
    if e.backend == "sbert":
        from memory_engine.adapters.embed_sbert import SentenceTransformerEmbeddingProvider
        return SentenceTransformerEmbeddingProvider(model_name=e.sbert_model)
    from memory_engine.adapters.embed_hash import HashingEmbeddingProvider
    return HashingEmbeddingProvider(dim=e.hash_dim)


def _llm(settings: AppSettings) -> TextGenerator:
    if settings.extraction.llm_backend == "openrouter":
        from memory_engine.adapters.llm_openrouter import OpenRouterChatClient
        return OpenRouterChatClient(base_url=settings.embedding.base_url)
    from memory_engine.adapters.llm_mock import ScriptedMockLLM
    return ScriptedMockLLM()


def _build(settings: AppSettings) -> EngineBundle:
    e = settings.embedding
    tokenizer = _tokenizer(settings)

    cache = EmbeddingCache(
        ttl_seconds=e.cache_ttl_s,
        max_entries=e.cache_max_entries,
        key_prefix_chars=e.cache_key_prefix_chars,
    )
    # local backends have a single model, so there is nothing to fall back to
    remote = e.backend == "openrouter"
    embedder = EmbeddingClient(
        provider=_provider(settings),
        dimensions=e.dimensions,
        model=e.model if remote else e.backend,
        fallback_model=e.fallback_model if remote else None,
        max_retries=e.max_retries,
        retry_base_delay=e.retry_base_delay_s,
        batch_size=e.batch_size,
        cache=cache,
    )

    store = JsonStore(settings.store_path)
    gateway = VectorIndexGateway(
        index=store,
        embedder=embedder,
        quotas=settings.quotas,
        search_settings=settings.search,
    )
    memories = MemoryStore(store, settings.memory, settings.pruning)

    x = settings.extraction
    extractor = MemoryExtractor(
        llm=_llm(settings),
        model=x.model,
        min_importance=x.min_importance,
        explicit_importance=x.explicit_importance,
        max_transcript_messages=x.max_transcript_messages,
        max_output_tokens=x.max_output_tokens,
    )

    c = settings.chunks
    chunker = TokenChunker(
        tokenizer=tokenizer,
        chunk_tokens=c.chunk_tokens,
        overlap_tokens=c.overlap_tokens,
        max_chunk_tokens=c.max_chunk_tokens,
    )
    ingestor = DocumentIngestor(
        gateway=gateway,
        documents=store,
        chunker=chunker,
        embedder=embedder,
        loaders={
            "txt": TxtLoader(),
            "md": TxtLoader(),
            "pdf": PdfLoaderPyPDF(),
        },
    )

    tasks = BackgroundTasks()
    orchestrator = RetrievalOrchestrator(
        gateway=gateway,
        memories=memories,
        extractor=extractor,
        embedder=embedder,
        settings=settings.retrieval,
        tasks=tasks,
        scoring=settings.scoring,
    )

    return EngineBundle(
        store=store,
        cache=cache,
        embedder=embedder,
        gateway=gateway,
        memories=memories,
        extractor=extractor,
        ingestor=ingestor,
        orchestrator=orchestrator,
        tasks=tasks,
        tokenizer=tokenizer,
    )


def build_bundle(settings: AppSettings) -> EngineBundle:
    """One bundle per distinct settings per process; the store and cache are shared state."""
    key = _settings_key(settings)
    with _cache_lock:
        bundle = _shared.get(key)
        if bundle is None:
            bundle = _build(settings)
            _shared[key] = bundle
    return bundle


def reset_bundles() -> None:
    with _cache_lock:
        _shared.clear()
