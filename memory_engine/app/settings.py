from __future__ import annotations

import os
from dataclasses import dataclass, field

from memory_engine.use_cases.memory_manager import MemorySettings
from memory_engine.use_cases.retrieval import RetrievalSettings
from memory_engine.use_cases.scorer import PrunePolicy, ScoringPolicy
from memory_engine.use_cases.vector_gateway import MB, QuotaSettings, SearchSettings


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    try:
        return int(v)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    try:
        return float(v)
    except Exception:
        return default


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return default if v is None or v.strip() == "" else v


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_choice(name: str, default: str, allowed: set[str]) -> str:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    val = v.strip().lower()
    return val if val in allowed else default


@dataclass(frozen=True)
class EmbeddingSettings:
    backend: str = "hash"  # hash | sbert | openrouter
    model: str = "google/gemini-embedding-001"
    fallback_model: str = "openai/text-embedding-3-large"
    dimensions: int = 1536
    max_retries: int = 3
    retry_base_delay_s: float = 1.0
    batch_size: int = 100
    base_url: str = "https://openrouter.ai/api/v1"
    timeout_s: float = 30.0
    sbert_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    hash_dim: int = 256

    cache_ttl_s: float = 3600.0
    cache_max_entries: int = 100
    cache_key_prefix_chars: int = 200


@dataclass(frozen=True)
class ChunkSettings:
    tokenizer_backend: str = "approx"  # approx | tiktoken
    chunk_tokens: int = 500
    overlap_tokens: int = 75
    max_chunk_tokens: int = 800


@dataclass(frozen=True)
class ExtractionSettings:
    llm_backend: str = "mock"  # mock | openrouter
    model: str = "openai/gpt-4o-mini"
    min_importance: float = 0.4
    explicit_importance: float = 0.9
    max_transcript_messages: int = 20
    max_output_tokens: int = 2000


@dataclass(frozen=True)
class AppSettings:
    store_path: str = "./data/memory_engine.json"
    api_key: str = ""
    enable_memory: bool = True

    embedding: EmbeddingSettings = EmbeddingSettings()
    chunks: ChunkSettings = ChunkSettings()
    search: SearchSettings = SearchSettings()
    quotas: QuotaSettings = QuotaSettings()
    memory: MemorySettings = MemorySettings()
    retrieval: RetrievalSettings = RetrievalSettings()
    extraction: ExtractionSettings = ExtractionSettings()
    scoring: ScoringPolicy = field(default_factory=ScoringPolicy)
    pruning: PrunePolicy = PrunePolicy()

    @staticmethod
    def from_env() -> "AppSettings":
        emb = EmbeddingSettings(
            backend=_env_choice("ME_EMBEDDER", EmbeddingSettings.backend, {"hash", "sbert", "openrouter"}),
            model=_env_str("ME_EMBEDDING_MODEL", EmbeddingSettings.model),
            fallback_model=_env_str("ME_EMBEDDING_FALLBACK_MODEL", EmbeddingSettings.fallback_model),
            dimensions=_env_int("ME_EMBEDDING_DIMENSIONS", EmbeddingSettings.dimensions),
            max_retries=_env_int("ME_EMBEDDING_MAX_RETRIES", EmbeddingSettings.max_retries),
            retry_base_delay_s=_env_float("ME_EMBEDDING_RETRY_DELAY", EmbeddingSettings.retry_base_delay_s),
            batch_size=_env_int("ME_EMBEDDING_BATCH_SIZE", EmbeddingSettings.batch_size),
            base_url=_env_str("ME_PROVIDER_URL", EmbeddingSettings.base_url),
            timeout_s=_env_float("ME_PROVIDER_TIMEOUT", EmbeddingSettings.timeout_s),
            sbert_model=_env_str("ME_SBERT_MODEL", EmbeddingSettings.sbert_model),
            hash_dim=_env_int("ME_HASH_DIM", EmbeddingSettings.hash_dim),
            cache_ttl_s=_env_float("ME_CACHE_TTL", EmbeddingSettings.cache_ttl_s),
            cache_max_entries=_env_int("ME_CACHE_MAX_ENTRIES", EmbeddingSettings.cache_max_entries),
            cache_key_prefix_chars=_env_int("ME_CACHE_KEY_PREFIX", EmbeddingSettings.cache_key_prefix_chars),
        )

        chunks = ChunkSettings(
            tokenizer_backend=_env_choice("ME_TOKENIZER", ChunkSettings.tokenizer_backend, {"approx", "tiktoken"}),
            chunk_tokens=_env_int("ME_CHUNK_TOKENS", ChunkSettings.chunk_tokens),
            overlap_tokens=_env_int("ME_OVERLAP_TOKENS", ChunkSettings.overlap_tokens),
            max_chunk_tokens=_env_int("ME_MAX_CHUNK_TOKENS", ChunkSettings.max_chunk_tokens),
        )

        search = SearchSettings(
            max_results=_env_int("ME_SEARCH_MAX_RESULTS", SearchSettings.max_results),
            similarity_threshold=_env_float("ME_SIMILARITY_THRESHOLD", SearchSettings.similarity_threshold),
            max_search_results=_env_int("ME_SEARCH_HARD_LIMIT", SearchSettings.max_search_results),
        )

        quotas = QuotaSettings(
            max_documents=_env_int("ME_MAX_DOCUMENTS", QuotaSettings.max_documents),
            max_storage_bytes=_env_int("ME_MAX_STORAGE_MB", QuotaSettings.max_storage_bytes // MB) * MB,
            max_daily_uploads=_env_int("ME_MAX_DAILY_UPLOADS", QuotaSettings.max_daily_uploads),
            max_file_bytes=_env_int("ME_MAX_FILE_MB", QuotaSettings.max_file_bytes // MB) * MB,
        )

        memory = MemorySettings(
            max_memories_per_user=_env_int("ME_MAX_MEMORIES", MemorySettings.max_memories_per_user),
            max_content_length=_env_int("ME_MAX_MEMORY_CHARS", MemorySettings.max_content_length),
        )

        retrieval = RetrievalSettings(
            timeout_s=_env_int("ME_RETRIEVAL_TIMEOUT_MS", int(RetrievalSettings.timeout_s * 1000)) / 1000.0,
            auto_inject_count=_env_int("ME_AUTO_INJECT_COUNT", RetrievalSettings.auto_inject_count),
            auto_inject_min_importance=_env_float("ME_AUTO_INJECT_MIN_IMPORTANCE", RetrievalSettings.auto_inject_min_importance),
            similarity_threshold=_env_float("ME_SIMILARITY_THRESHOLD", RetrievalSettings.similarity_threshold),
            similar_threshold=_env_float("ME_SIMILAR_THRESHOLD", RetrievalSettings.similar_threshold),
            dedup_threshold=_env_float("ME_DEDUP_THRESHOLD", RetrievalSettings.dedup_threshold),
        )

        extraction = ExtractionSettings(
            llm_backend=_env_choice("ME_LLM", ExtractionSettings.llm_backend, {"mock", "openrouter"}),
            model=_env_str("ME_EXTRACTION_MODEL", ExtractionSettings.model),
            min_importance=_env_float("ME_EXTRACT_MIN_IMPORTANCE", ExtractionSettings.min_importance),
            explicit_importance=_env_float("ME_EXPLICIT_IMPORTANCE", ExtractionSettings.explicit_importance),
        )

        scoring = ScoringPolicy(
            keyword_bonus=_env_float("ME_KEYWORD_BONUS", ScoringPolicy.keyword_bonus),
            explicit_bonus=_env_float("ME_EXPLICIT_BONUS", ScoringPolicy.explicit_bonus),
            user_requested_bonus=_env_float("ME_USER_REQUESTED_BONUS", ScoringPolicy.user_requested_bonus),
            decay_days=_env_float("ME_DECAY_DAYS", ScoringPolicy.decay_days),
            decay_floor=_env_float("ME_DECAY_FLOOR", ScoringPolicy.decay_floor),
            similarity_weight=_env_float("ME_SIMILARITY_WEIGHT", ScoringPolicy.similarity_weight),
            importance_weight=_env_float("ME_IMPORTANCE_WEIGHT", ScoringPolicy.importance_weight),
        )

        pruning = PrunePolicy(
            protect_importance_above=_env_float("ME_PRUNE_PROTECT_IMPORTANCE", PrunePolicy.protect_importance_above),
            protect_access_above=_env_int("ME_PRUNE_PROTECT_ACCESS", PrunePolicy.protect_access_above),
            low_importance_below=_env_float("ME_PRUNE_LOW_IMPORTANCE", PrunePolicy.low_importance_below),
            low_importance_min_age_days=_env_float("ME_PRUNE_LOW_AGE_DAYS", PrunePolicy.low_importance_min_age_days),
            medium_importance_below=_env_float("ME_PRUNE_MEDIUM_IMPORTANCE", PrunePolicy.medium_importance_below),
            medium_importance_idle_days=_env_float("ME_PRUNE_MEDIUM_IDLE_DAYS", PrunePolicy.medium_importance_idle_days),
        )

        return AppSettings(
            store_path=_env_str("ME_STORE", AppSettings.store_path),
            api_key=_env_str("ME_API_KEY", os.getenv("OPENROUTER_API_KEY", "")),
            enable_memory=_env_bool("ME_ENABLE_MEMORY", AppSettings.enable_memory),
            embedding=emb,
            chunks=chunks,
            search=search,
            quotas=quotas,
            memory=memory,
            retrieval=retrieval,
            extraction=extraction,
            scoring=scoring,
            pruning=pruning,
        )
