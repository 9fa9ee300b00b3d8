from memory_engine.app.settings import AppSettings
from memory_engine.use_cases.vector_gateway import MB


def test_defaults(monkeypatch):
    for name in ("ME_EMBEDDER", "ME_API_KEY", "OPENROUTER_API_KEY", "ME_MAX_STORAGE_MB", "ME_RETRIEVAL_TIMEOUT_MS"):
        monkeypatch.delenv(name, raising=False)
    s = AppSettings.from_env()
    assert s.embedding.backend == "hash"
    assert s.embedding.dimensions == 1536
    assert s.chunks.chunk_tokens == 500 and s.chunks.overlap_tokens == 75
    assert s.quotas.max_storage_bytes == 500 * MB
    assert s.retrieval.timeout_s == 0.2
    assert s.memory.max_memories_per_user == 1000
    assert s.api_key == ""


def test_env_overrides_and_bad_values(monkeypatch):
    monkeypatch.setenv("ME_EMBEDDER", "OpenRouter")
    monkeypatch.setenv("ME_TOKENIZER", "sentencepiece")
    monkeypatch.setenv("ME_MAX_STORAGE_MB", "100")
    monkeypatch.setenv("ME_RETRIEVAL_TIMEOUT_MS", "350")
    monkeypatch.setenv("ME_MAX_MEMORIES", "not-a-number")
    monkeypatch.setenv("ME_ENABLE_MEMORY", "off")
    monkeypatch.delenv("ME_API_KEY", raising=False)
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or-test")

    s = AppSettings.from_env()
    assert s.embedding.backend == "openrouter"
    assert s.chunks.tokenizer_backend == "approx"
    assert s.quotas.max_storage_bytes == 100 * MB
    assert s.retrieval.timeout_s == 0.35
    assert s.memory.max_memories_per_user == 1000
    assert s.enable_memory is False
    assert s.api_key == "sk-or-test"
