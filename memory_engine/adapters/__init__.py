from .embed_hash import HashingEmbeddingProvider
from .embedding_cache import EmbeddingCache
from .llm_mock import ScriptedMockLLM
from .store_json import JsonStore
from .tokens_approx import ApproxTokenizer

__all__ = [
    "HashingEmbeddingProvider",
    "EmbeddingCache",
    "ScriptedMockLLM",
    "JsonStore",
    "ApproxTokenizer",
]
