from .chunker import Chunker
from .document_store import DocumentRepository
from .embeddings import EmbeddingItem, EmbeddingProvider, EmbeddingResponse, EmbeddingUsage
from .llm import LLMResponse, LLMUsage, TextGenerator
from .loaders import DocumentLoader
from .memory_store import MemoryRepository
from .tokens import Tokenizer
from .vector_store import VectorIndex

__all__ = [
    "Chunker",
    "DocumentRepository",
    "EmbeddingItem",
    "EmbeddingProvider",
    "EmbeddingResponse",
    "EmbeddingUsage",
    "LLMResponse",
    "LLMUsage",
    "TextGenerator",
    "DocumentLoader",
    "MemoryRepository",
    "Tokenizer",
    "VectorIndex",
]
