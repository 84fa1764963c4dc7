"""Companion Memory service implementations."""

from .backends import InMemoryBackend, LanceDBBackend
from .cache import LRUCache
from .embeddings import EmbeddingGenerator, OpenAIEmbeddingProvider
from .memory import MemoryStore, create_memory_store
from .pruning import PruningPolicy
from .sqlite_backend import SQLiteBackend

__all__ = [
    "EmbeddingGenerator",
    "InMemoryBackend",
    "LanceDBBackend",
    "LRUCache",
    "MemoryStore",
    "OpenAIEmbeddingProvider",
    "PruningPolicy",
    "SQLiteBackend",
    "create_memory_store",
]
