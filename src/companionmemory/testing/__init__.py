"""Testing utilities for Companion Memory."""

from .embedding_utils import axis_vector, hash_to_embedding
from .mocks import FlakyBackend, MockEmbeddingProvider, StaticEmbeddingProvider

__all__ = [
    "FlakyBackend",
    "MockEmbeddingProvider",
    "StaticEmbeddingProvider",
    "axis_vector",
    "hash_to_embedding",
]
