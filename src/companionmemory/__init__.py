"""Companion Memory: durable, semantically searchable long-term memory for AI assistants."""

from .interfaces import (
    EmbeddingUnavailable,
    EntryFilter,
    IEmbeddingProvider,
    IPersistentBackend,
    MemoryEntry,
    MemoryEvent,
    MemoryEventType,
    MemoryStoreError,
    MutationResult,
    PersistenceError,
    PruneFailure,
    PruneReport,
    RecallResult,
    ResultStatus,
    StoreResult,
)
from .services import MemoryStore, create_memory_store

__version__ = "0.1.0"

__all__ = [
    "EmbeddingUnavailable",
    "EntryFilter",
    "IEmbeddingProvider",
    "IPersistentBackend",
    "MemoryEntry",
    "MemoryEvent",
    "MemoryEventType",
    "MemoryStore",
    "MemoryStoreError",
    "MutationResult",
    "PersistenceError",
    "PruneFailure",
    "PruneReport",
    "RecallResult",
    "ResultStatus",
    "StoreResult",
    "create_memory_store",
]
