"""Mock implementations for testing."""

import asyncio
import random
from typing import Any, Optional

from ..interfaces import (
    DEFAULT_EMBEDDING_DIMENSIONS,
    EmbeddingUnavailable,
    EntryFilter,
    IEmbeddingProvider,
    IPersistentBackend,
    MemoryEntry,
    PersistenceError,
)
from ..services.backends import InMemoryBackend
from .embedding_utils import hash_to_embedding

_PUNCTUATION = ".,!?;:'\"()"


class MockEmbeddingProvider(IEmbeddingProvider):
    """Mock token embedding provider for testing.

    Uses deterministic hashing for reproducible tests.
    Can be configured to simulate failures and latency.
    """

    def __init__(
        self,
        dimensions: int = DEFAULT_EMBEDDING_DIMENSIONS,
        latency_ms: float = 0,
        failure_rate: float = 0,
        unknown_tokens: Optional[set[str]] = None,
    ):
        """Initialize mock provider.

        Args:
            dimensions: Width of generated vectors.
            latency_ms: Simulated latency per call.
            failure_rate: Probability of failure (0.0-1.0); 1.0 always fails.
            unknown_tokens: Tokens the provider has no vector for.
        """
        self._dimensions = dimensions
        self.latency_ms = latency_ms
        self.failure_rate = failure_rate
        self.unknown_tokens = {t.lower() for t in (unknown_tokens or ())}
        self.call_count = 0
        self.closed = False

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def vector_for(self, token: str) -> Optional[list[float]]:
        self.call_count += 1

        if self.latency_ms > 0:
            await asyncio.sleep(self.latency_ms / 1000)

        if self.failure_rate > 0 and random.random() < self.failure_rate:
            raise EmbeddingUnavailable("Mock embedding provider failure")

        normalized = token.lower().strip(_PUNCTUATION)
        if not normalized or normalized in self.unknown_tokens:
            return None
        return hash_to_embedding(normalized, self._dimensions)

    async def close(self) -> None:
        self.closed = True


class StaticEmbeddingProvider(IEmbeddingProvider):
    """Provider backed by a fixed token-to-vector table.

    Lookups ignore case and surrounding punctuation. Tokens missing from the
    table are unknown. Lets tests build exactly orthogonal or aligned
    embeddings.
    """

    def __init__(self, vectors: dict[str, list[float]], dimensions: Optional[int] = None):
        self.vectors = {k.lower(): list(v) for k, v in vectors.items()}
        if dimensions is None:
            widths = {len(v) for v in self.vectors.values()}
            dimensions = widths.pop() if len(widths) == 1 else DEFAULT_EMBEDDING_DIMENSIONS
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def vector_for(self, token: str) -> Optional[list[float]]:
        return self.vectors.get(token.lower().strip(_PUNCTUATION))


class FlakyBackend(IPersistentBackend):
    """Failure-injecting wrapper around a backend (in-memory by default).

    ``fail_operations`` names backend methods that raise ``PersistenceError``;
    ``fail_ids`` limits the failures to specific memory ids. ``delay_ms``
    yields to the event loop before every call so tests can interleave
    operations.
    """

    def __init__(
        self,
        inner: Optional[IPersistentBackend] = None,
        fail_operations: Optional[set[str]] = None,
        fail_ids: Optional[set[str]] = None,
        delay_ms: float = 0,
    ):
        self.inner = inner or InMemoryBackend()
        self.fail_operations = set(fail_operations or ())
        self.fail_ids = set(fail_ids or ())
        self.delay_ms = delay_ms
        self.calls: list[tuple[str, Optional[str]]] = []

    async def _enter(self, operation: str, memory_id: Optional[str] = None) -> None:
        self.calls.append((operation, memory_id))
        if self.delay_ms > 0:
            await asyncio.sleep(self.delay_ms / 1000)
        if operation not in self.fail_operations:
            return
        if self.fail_ids and memory_id not in self.fail_ids:
            return
        raise PersistenceError(f"Injected {operation} failure")

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    async def fetch(self, memory_id: str) -> Optional[MemoryEntry]:
        await self._enter("fetch", memory_id)
        return await self.inner.fetch(memory_id)

    async def fetch_all(
        self,
        owner_id: Optional[str] = None,
        entry_filter: Optional[EntryFilter] = None,
    ) -> list[MemoryEntry]:
        await self._enter("fetch_all")
        return await self.inner.fetch_all(owner_id, entry_filter)

    async def insert(self, entry: MemoryEntry) -> None:
        await self._enter("insert", entry.id)
        await self.inner.insert(entry)

    async def update_fields(self, memory_id: str, fields: dict[str, Any]) -> None:
        await self._enter("update_fields", memory_id)
        await self.inner.update_fields(memory_id, fields)

    async def delete(self, memory_id: str) -> bool:
        await self._enter("delete", memory_id)
        return await self.inner.delete(memory_id)

    async def close(self) -> None:
        await self.inner.close()
