"""Memory Store - main API for the assistant.

``MemoryStore`` owns the in-memory index of live entries and composes the
LRU cache, the persistent backend, the embedding generator, similarity
ranking and the pruning policy.
"""

import asyncio
import logging
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from ..interfaces import (
    DEFAULT_IMPORTANCE,
    IEmbeddingProvider,
    IPersistentBackend,
    MemoryEntry,
    MemoryEvent,
    MemoryEventType,
    MutationResult,
    PersistenceError,
    PruneFailure,
    PruneReport,
    RecallResult,
    ResultStatus,
    StoreResult,
    clamp_importance,
    utcnow,
)
from .cache import DEFAULT_CACHE_CAPACITY, LRUCache
from .embeddings import MAX_EMBEDDING_TOKENS, EmbeddingGenerator
from .pruning import PruningPolicy
from .similarity import rank_by_importance, rank_by_similarity

if TYPE_CHECKING:
    from ..server.config import CompanionMemoryConfig

logger = logging.getLogger(__name__)

MemoryListener = Callable[[MemoryEvent], None]


class MemoryStore:
    """Durable, semantically searchable long-term memory.

    Usage:
        store = MemoryStore(backend=SQLiteBackend("memories.db"),
                            embedding_provider=FastEmbedProvider())
        await store.load()

        result = await store.store_memory("I love hiking", tags=["hobby"], owner_id="u1")
        hits = await store.search_by_similarity("outdoor activities", owner_id="u1")

    Consistency:
        Every write that mutates the index (create, delete, importance update,
        prune removal, load) is serialized through ``_write_lock``. Short index
        reads and access-time touches use ``_index_lock``, which is never held
        across an ``await``. Entries handed to callers are detached copies.

        Access-time touches are applied in memory immediately and persisted by
        background tasks; see ``pending_touches`` and ``flush``.
    """

    def __init__(
        self,
        backend: IPersistentBackend,
        embedding_provider: Optional[IEmbeddingProvider] = None,
        cache_capacity: int = DEFAULT_CACHE_CAPACITY,
        dimensions: Optional[int] = None,
        pruning_policy: Optional[PruningPolicy] = None,
        max_embedding_tokens: int = MAX_EMBEDDING_TOKENS,
    ):
        self.backend = backend
        self.embedding_provider = embedding_provider
        self.embedder = EmbeddingGenerator(
            embedding_provider,
            dimensions=dimensions,
            max_tokens=max_embedding_tokens,
        )
        self.dimensions = self.embedder.dimensions
        self.cache = LRUCache(cache_capacity)
        self.pruning_policy = pruning_policy or PruningPolicy()

        self._index: dict[str, MemoryEntry] = {}
        self._index_lock = threading.RLock()
        self._write_lock = asyncio.Lock()
        # Bumped on every removal; backend reads that raced a removal are not promoted
        self._removal_epoch = 0

        self._loaded_owners: set[str] = set()
        self._fully_loaded = False

        self._touch_tasks: set[asyncio.Task] = set()
        self._listeners: list[MemoryListener] = []

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    async def store_memory(
        self,
        content: str,
        tags: Optional[Iterable[str]] = None,
        owner_id: str = "",
        importance: float = DEFAULT_IMPORTANCE,
        timeout: Optional[float] = None,
    ) -> StoreResult:
        """Create a memory.

        The embedding is computed first (falling back to the zero vector when
        the provider is unavailable), then the entry is written to the backend.
        Only after the durable write succeeds does it become visible in the
        index and cache.

        Args:
            content: Non-empty fact text.
            tags: Labels for tag search.
            owner_id: Owning user.
            importance: Clamped into [0, 1].
            timeout: Upper bound in seconds on embedding generation.
        """
        if not content or not content.strip():
            return StoreResult(status=ResultStatus.INVALID, error="Empty content not allowed")
        if not owner_id:
            return StoreResult(status=ResultStatus.INVALID, error="owner_id is required")

        embedding = await self.embedder.generate(content, timeout=timeout)

        now = utcnow()
        entry = MemoryEntry(
            content=content,
            created_at=now,
            last_accessed_at=now,
            importance_score=clamp_importance(importance),
            tags=set(tags or ()),
            owner_id=owner_id,
            embedding=embedding,
        )

        async with self._write_lock:
            try:
                await self.backend.insert(entry)
            except PersistenceError as e:
                logger.warning("Failed to persist new memory for %s: %s", owner_id, e)
                return StoreResult(status=ResultStatus.PERSISTENCE_ERROR, error=str(e))

            with self._index_lock:
                self._index[entry.id] = entry
            self.cache.put(entry)

        self._emit(MemoryEventType.CREATED, entry.id, owner_id)
        return StoreResult(status=ResultStatus.OK, memory=entry.copy())

    async def retrieve_memory(self, memory_id: str) -> Optional[MemoryEntry]:
        """Look up a memory by id; None when it does not exist.

        Lookup order is cache, then index, then backend. Backend hits are
        promoted into the index and cache.

        Raises:
            PersistenceError: The backend read failed.
        """
        entry = self.cache.get(memory_id)
        if entry is None:
            with self._index_lock:
                entry = self._index.get(memory_id)
            if entry is not None:
                self.cache.put(entry)
            else:
                entry = await self._fetch_and_promote(memory_id)
                if entry is None:
                    return None

        self._touch([entry])
        return entry.copy()

    async def _fetch_and_promote(self, memory_id: str) -> Optional[MemoryEntry]:
        epoch = self._removal_epoch
        fetched = await self.backend.fetch(memory_id)
        if fetched is None:
            return None
        with self._index_lock:
            if self._removal_epoch != epoch:
                # A removal completed while we were reading; don't resurrect
                return fetched
            return self._admit(fetched) or fetched

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search_by_similarity(
        self,
        query: str,
        owner_id: str,
        limit: int = 5,
        timeout: Optional[float] = None,
    ) -> list[MemoryEntry]:
        """The owner's memories most similar to ``query``.

        Sorted by cosine similarity descending, ties broken by
        ``last_accessed_at`` descending then ``id`` ascending.
        Returned entries are touched.
        """
        results = await self.recall(query, owner_id, limit=limit, timeout=timeout)
        return [r.memory for r in results]

    async def recall(
        self,
        query: str,
        owner_id: str,
        limit: int = 5,
        timeout: Optional[float] = None,
    ) -> list[RecallResult]:
        """Similarity search that also reports scores."""
        if limit <= 0:
            return []

        start = time.perf_counter()
        await self._ensure_owner_loaded(owner_id)
        query_embedding = await self.embedder.generate(query, timeout=timeout)

        with self._index_lock:
            candidates = [e for e in self._index.values() if e.owner_id == owner_id]
            ranked = rank_by_similarity(query_embedding, candidates, limit)
            self._touch([entry for entry, _ in ranked])
            results = [(entry.copy(), score) for entry, score in ranked]

        elapsed_ms = (time.perf_counter() - start) * 1000
        return [
            RecallResult(memory=snapshot, similarity_score=score, retrieval_time_ms=elapsed_ms)
            for snapshot, score in results
        ]

    async def search_by_tags(
        self,
        tags: Iterable[str],
        owner_id: str,
        limit: int = 5,
    ) -> list[MemoryEntry]:
        """The owner's memories sharing at least one tag with ``tags``.

        Sorted by importance descending, ties broken by ``last_accessed_at``
        descending then ``id`` ascending. Returned entries are touched.
        """
        wanted = set(tags)
        if limit <= 0 or not wanted:
            return []

        await self._ensure_owner_loaded(owner_id)

        with self._index_lock:
            candidates = [e for e in self._index.values() if e.owner_id == owner_id]
            top = rank_by_importance(wanted, candidates, limit)
            self._touch(top)
            return [e.copy() for e in top]

    async def list_memories(self, owner_id: str) -> list[MemoryEntry]:
        """All of the owner's memories, newest first. Does not touch access times."""
        await self._ensure_owner_loaded(owner_id)
        with self._index_lock:
            entries = [e.copy() for e in self._index.values() if e.owner_id == owner_id]
        entries.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return entries

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    async def update_memory_importance(self, memory_id: str, score: float) -> MutationResult:
        """Set a memory's importance (clamped into [0, 1]).

        The index (and therefore the cached entry) is updated, then the
        backend. A failed backend write restores the previous value.
        """
        new_score = clamp_importance(score)

        async with self._write_lock:
            with self._index_lock:
                entry = self._index.get(memory_id)

            if entry is None:
                try:
                    fetched = await self.backend.fetch(memory_id)
                except PersistenceError as e:
                    return MutationResult(ResultStatus.PERSISTENCE_ERROR, memory_id, error=str(e))
                if fetched is None:
                    return MutationResult(ResultStatus.NOT_FOUND, memory_id)
                entry = self._admit(fetched) or fetched

            with self._index_lock:
                previous = entry.importance_score
                entry.importance_score = new_score

            try:
                await self.backend.update_fields(memory_id, {"importance_score": new_score})
            except PersistenceError as e:
                with self._index_lock:
                    entry.importance_score = previous
                logger.warning("Importance update for %s rolled back: %s", memory_id, e)
                return MutationResult(ResultStatus.PERSISTENCE_ERROR, memory_id, error=str(e))

        self._emit(MemoryEventType.UPDATED, memory_id, entry.owner_id)
        return MutationResult(ResultStatus.OK, memory_id)

    async def delete_memory(self, memory_id: str) -> MutationResult:
        """Remove a memory from the backend, index and cache.

        Deleting an id that does not exist reports NOT_FOUND and changes nothing.
        """
        async with self._write_lock:
            with self._index_lock:
                entry = self._index.get(memory_id)

            try:
                deleted = await self.backend.delete(memory_id)
            except PersistenceError as e:
                logger.warning("Failed to delete memory %s: %s", memory_id, e)
                return MutationResult(ResultStatus.PERSISTENCE_ERROR, memory_id, error=str(e))

            if not deleted and entry is None:
                return MutationResult(ResultStatus.NOT_FOUND, memory_id)

            self._remove_local(memory_id)

        self._emit(MemoryEventType.DELETED, memory_id, entry.owner_id if entry else None)
        return MutationResult(ResultStatus.OK, memory_id)

    async def prune_old_memories(
        self,
        older_than: datetime,
        except_important_ones: bool = True,
        deadline: Optional[float] = None,
    ) -> PruneReport:
        """Remove stale memories created before ``older_than``.

        With ``except_important_ones`` entries at or above the policy's
        importance floor are kept. Eligible ids are snapshotted first, then
        deleted one at a time; each deletion re-checks that the entry still
        exists and is still eligible. Persistence failures are collected in
        the report and do not stop the batch.

        Args:
            older_than: Creation-time cutoff.
            except_important_ones: Protect entries at or above the floor.
            deadline: Seconds allowed for the pass; ids not reached in time
                are reported as skipped.

        Raises:
            PersistenceError: The backend could not be listed.
        """
        start = time.perf_counter()
        stop_at = time.monotonic() + deadline if deadline is not None else None
        entry_filter = self.pruning_policy.to_filter(older_than, except_important_ones)
        report = PruneReport()

        async with self._write_lock:
            persisted = await self.backend.fetch_all(owner_id=None, entry_filter=entry_filter)
            with self._index_lock:
                snapshot = {e.id: e for e in self._index.values() if entry_filter.matches(e)}
                for e in persisted:
                    if e.id not in self._index:
                        snapshot.setdefault(e.id, e)
            ordered = sorted(snapshot.values(), key=lambda e: (e.created_at, e.id))
            candidates = [(e.id, e.owner_id) for e in ordered]

        for position, (memory_id, owner_id) in enumerate(candidates):
            if stop_at is not None and time.monotonic() >= stop_at:
                report.skipped = [mid for mid, _ in candidates[position:]]
                logger.info("Prune deadline reached, %d memories skipped", len(report.skipped))
                break

            async with self._write_lock:
                with self._index_lock:
                    entry = self._index.get(memory_id)
                if entry is not None and not entry_filter.matches(entry):
                    # Became important while the batch was running
                    continue
                try:
                    deleted = await self.backend.delete(memory_id)
                except PersistenceError as e:
                    report.failed.append(PruneFailure(memory_id=memory_id, error=str(e)))
                    continue
                if not deleted and entry is None:
                    continue
                self._remove_local(memory_id)
                report.removed.append(memory_id)

            self._emit(MemoryEventType.PRUNED, memory_id, owner_id)

        report.elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "Pruned %d memories older than %s (%d failed, %d skipped)",
            len(report.removed), entry_filter.created_before.isoformat(),
            len(report.failed), len(report.skipped),
        )
        return report

    # ------------------------------------------------------------------
    # Loading and lifecycle
    # ------------------------------------------------------------------

    async def load(self, owner_id: Optional[str] = None) -> int:
        """Warm the index (and cache) from the backend.

        Args:
            owner_id: Load one owner only; None loads everything.

        Returns:
            Number of entries newly admitted into the index.
        """
        async with self._write_lock:
            entries = await self.backend.fetch_all(owner_id=owner_id)
            admitted = 0
            with self._index_lock:
                for entry in sorted(entries, key=lambda e: e.last_accessed_at):
                    if entry.id in self._index:
                        continue
                    if self._admit(entry) is not None:
                        admitted += 1
            if owner_id is None:
                self._fully_loaded = True
            else:
                self._loaded_owners.add(owner_id)

        logger.info(
            "Loaded %d memories%s", admitted, f" for {owner_id}" if owner_id else "",
        )
        return admitted

    async def _ensure_owner_loaded(self, owner_id: str) -> None:
        if self._fully_loaded or owner_id in self._loaded_owners:
            return
        await self.load(owner_id)

    def pending_touches(self) -> list[asyncio.Task]:
        """Handles of access-time writes that have not finished yet."""
        return [t for t in self._touch_tasks if not t.done()]

    async def flush(self) -> None:
        """Wait for every pending access-time write."""
        while self._touch_tasks:
            results = await asyncio.gather(*list(self._touch_tasks), return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(
                        "Access-time write failed unexpectedly",
                        exc_info=(type(result), result, result.__traceback__),
                    )

    async def close(self) -> None:
        """Flush pending writes and release the backend and provider."""
        try:
            await self.flush()
        finally:
            try:
                await self.backend.close()
            finally:
                if self.embedding_provider is not None:
                    await self.embedding_provider.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ------------------------------------------------------------------
    # Change notification and stats
    # ------------------------------------------------------------------

    def subscribe(self, listener: MemoryListener) -> Callable[[], None]:
        """Register a change listener.

        Returns:
            A callable that unregisters the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def stats(self) -> dict:
        with self._index_lock:
            by_owner: dict[str, int] = {}
            for entry in self._index.values():
                by_owner[entry.owner_id] = by_owner.get(entry.owner_id, 0) + 1
            total = len(self._index)
        cache_stats = self.cache.stats()
        return {
            "total_memories": total,
            "by_owner": by_owner,
            "dimensions": self.dimensions,
            "pending_touches": len(self.pending_touches()),
            "cache": {
                "size": cache_stats.size,
                "capacity": cache_stats.capacity,
                "hits": cache_stats.hits,
                "misses": cache_stats.misses,
                "evictions": cache_stats.evictions,
                "hit_rate": cache_stats.hit_rate,
            },
        }

    def __len__(self) -> int:
        with self._index_lock:
            return len(self._index)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _admit(self, entry: MemoryEntry) -> Optional[MemoryEntry]:
        """Put a backend entry into the index and cache.

        Returns the indexed instance (an existing one wins), or None when the
        entry's embedding has a foreign dimension and cannot be searched.
        """
        if len(entry.embedding) != self.dimensions:
            logger.warning(
                "Not indexing memory %s: embedding dimension %d, expected %d",
                entry.id, len(entry.embedding), self.dimensions,
            )
            return None
        with self._index_lock:
            existing = self._index.get(entry.id)
            if existing is not None:
                return existing
            self._index[entry.id] = entry
        self.cache.put(entry)
        return entry

    def _remove_local(self, memory_id: str) -> None:
        with self._index_lock:
            self._index.pop(memory_id, None)
            self._removal_epoch += 1
        self.cache.remove(memory_id)

    def _touch(self, entries: list[MemoryEntry]) -> None:
        if not entries:
            return
        now = utcnow()
        with self._index_lock:
            for entry in entries:
                entry.last_accessed_at = now
        for entry in entries:
            task = asyncio.create_task(self._persist_touch(entry.id, now))
            self._touch_tasks.add(task)
            task.add_done_callback(self._touch_tasks.discard)

    async def _persist_touch(self, memory_id: str, accessed_at: datetime) -> None:
        try:
            await self.backend.update_fields(memory_id, {"last_accessed_at": accessed_at})
        except PersistenceError as e:
            logger.warning("Failed to persist access time for %s: %s", memory_id, e)

    def _emit(self, event_type: MemoryEventType, memory_id: str, owner_id: Optional[str]) -> None:
        if not self._listeners:
            return
        event = MemoryEvent(type=event_type, memory_id=memory_id, owner_id=owner_id)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Memory listener failed for %s event", event_type.value)


def create_memory_store(config: Optional["CompanionMemoryConfig"] = None) -> MemoryStore:
    """Factory function to create a memory store from configuration.

    Args:
        config: Service configuration. If None, loads from environment.

    Returns:
        Configured MemoryStore. Call ``await store.load()`` to warm it.
    """
    from ..server.config import CompanionMemoryConfig
    from .backends import InMemoryBackend, LanceDBBackend
    from .sqlite_backend import SQLiteBackend

    if config is None:
        config = CompanionMemoryConfig.from_env()

    provider = create_embedding_provider(config)
    dimensions = provider.dimensions if provider is not None else config.embedding.dimensions

    db = config.db
    if db.provider == "memory":
        backend: IPersistentBackend = InMemoryBackend()
    elif db.provider == "sqlite":
        path = db.path if db.path == ":memory:" else str(Path(db.path) / "memories.db")
        backend = SQLiteBackend(path)
    elif db.provider == "lancedb":
        backend = LanceDBBackend(db_path=db.path, dimensions=dimensions, db_uri=db.uri)
    else:
        raise ValueError(f"Unknown database provider: {db.provider}")

    logger.info(
        "Memory store configured (db: %s at %s, embedding: %s, %d dims)",
        db.provider, db.uri or db.path, config.embedding.provider, dimensions,
    )

    return MemoryStore(
        backend=backend,
        embedding_provider=provider,
        cache_capacity=config.cache.capacity,
        dimensions=dimensions,
        pruning_policy=PruningPolicy(importance_floor=config.pruning.importance_floor),
    )


def create_embedding_provider(config: "CompanionMemoryConfig") -> Optional[IEmbeddingProvider]:
    """Build the configured embedding provider; None for provider ``none``."""
    emb = config.embedding
    if emb.provider == "none":
        return None
    if emb.provider == "fastembed":
        from .fastembed_service import FastEmbedProvider
        return FastEmbedProvider(model=emb.model, dimensions=emb.dimensions)
    if emb.provider == "openai":
        from .embeddings import OpenAIEmbeddingProvider
        kwargs: dict = {"api_key": emb.api_key, "model": emb.model, "dimensions": emb.dimensions}
        if emb.api_base:
            kwargs["api_base"] = emb.api_base
        return OpenAIEmbeddingProvider(**kwargs)
    raise ValueError(f"Unknown embedding provider: {emb.provider}")
