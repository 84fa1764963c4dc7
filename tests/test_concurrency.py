"""Concurrency tests: writers, readers and pruning interleaved on one store."""

import asyncio
import threading
from datetime import timedelta

from companionmemory.interfaces import MemoryEntry, ResultStatus, utcnow
from companionmemory.services import MemoryStore
from companionmemory.testing import FlakyBackend, MockEmbeddingProvider, hash_to_embedding

DIMENSIONS = 8


async def _seed_stale(backend, count, owner_id="u1"):
    created = utcnow() - timedelta(days=60)
    ids = []
    for i in range(count):
        entry = MemoryEntry(
            content=f"stale {i}",
            owner_id=owner_id,
            importance_score=0.1,
            created_at=created,
            last_accessed_at=created,
            embedding=hash_to_embedding(f"stale {i}", DIMENSIONS),
        )
        await backend.insert(entry)
        ids.append(entry.id)
    return ids


def _store(delay_ms=1):
    backend = FlakyBackend(delay_ms=delay_ms)
    store = MemoryStore(
        backend=backend,
        embedding_provider=MockEmbeddingProvider(dimensions=DIMENSIONS),
    )
    return store, backend


class TestConcurrentWrites:

    async def test_parallel_stores_keep_every_entry(self):
        store, backend = _store()

        results = await asyncio.gather(*[
            store.store_memory(f"fact {i}", tags=[f"t{i % 3}"], owner_id="u1")
            for i in range(50)
        ])

        assert all(r.success for r in results)
        assert len({r.memory_id for r in results}) == 50
        assert len(store) == 50
        assert len(backend.inner) == 50

    async def test_concurrent_importance_updates_settle_consistently(self):
        store, backend = _store()
        result = await store.store_memory("fact", owner_id="u1")

        await asyncio.gather(*[
            store.update_memory_importance(result.memory_id, i / 10) for i in range(10)
        ])

        in_memory = (await store.retrieve_memory(result.memory_id)).importance_score
        persisted = (await backend.inner.fetch(result.memory_id)).importance_score
        assert in_memory == persisted
        await store.flush()

    async def test_prune_and_delete_race_without_errors(self):
        store, backend = _store()
        ids = await _seed_stale(backend.inner, 10)
        await store.load()

        report, *deletions = await asyncio.gather(
            store.prune_old_memories(utcnow() - timedelta(days=30)),
            *[store.delete_memory(memory_id) for memory_id in ids[::2]],
        )

        deleted = {r.memory_id for r in deletions if r.status is ResultStatus.OK}
        assert not report.failed
        assert set(report.removed).isdisjoint(deleted)
        assert set(report.removed) | deleted == set(ids)
        assert len(store) == 0
        assert len(backend.inner) == 0

    async def test_prune_spares_entries_made_important_mid_batch(self):
        store, backend = _store(delay_ms=2)
        ids = await _seed_stale(backend.inner, 6)
        await store.load()
        rescued = ids[-1]

        report, update = await asyncio.gather(
            store.prune_old_memories(utcnow() - timedelta(days=30)),
            store.update_memory_importance(rescued, 0.95),
        )

        assert update.success
        assert rescued not in report.removed
        assert (await store.retrieve_memory(rescued)).importance_score == 0.95
        await store.flush()

    async def test_search_during_writes_sees_complete_entries(self):
        store, _ = _store()
        await store.store_memory("seed fact", owner_id="u1")

        async def writer():
            for i in range(20):
                await store.store_memory(f"hiking trip {i}", owner_id="u1")

        async def reader():
            seen = []
            for _ in range(20):
                for entry in await store.search_by_similarity("hiking", owner_id="u1", limit=50):
                    seen.append(entry)
                await asyncio.sleep(0)
            return seen

        _, seen = await asyncio.gather(writer(), reader())

        assert all(e.content and len(e.embedding) == DIMENSIONS for e in seen)
        await store.flush()
        assert len(store) == 21


class TestThreadedCacheAccess:

    async def test_cache_consistent_under_threads(self):
        store, _ = _store(delay_ms=0)
        ids = [(await store.store_memory(f"fact {i}", owner_id="u1")).memory_id for i in range(30)]
        errors = []

        def hammer():
            try:
                for _ in range(200):
                    for memory_id in ids:
                        store.cache.get(memory_id)
            except Exception as e:  # pragma: no cover - surfaced by the assertion
                errors.append(e)

        threads = [threading.Thread(target=hammer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert store.cache.keys() and set(store.cache.keys()) <= set(ids)
