"""Contract tests shared by every persistent backend."""

from datetime import timedelta

import pytest

from companionmemory.interfaces import EntryFilter, MemoryEntry, PersistenceError, utcnow
from companionmemory.services import InMemoryBackend, LanceDBBackend, SQLiteBackend

# Check if lancedb is available
try:
    import lancedb  # noqa: F401
    LANCEDB_AVAILABLE = True
except ImportError:
    LANCEDB_AVAILABLE = False

DIMENSIONS = 4


def _entry(content, owner_id="u1", age_days=0, importance=0.5, tags=("t",)):
    created = utcnow() - timedelta(days=age_days)
    return MemoryEntry(
        content=content,
        owner_id=owner_id,
        importance_score=importance,
        tags=set(tags),
        created_at=created,
        last_accessed_at=created,
        embedding=[0.5, 0.5, 0.5, 0.5],
    )


@pytest.fixture(params=[
    "memory",
    "sqlite",
    pytest.param("lancedb", marks=pytest.mark.skipif(
        not LANCEDB_AVAILABLE, reason="lancedb not installed")),
])
async def backend(request, tmp_path):
    if request.param == "memory":
        instance = InMemoryBackend()
    elif request.param == "sqlite":
        instance = SQLiteBackend(tmp_path / "memories.db")
    else:
        instance = LanceDBBackend(db_path=tmp_path / "lancedb", dimensions=DIMENSIONS)
    yield instance
    await instance.close()


class TestBackendContract:

    async def test_insert_then_fetch(self, backend):
        entry = _entry("I love hiking", tags=("hobby", "outdoors"), importance=0.8)
        await backend.insert(entry)

        fetched = await backend.fetch(entry.id)

        assert fetched.id == entry.id
        assert fetched.content == "I love hiking"
        assert fetched.owner_id == "u1"
        assert fetched.tags == {"hobby", "outdoors"}
        assert fetched.importance_score == pytest.approx(0.8)
        assert fetched.created_at == entry.created_at
        assert fetched.embedding == pytest.approx(entry.embedding)

    async def test_fetch_missing_returns_none(self, backend):
        assert await backend.fetch("00000000-0000-0000-0000-000000000000") is None

    async def test_fetch_all_scopes_owner(self, backend):
        await backend.insert(_entry("a", owner_id="alice"))
        await backend.insert(_entry("b", owner_id="bob"))

        assert [e.content for e in await backend.fetch_all("alice")] == ["a"]
        assert len(await backend.fetch_all()) == 2

    async def test_fetch_all_applies_filter(self, backend):
        stale = _entry("stale", age_days=60, importance=0.2)
        await backend.insert(stale)
        await backend.insert(_entry("important", age_days=60, importance=0.9))
        await backend.insert(_entry("fresh", age_days=1, importance=0.2))

        entry_filter = EntryFilter(
            created_before=utcnow() - timedelta(days=30),
            importance_below=0.7,
        )
        assert [e.id for e in await backend.fetch_all(entry_filter=entry_filter)] == [stale.id]

    async def test_fetch_all_accepts_naive_cutoff(self, backend):
        stale = _entry("stale", age_days=60)
        await backend.insert(stale)
        await backend.insert(_entry("fresh", age_days=1))

        naive = utcnow().replace(tzinfo=None) - timedelta(days=30)
        entry_filter = EntryFilter(created_before=naive)
        assert [e.id for e in await backend.fetch_all(entry_filter=entry_filter)] == [stale.id]

    async def test_update_fields(self, backend):
        entry = _entry("fact")
        await backend.insert(entry)
        touched = utcnow()

        await backend.update_fields(entry.id, {
            "importance_score": 0.9,
            "last_accessed_at": touched,
            "tags": {"new"},
        })

        fetched = await backend.fetch(entry.id)
        assert fetched.importance_score == pytest.approx(0.9)
        assert fetched.last_accessed_at == touched
        assert fetched.tags == {"new"}

    async def test_update_rejects_immutable_fields(self, backend):
        entry = _entry("fact")
        await backend.insert(entry)
        with pytest.raises(PersistenceError, match="immutable"):
            await backend.update_fields(entry.id, {"content": "rewritten"})

    async def test_delete(self, backend):
        entry = _entry("fact")
        await backend.insert(entry)

        assert await backend.delete(entry.id) is True
        assert await backend.fetch(entry.id) is None
        assert await backend.delete(entry.id) is False


class TestInMemoryBackend:

    async def test_duplicate_insert_fails(self):
        backend = InMemoryBackend()
        entry = _entry("fact")
        await backend.insert(entry)
        with pytest.raises(PersistenceError, match="Duplicate"):
            await backend.insert(entry)

    async def test_stores_copies(self):
        backend = InMemoryBackend()
        entry = _entry("fact")
        await backend.insert(entry)
        entry.tags.add("tampered")
        assert (await backend.fetch(entry.id)).tags == {"t"}

    async def test_update_missing_fails(self):
        with pytest.raises(PersistenceError):
            await InMemoryBackend().update_fields("missing", {"importance_score": 0.1})


class TestSQLiteBackend:

    async def test_survives_reopen(self, tmp_path):
        path = tmp_path / "nested" / "memories.db"
        backend = SQLiteBackend(path)
        entry = _entry("durable fact")
        await backend.insert(entry)
        await backend.close()

        reopened = SQLiteBackend(path)
        try:
            assert (await reopened.fetch(entry.id)).content == "durable fact"
        finally:
            await reopened.close()

    async def test_in_memory_database(self):
        backend = SQLiteBackend(":memory:")
        entry = _entry("fact")
        await backend.insert(entry)
        assert (await backend.fetch(entry.id)).content == "fact"
        await backend.close()

    async def test_duplicate_insert_fails(self, tmp_path):
        backend = SQLiteBackend(tmp_path / "memories.db")
        entry = _entry("fact")
        await backend.insert(entry)
        with pytest.raises(PersistenceError, match="SQLite error"):
            await backend.insert(entry)
        await backend.close()

    async def test_update_missing_fails(self, tmp_path):
        backend = SQLiteBackend(tmp_path / "memories.db")
        with pytest.raises(PersistenceError, match="not found"):
            await backend.update_fields("missing", {"importance_score": 0.1})
        await backend.close()

    async def test_closed_backend_raises(self, tmp_path):
        backend = SQLiteBackend(tmp_path / "memories.db")
        await backend.close()
        await backend.close()
        with pytest.raises(PersistenceError, match="closed"):
            await backend.fetch("anything")


@pytest.mark.skipif(not LANCEDB_AVAILABLE, reason="lancedb not installed")
class TestLanceDBBackend:

    async def test_rejects_wrong_dimension(self, tmp_path):
        backend = LanceDBBackend(db_path=tmp_path / "lancedb", dimensions=DIMENSIONS)
        entry = _entry("fact")
        entry.embedding = [1.0, 0.0]
        with pytest.raises(PersistenceError, match="dimension"):
            await backend.insert(entry)

    async def test_rejects_unsafe_ids(self, tmp_path):
        backend = LanceDBBackend(db_path=tmp_path / "lancedb", dimensions=DIMENSIONS)
        with pytest.raises(PersistenceError, match="Invalid memory_id"):
            await backend.fetch("x' OR '1'='1")

    async def test_owner_with_quote(self, tmp_path):
        backend = LanceDBBackend(db_path=tmp_path / "lancedb", dimensions=DIMENSIONS)
        await backend.insert(_entry("fact", owner_id="o'brien"))
        assert len(await backend.fetch_all("o'brien")) == 1
