"""Persistent backend implementations.

Provides LanceDB (persistent) and in-memory storage options. The SQLite
backend lives in ``sqlite_backend``.
"""

import json
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

from ..interfaces import (
    DEFAULT_EMBEDDING_DIMENSIONS,
    MUTABLE_FIELDS,
    EntryFilter,
    IPersistentBackend,
    MemoryEntry,
    PersistenceError,
)


def to_storage_timestamp(ts: datetime) -> str:
    """Fixed-width UTC ISO string; sorts lexicographically in time order."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def check_update_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - MUTABLE_FIELDS
    if unknown:
        raise PersistenceError(f"Cannot update immutable fields: {sorted(unknown)}")


class InMemoryBackend(IPersistentBackend):
    """Dict-backed backend for testing and ephemeral processes.

    Stores detached copies so callers never share mutable state with it.
    """

    def __init__(self):
        self._rows: dict[str, MemoryEntry] = {}

    async def fetch(self, memory_id: str) -> Optional[MemoryEntry]:
        entry = self._rows.get(memory_id)
        return entry.copy() if entry else None

    async def fetch_all(
        self,
        owner_id: Optional[str] = None,
        entry_filter: Optional[EntryFilter] = None,
    ) -> list[MemoryEntry]:
        return [
            e.copy() for e in self._rows.values()
            if (owner_id is None or e.owner_id == owner_id)
            and (entry_filter is None or entry_filter.matches(e))
        ]

    async def insert(self, entry: MemoryEntry) -> None:
        if entry.id in self._rows:
            raise PersistenceError(f"Duplicate memory id: {entry.id}")
        self._rows[entry.id] = entry.copy()

    async def update_fields(self, memory_id: str, fields: dict[str, Any]) -> None:
        check_update_fields(fields)
        entry = self._rows.get(memory_id)
        if entry is None:
            raise PersistenceError(f"Memory {memory_id} not found in backend")
        for name, value in fields.items():
            if name == "tags":
                value = set(value)
            setattr(entry, name, value)

    async def delete(self, memory_id: str) -> bool:
        return self._rows.pop(memory_id, None) is not None

    def __len__(self) -> int:
        return len(self._rows)


class LanceDBBackend(IPersistentBackend):
    """LanceDB-backed persistent store.

    Supports both local file storage and LanceDB Cloud. The vector column
    has the fixed embedding dimension agreed process-wide.
    """

    TABLE_NAME = "memories"
    # LanceDB queries default to 10 rows; listing needs an explicit ceiling
    MAX_ROWS = 1_000_000

    def __init__(
        self,
        db_path: Optional[Union[str, Path]] = None,
        dimensions: int = DEFAULT_EMBEDDING_DIMENSIONS,
        db_uri: Optional[str] = None,
        api_key: Optional[str] = None,
    ):
        self.db_path = Path(db_path) if db_path else None
        self.db_uri = db_uri
        self.api_key = api_key or os.environ.get("LANCEDB_API_KEY")
        self.dimensions = dimensions

        self._db = None
        self._table = None
        self._initialized = False

    def _ensure_initialized(self) -> None:
        """Lazily initialize database connection."""
        if self._initialized:
            return

        import lancedb

        if self.db_uri:
            self._db = lancedb.connect(self.db_uri, api_key=self.api_key)
        elif self.db_path:
            self.db_path.mkdir(parents=True, exist_ok=True)
            self._db = lancedb.connect(str(self.db_path))
        else:
            raise ValueError("Either db_path or db_uri must be provided")

        if self.TABLE_NAME in self._db.table_names():
            self._table = self._db.open_table(self.TABLE_NAME)
        else:
            self._table = self._create_table()

        self._initialized = True

    def _create_table(self):
        """Create the memories table with the defined schema."""
        import pyarrow as pa

        schema = pa.schema([
            pa.field("id", pa.string()),
            pa.field("owner_id", pa.string()),
            pa.field("content", pa.string()),
            pa.field("vector", pa.list_(pa.float32(), self.dimensions)),
            pa.field("created_at", pa.string()),
            pa.field("last_accessed_at", pa.string()),
            pa.field("importance_score", pa.float64()),
            pa.field("tags", pa.string()),
        ])

        return self._db.create_table(self.TABLE_NAME, schema=schema)

    @staticmethod
    def _sanitize_id(memory_id: str) -> str:
        """Reject anything but UUID-like ids before building a filter."""
        if not re.match(r'^[a-zA-Z0-9\-]+$', memory_id):
            raise PersistenceError(f"Invalid memory_id format: {memory_id[:20]}...")
        return memory_id

    @staticmethod
    def _quote(value: str) -> str:
        return "'" + value.replace("'", "''") + "'"

    def _where(self, owner_id: Optional[str], entry_filter: Optional[EntryFilter]) -> Optional[str]:
        clauses = []
        if owner_id is not None:
            clauses.append(f"owner_id = {self._quote(owner_id)}")
        if entry_filter is not None:
            if entry_filter.created_before is not None:
                cutoff = to_storage_timestamp(entry_filter.created_before)
                clauses.append(f"created_at < {self._quote(cutoff)}")
            if entry_filter.importance_below is not None:
                clauses.append(f"importance_score < {float(entry_filter.importance_below)!r}")
        return " AND ".join(clauses) if clauses else None

    async def fetch(self, memory_id: str) -> Optional[MemoryEntry]:
        safe_id = self._sanitize_id(memory_id)
        try:
            self._ensure_initialized()
            rows = (
                self._table.search()
                .where(f"id = '{safe_id}'")
                .limit(1)
                .to_list()
            )
        except Exception as e:
            raise PersistenceError(f"LanceDB fetch failed: {e}") from e
        return self._row_to_entry(rows[0]) if rows else None

    async def fetch_all(
        self,
        owner_id: Optional[str] = None,
        entry_filter: Optional[EntryFilter] = None,
    ) -> list[MemoryEntry]:
        try:
            self._ensure_initialized()
            query = self._table.search()
            where = self._where(owner_id, entry_filter)
            if where:
                query = query.where(where)
            rows = query.limit(self.MAX_ROWS).to_list()
        except Exception as e:
            raise PersistenceError(f"LanceDB list failed: {e}") from e
        return [self._row_to_entry(row) for row in rows]

    async def insert(self, entry: MemoryEntry) -> None:
        if len(entry.embedding) != self.dimensions:
            raise PersistenceError(
                f"Invalid embedding dimension: got {len(entry.embedding)}, "
                f"expected {self.dimensions}"
            )
        row = {
            "id": self._sanitize_id(entry.id),
            "owner_id": entry.owner_id,
            "content": entry.content,
            "vector": entry.embedding,
            "created_at": to_storage_timestamp(entry.created_at),
            "last_accessed_at": to_storage_timestamp(entry.last_accessed_at),
            "importance_score": entry.importance_score,
            "tags": json.dumps(sorted(entry.tags)),
        }
        try:
            self._ensure_initialized()
            self._table.add([row])
        except Exception as e:
            raise PersistenceError(f"LanceDB insert failed: {e}") from e

    async def update_fields(self, memory_id: str, fields: dict[str, Any]) -> None:
        check_update_fields(fields)
        safe_id = self._sanitize_id(memory_id)
        values: dict[str, Any] = {}
        for name, value in fields.items():
            if name == "tags":
                values[name] = json.dumps(sorted(value))
            elif name == "last_accessed_at":
                values[name] = to_storage_timestamp(value)
            else:
                values[name] = float(value)
        try:
            self._ensure_initialized()
            self._table.update(where=f"id = '{safe_id}'", values=values)
        except Exception as e:
            raise PersistenceError(f"LanceDB update failed: {e}") from e

    async def delete(self, memory_id: str) -> bool:
        if await self.fetch(memory_id) is None:
            return False
        safe_id = self._sanitize_id(memory_id)
        try:
            self._table.delete(f"id = '{safe_id}'")
        except Exception as e:
            raise PersistenceError(f"LanceDB delete failed: {e}") from e
        return True

    def _row_to_entry(self, row: dict) -> MemoryEntry:
        return MemoryEntry.from_dict({
            "id": row["id"],
            "content": row["content"],
            "created_at": row.get("created_at"),
            "last_accessed_at": row.get("last_accessed_at"),
            "importance_score": row.get("importance_score", 0.5),
            "tags": json.loads(row.get("tags") or "[]"),
            "owner_id": row.get("owner_id", ""),
            "embedding": list(row.get("vector") or []),
        })
