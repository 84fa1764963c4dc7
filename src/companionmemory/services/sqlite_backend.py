"""SQLite persistent backend.

Local-first durable storage for memory entries. Tags and embeddings are
stored as JSON text; timestamps as fixed-width UTC ISO strings so range
predicates can be evaluated in SQL.
"""

import asyncio
import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Optional, Union

from ..interfaces import (
    EntryFilter,
    IPersistentBackend,
    MemoryEntry,
    PersistenceError,
)
from .backends import check_update_fields, to_storage_timestamp

logger = logging.getLogger(__name__)


class SQLiteBackend(IPersistentBackend):
    """SQLite-backed storage for memory entries.

    Schema:
    - memories: (id PK, owner_id, content, created_at, last_accessed_at,
      importance_score, tags_json, embedding_json)

    Connection management:
        One persistent connection in WAL mode, shared across threads and
        guarded by an RLock. Blocking calls run in ``asyncio.to_thread``
        so the event loop is never stalled by disk I/O.

        Lifecycle:
            backend = SQLiteBackend(db_path)
            try:
                await backend.insert(entry)
            finally:
                await backend.close()
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        self._conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS memories (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    last_accessed_at TEXT NOT NULL,
                    importance_score REAL NOT NULL,
                    tags TEXT NOT NULL DEFAULT '[]',
                    embedding TEXT NOT NULL DEFAULT '[]'
                )
            """)
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_memories_owner ON memories(owner_id)"
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at)"
            )
            self._conn.commit()

    def _run(self, sql: str, params: tuple = (), *, fetch: bool = False, commit: bool = False):
        """Execute one statement under the lock, mapping errors to PersistenceError."""
        with self._lock:
            if self._conn is None:
                raise PersistenceError("SQLite backend is closed")
            try:
                cursor = self._conn.execute(sql, params)
                rows = cursor.fetchall() if fetch else None
                if commit:
                    self._conn.commit()
                return rows if fetch else cursor.rowcount
            except sqlite3.Error as e:
                if commit:
                    self._conn.rollback()
                raise PersistenceError(f"SQLite error: {e}") from e

    async def fetch(self, memory_id: str) -> Optional[MemoryEntry]:
        rows = await asyncio.to_thread(
            self._run, "SELECT * FROM memories WHERE id = ?", (memory_id,), fetch=True
        )
        return self._row_to_entry(rows[0]) if rows else None

    async def fetch_all(
        self,
        owner_id: Optional[str] = None,
        entry_filter: Optional[EntryFilter] = None,
    ) -> list[MemoryEntry]:
        clauses: list[str] = []
        params: list[Any] = []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if entry_filter is not None:
            if entry_filter.created_before is not None:
                clauses.append("created_at < ?")
                params.append(to_storage_timestamp(entry_filter.created_before))
            if entry_filter.importance_below is not None:
                clauses.append("importance_score < ?")
                params.append(float(entry_filter.importance_below))

        sql = "SELECT * FROM memories"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at, id"

        rows = await asyncio.to_thread(self._run, sql, tuple(params), fetch=True)
        return [self._row_to_entry(r) for r in rows]

    async def insert(self, entry: MemoryEntry) -> None:
        await asyncio.to_thread(
            self._run,
            """
            INSERT INTO memories
                (id, owner_id, content, created_at, last_accessed_at,
                 importance_score, tags, embedding)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.owner_id,
                entry.content,
                to_storage_timestamp(entry.created_at),
                to_storage_timestamp(entry.last_accessed_at),
                entry.importance_score,
                json.dumps(sorted(entry.tags)),
                json.dumps(entry.embedding),
            ),
            commit=True,
        )

    async def update_fields(self, memory_id: str, fields: dict[str, Any]) -> None:
        check_update_fields(fields)
        if not fields:
            return
        assignments = []
        params: list[Any] = []
        for name, value in sorted(fields.items()):
            assignments.append(f"{name} = ?")
            if name == "tags":
                params.append(json.dumps(sorted(value)))
            elif name == "last_accessed_at":
                params.append(to_storage_timestamp(value))
            else:
                params.append(float(value))
        params.append(memory_id)

        updated = await asyncio.to_thread(
            self._run,
            f"UPDATE memories SET {', '.join(assignments)} WHERE id = ?",
            tuple(params),
            commit=True,
        )
        if updated == 0:
            raise PersistenceError(f"Memory {memory_id} not found in backend")

    async def delete(self, memory_id: str) -> bool:
        deleted = await asyncio.to_thread(
            self._run, "DELETE FROM memories WHERE id = ?", (memory_id,), commit=True
        )
        return deleted > 0

    async def close(self) -> None:
        """Close the connection. Idempotent."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> MemoryEntry:
        return MemoryEntry.from_dict({
            "id": row["id"],
            "content": row["content"],
            "created_at": row["created_at"],
            "last_accessed_at": row["last_accessed_at"],
            "importance_score": row["importance_score"],
            "tags": json.loads(row["tags"]),
            "owner_id": row["owner_id"],
            "embedding": json.loads(row["embedding"]),
        })
