"""Core interfaces for the Companion Memory store.

Defines the memory entry data model, the typed results returned by the
store, the error taxonomy, and the contracts that persistence backends and
embedding providers must satisfy.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
import uuid

# Default importance assigned to new memories
DEFAULT_IMPORTANCE = 0.5

# Fixed embedding width used by the reference fallback
DEFAULT_EMBEDDING_DIMENSIONS = 300


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def clamp_importance(score: float) -> float:
    """Clamp an importance score into [0.0, 1.0].

    Out-of-range values are not an error; they are silently clamped.
    """
    return max(0.0, min(1.0, float(score)))


class MemoryStoreError(Exception):
    """Base class for memory store errors."""


class EmbeddingUnavailable(MemoryStoreError):
    """Embedding provider is missing or failed.

    Soft condition: the store falls back to a zero vector and continues.
    """


class PersistenceError(MemoryStoreError):
    """A durable read or write against the persistent backend failed."""


class ResultStatus(Enum):
    """Outcome of a store operation."""
    OK = "ok"
    NOT_FOUND = "not_found"
    PERSISTENCE_ERROR = "persistence_error"
    INVALID = "invalid"


@dataclass
class MemoryEntry:
    """A single stored fact about a user.

    Attributes:
        id: Unique identifier (UUID4 string), immutable.
        content: Non-empty text, immutable after creation.
        created_at: Creation time (UTC), immutable.
        last_accessed_at: Touched on retrieval and on inclusion in search results.
        importance_score: Weight in [0.0, 1.0] protecting the entry from pruning.
        tags: Free-form labels for coarse retrieval.
        owner_id: Owning user; scopes every query.
        embedding: Fixed-dimension vector computed once from content.
    """
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    content: str = ""
    created_at: datetime = field(default_factory=utcnow)
    last_accessed_at: datetime = field(default_factory=utcnow)
    importance_score: float = DEFAULT_IMPORTANCE
    tags: set[str] = field(default_factory=set)
    owner_id: str = ""
    embedding: list[float] = field(default_factory=list)

    def __post_init__(self):
        self.importance_score = clamp_importance(self.importance_score)
        self.tags = set(self.tags)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the persisted entity shape."""
        return {
            "id": self.id,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "last_accessed_at": self.last_accessed_at.isoformat(),
            "importance_score": self.importance_score,
            "tags": sorted(self.tags),
            "owner_id": self.owner_id,
            "embedding": list(self.embedding),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemoryEntry":
        """Build an entry from the persisted entity shape."""
        return cls(
            id=data["id"],
            content=data["content"],
            created_at=_parse_timestamp(data.get("created_at")),
            last_accessed_at=_parse_timestamp(data.get("last_accessed_at")),
            importance_score=data.get("importance_score", DEFAULT_IMPORTANCE),
            tags=set(data.get("tags") or []),
            owner_id=data.get("owner_id", ""),
            embedding=[float(x) for x in data.get("embedding") or []],
        )

    def copy(self) -> "MemoryEntry":
        """Detached copy, safe to hand to callers."""
        return MemoryEntry(
            id=self.id,
            content=self.content,
            created_at=self.created_at,
            last_accessed_at=self.last_accessed_at,
            importance_score=self.importance_score,
            tags=set(self.tags),
            owner_id=self.owner_id,
            embedding=list(self.embedding),
        )

    def __repr__(self) -> str:
        """Concise repr for debugging."""
        preview = self.content[:50] + "..." if len(self.content) > 50 else self.content
        return (
            f"MemoryEntry(id={self.id[:8]}..., content='{preview}', "
            f"owner={self.owner_id}, importance={self.importance_score:.2f})"
        )


def _parse_timestamp(value: Any) -> datetime:
    if value is None or value == "":
        return utcnow()
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class EntryFilter:
    """Predicate handed to backends when listing entries.

    Backends translate it natively (SQL ``WHERE``, LanceDB ``where``);
    ``matches`` is the reference semantics.
    """
    created_before: Optional[datetime] = None
    importance_below: Optional[float] = None

    def __post_init__(self):
        # Stored timestamps are aware; a naive cutoff is taken as UTC
        if self.created_before is not None and self.created_before.tzinfo is None:
            self.created_before = self.created_before.replace(tzinfo=timezone.utc)

    def matches(self, entry: MemoryEntry) -> bool:
        if self.created_before is not None and not entry.created_at < self.created_before:
            return False
        if self.importance_below is not None and not entry.importance_score < self.importance_below:
            return False
        return True


@dataclass
class RecallResult:
    """A memory returned by similarity search, with its score.

    Attributes:
        memory: The recalled memory entry.
        similarity_score: Cosine similarity clamped to [0.0, 1.0].
        retrieval_time_ms: Time spent embedding the query and ranking.
    """
    memory: MemoryEntry
    similarity_score: float
    retrieval_time_ms: float = 0.0

    def __repr__(self) -> str:
        return f"RecallResult(score={self.similarity_score:.3f}, memory_id={self.memory.id[:8]}...)"


@dataclass
class StoreResult:
    """Result of storing a memory."""
    status: ResultStatus
    memory: Optional[MemoryEntry] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status is ResultStatus.OK

    @property
    def memory_id(self) -> Optional[str]:
        return self.memory.id if self.memory else None

    def __repr__(self) -> str:
        if self.success:
            return f"StoreResult(success=True, id={self.memory_id[:8]}...)"
        return f"StoreResult(status={self.status.value}, error='{self.error}')"


@dataclass
class MutationResult:
    """Result of an update or delete on an existing memory."""
    status: ResultStatus
    memory_id: str
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status is ResultStatus.OK


@dataclass
class PruneFailure:
    """A single id that could not be deleted during pruning."""
    memory_id: str
    error: str


@dataclass
class PruneReport:
    """Outcome of a prune pass.

    Attributes:
        removed: Ids deleted from the backend, index and cache.
        failed: Per-id persistence failures; the batch continued past them.
        skipped: Ids not reached before the deadline expired.
        elapsed_ms: Wall time spent on the pass.
    """
    removed: list[str] = field(default_factory=list)
    failed: list[PruneFailure] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "removed": list(self.removed),
            "failed": [{"memory_id": f.memory_id, "error": f.error} for f in self.failed],
            "skipped": list(self.skipped),
            "elapsed_ms": self.elapsed_ms,
        }


class MemoryEventType(Enum):
    """Kinds of change notifications emitted by the store."""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    PRUNED = "pruned"


@dataclass
class MemoryEvent:
    """Change notification delivered to store subscribers."""
    type: MemoryEventType
    memory_id: str
    owner_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)


class IEmbeddingProvider(ABC):
    """Maps a single token to a fixed-dimension vector."""

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Width of every vector this provider returns."""
        pass

    @abstractmethod
    async def vector_for(self, token: str) -> Optional[list[float]]:
        """Vector for ``token``, or None when the token is unknown.

        Raises:
            EmbeddingUnavailable: The provider itself is unreachable or broken.
        """
        pass

    async def vectors_for(self, tokens: list[str]) -> list[Optional[list[float]]]:
        """Vectors for many tokens, aligned with the input.

        Default implementation calls ``vector_for`` per token. Providers
        backed by a remote API should override with a single batch call.
        """
        return [await self.vector_for(t) for t in tokens]

    async def close(self) -> None:
        """Release any held resources."""
        return None


class IPersistentBackend(ABC):
    """Durable CRUD for memory entries, keyed by id.

    Every method raises ``PersistenceError`` when the durable operation fails.
    """

    @abstractmethod
    async def fetch(self, memory_id: str) -> Optional[MemoryEntry]:
        """Fetch one entry, or None when it does not exist."""
        pass

    @abstractmethod
    async def fetch_all(
        self,
        owner_id: Optional[str] = None,
        entry_filter: Optional[EntryFilter] = None,
    ) -> list[MemoryEntry]:
        """List entries, optionally scoped to an owner and filtered.

        ``owner_id=None`` lists every owner (used by maintenance).
        """
        pass

    @abstractmethod
    async def insert(self, entry: MemoryEntry) -> None:
        """Insert a new entry."""
        pass

    @abstractmethod
    async def update_fields(self, memory_id: str, fields: dict[str, Any]) -> None:
        """Update a subset of mutable fields.

        Accepted keys: ``importance_score``, ``last_accessed_at``, ``tags``.
        """
        pass

    @abstractmethod
    async def delete(self, memory_id: str) -> bool:
        """Delete an entry. Returns False when it was already absent."""
        pass

    async def close(self) -> None:
        """Release connections."""
        return None


# Fields a backend may be asked to update
MUTABLE_FIELDS = frozenset({"importance_score", "last_accessed_at", "tags"})
