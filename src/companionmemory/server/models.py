"""Pydantic models for HTTP API request/response."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


# =============================================================================
# Request Models
# =============================================================================

class StoreMemoryRequest(BaseModel):
    """Request to store a new memory."""
    content: str = Field(..., description="The fact to remember")
    owner_id: str = Field(..., description="Owning user")
    tags: list[str] = Field(
        default_factory=list,
        description="Tags for coarse retrieval"
    )
    importance: float = Field(
        default=0.5,
        description="Importance in [0, 1]; out-of-range values are clamped"
    )


class SimilaritySearchRequest(BaseModel):
    """Request to search memories by semantic similarity."""
    query: str = Field(..., description="Natural language search query")
    owner_id: str = Field(..., description="Owner whose memories are searched")
    limit: int = Field(default=5, ge=1, le=50, description="Maximum results")


class TagSearchRequest(BaseModel):
    """Request to search memories by tag."""
    tags: list[str] = Field(..., min_length=1, description="Tags to match (any)")
    owner_id: str = Field(..., description="Owner whose memories are searched")
    limit: int = Field(default=5, ge=1, le=50, description="Maximum results")


class ImportanceUpdateRequest(BaseModel):
    """Request to change a memory's importance."""
    importance: float = Field(..., description="New importance; clamped to [0, 1]")


class PruneRequest(BaseModel):
    """Request to prune stale memories."""
    older_than: Optional[datetime] = Field(
        default=None,
        description="Creation-time cutoff (default: now minus retention_days)"
    )
    except_important_ones: bool = Field(
        default=True,
        description="Keep memories at or above the importance floor"
    )


# =============================================================================
# Response Models
# =============================================================================

class MemoryEntryResponse(BaseModel):
    """A single memory entry (embedding omitted)."""
    id: str
    content: str
    owner_id: str
    created_at: datetime
    last_accessed_at: datetime
    importance_score: float
    tags: list[str]

    model_config = {"from_attributes": True}


class StoreResponse(BaseModel):
    """Response from storing a memory."""
    success: bool
    memory: Optional[MemoryEntryResponse] = None
    error: Optional[str] = None


class SearchResultResponse(BaseModel):
    """A single similarity search hit."""
    memory: MemoryEntryResponse
    similarity_score: float


class SimilaritySearchResponse(BaseModel):
    """Response from similarity search."""
    results: list[SearchResultResponse]
    query: str
    total_time_ms: float


class TagSearchResponse(BaseModel):
    """Response from tag search."""
    results: list[MemoryEntryResponse]
    tags: list[str]


class MemoryListResponse(BaseModel):
    """An owner's memories, newest first."""
    owner_id: str
    memories: list[MemoryEntryResponse]


class MutationResponse(BaseModel):
    """Response from an update or delete."""
    success: bool
    memory_id: str


class PruneFailureResponse(BaseModel):
    memory_id: str
    error: str


class PruneResponse(BaseModel):
    """Response from a prune pass."""
    removed: list[str]
    failed: list[PruneFailureResponse]
    skipped: list[str]
    elapsed_ms: float


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "ok"
    memory_count: int
    version: str = "0.1.0"


class CacheStatsResponse(BaseModel):
    size: int
    capacity: int
    hits: int
    misses: int
    evictions: int
    hit_rate: float


class StatsResponse(BaseModel):
    """Memory statistics response."""
    total_memories: int
    by_owner: dict[str, int]
    dimensions: int
    pending_touches: int
    cache: CacheStatsResponse
