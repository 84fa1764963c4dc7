"""API route handlers."""

import time
from datetime import timezone

from fastapi import APIRouter, Depends, HTTPException

from ..interfaces import MemoryEntry, MutationResult, PersistenceError, ResultStatus
from ..services import MemoryStore
from ..services.pruning import retention_cutoff
from .config import CompanionMemoryConfig
from .models import (
    HealthResponse,
    ImportanceUpdateRequest,
    MemoryEntryResponse,
    MemoryListResponse,
    MutationResponse,
    PruneFailureResponse,
    PruneRequest,
    PruneResponse,
    SearchResultResponse,
    SimilaritySearchRequest,
    SimilaritySearchResponse,
    StatsResponse,
    StoreMemoryRequest,
    StoreResponse,
    TagSearchRequest,
    TagSearchResponse,
)

router = APIRouter(prefix="/v1", tags=["memory"])


def get_memory_store() -> MemoryStore:
    """Dependency injection for the memory store.

    This is set by the app during startup.
    """
    from .app import _memory_store
    if _memory_store is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _memory_store


def get_config() -> CompanionMemoryConfig:
    from .app import _config
    return _config or CompanionMemoryConfig()


def _entry_to_response(entry: MemoryEntry) -> MemoryEntryResponse:
    """Convert internal MemoryEntry to API response."""
    return MemoryEntryResponse(
        id=entry.id,
        content=entry.content,
        owner_id=entry.owner_id,
        created_at=entry.created_at,
        last_accessed_at=entry.last_accessed_at,
        importance_score=entry.importance_score,
        tags=sorted(entry.tags),
    )


def _mutation_response(result: MutationResult) -> MutationResponse:
    if result.status is ResultStatus.NOT_FOUND:
        raise HTTPException(status_code=404, detail=f"Memory {result.memory_id} not found")
    if result.status is ResultStatus.PERSISTENCE_ERROR:
        raise HTTPException(status_code=503, detail=result.error or "Persistence failure")
    return MutationResponse(success=result.success, memory_id=result.memory_id)


@router.post("/memories", response_model=StoreResponse)
async def store_memory(
    request: StoreMemoryRequest,
    store: MemoryStore = Depends(get_memory_store),
) -> StoreResponse:
    """Store a new memory."""
    result = await store.store_memory(
        content=request.content,
        tags=request.tags,
        owner_id=request.owner_id,
        importance=request.importance,
    )
    if result.status is ResultStatus.PERSISTENCE_ERROR:
        raise HTTPException(status_code=503, detail=result.error)
    return StoreResponse(
        success=result.success,
        memory=_entry_to_response(result.memory) if result.memory else None,
        error=result.error,
    )


@router.get("/memories/{memory_id}", response_model=MemoryEntryResponse)
async def get_memory(
    memory_id: str,
    store: MemoryStore = Depends(get_memory_store),
) -> MemoryEntryResponse:
    """Get a memory by ID."""
    try:
        entry = await store.retrieve_memory(memory_id)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Memory {memory_id} not found")
    return _entry_to_response(entry)


@router.delete("/memories/{memory_id}", response_model=MutationResponse)
async def delete_memory(
    memory_id: str,
    store: MemoryStore = Depends(get_memory_store),
) -> MutationResponse:
    """Delete a memory."""
    return _mutation_response(await store.delete_memory(memory_id))


@router.patch("/memories/{memory_id}/importance", response_model=MutationResponse)
async def update_importance(
    memory_id: str,
    request: ImportanceUpdateRequest,
    store: MemoryStore = Depends(get_memory_store),
) -> MutationResponse:
    """Change a memory's importance."""
    return _mutation_response(
        await store.update_memory_importance(memory_id, request.importance)
    )


@router.post("/search/similar", response_model=SimilaritySearchResponse)
async def search_similar(
    request: SimilaritySearchRequest,
    store: MemoryStore = Depends(get_memory_store),
) -> SimilaritySearchResponse:
    """Recall the owner's memories most relevant to a query."""
    start_time = time.time()
    try:
        results = await store.recall(request.query, request.owner_id, limit=request.limit)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    total_time_ms = (time.time() - start_time) * 1000

    return SimilaritySearchResponse(
        results=[
            SearchResultResponse(
                memory=_entry_to_response(r.memory),
                similarity_score=r.similarity_score,
            )
            for r in results
        ],
        query=request.query,
        total_time_ms=total_time_ms,
    )


@router.post("/search/tags", response_model=TagSearchResponse)
async def search_tags(
    request: TagSearchRequest,
    store: MemoryStore = Depends(get_memory_store),
) -> TagSearchResponse:
    """Recall the owner's most important memories carrying any of the tags."""
    try:
        entries = await store.search_by_tags(request.tags, request.owner_id, limit=request.limit)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return TagSearchResponse(
        results=[_entry_to_response(e) for e in entries],
        tags=request.tags,
    )


@router.get("/owners/{owner_id}/memories", response_model=MemoryListResponse)
async def list_memories(
    owner_id: str,
    store: MemoryStore = Depends(get_memory_store),
) -> MemoryListResponse:
    """List an owner's memories, newest first."""
    try:
        entries = await store.list_memories(owner_id)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return MemoryListResponse(
        owner_id=owner_id,
        memories=[_entry_to_response(e) for e in entries],
    )


@router.post("/prune", response_model=PruneResponse)
async def prune(
    request: PruneRequest,
    store: MemoryStore = Depends(get_memory_store),
    config: CompanionMemoryConfig = Depends(get_config),
) -> PruneResponse:
    """Run a prune pass now."""
    older_than = request.older_than or retention_cutoff(config.pruning.retention_days)
    if older_than.tzinfo is None:
        older_than = older_than.replace(tzinfo=timezone.utc)
    try:
        report = await store.prune_old_memories(
            older_than,
            except_important_ones=request.except_important_ones,
            deadline=config.pruning.deadline_seconds,
        )
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return PruneResponse(
        removed=report.removed,
        failed=[PruneFailureResponse(memory_id=f.memory_id, error=f.error) for f in report.failed],
        skipped=report.skipped,
        elapsed_ms=report.elapsed_ms,
    )


@router.get("/health", response_model=HealthResponse)
async def health(
    store: MemoryStore = Depends(get_memory_store),
) -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", memory_count=len(store))


@router.get("/stats", response_model=StatsResponse)
async def stats(
    store: MemoryStore = Depends(get_memory_store),
) -> StatsResponse:
    """Index and cache statistics."""
    return StatsResponse(**store.stats())
