"""Cosine similarity and deterministic ranking of memory entries.

Exhaustive scan over one owner's corpus; no approximate index.
"""

from datetime import datetime
from typing import Iterable

from ..interfaces import MemoryEntry
from ..utils import vector_norm


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Calculate cosine similarity between two embeddings.

    Returns 0.0 whenever either vector has zero magnitude, so entries that
    fell back to the zero vector all score the same.
    Vectors of different lengths are not comparable and also score 0.0.
    """
    if len(a) != len(b) or not a:
        return 0.0

    norm_a = vector_norm(a)
    norm_b = vector_norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    dot_product = sum(x * y for x, y in zip(a, b))
    return dot_product / (norm_a * norm_b)


def _recency_key(ts: datetime) -> float:
    return -ts.timestamp()


def rank_by_similarity(
    query_embedding: list[float],
    candidates: Iterable[MemoryEntry],
    limit: int,
) -> list[tuple[MemoryEntry, float]]:
    """Score candidates against the query and return the top ``limit``.

    Ordering: entries with a zero embedding after every other entry, then
    raw cosine descending (so negative similarities keep their order), then
    ``last_accessed_at`` descending, then ``id`` ascending. Reported scores
    are clamped to [0, 1].
    """
    if limit <= 0:
        return []
    scored = [
        (entry, cosine_similarity(query_embedding, entry.embedding))
        for entry in candidates
    ]
    scored.sort(key=lambda pair: (
        not any(pair[0].embedding),
        -pair[1],
        _recency_key(pair[0].last_accessed_at),
        pair[0].id,
    ))
    return [(entry, max(0.0, score)) for entry, score in scored[:limit]]


def rank_by_importance(
    tags: Iterable[str],
    candidates: Iterable[MemoryEntry],
    limit: int,
) -> list[MemoryEntry]:
    """Entries whose tags intersect ``tags``, most important first.

    Ordering: ``importance_score`` descending, then ``last_accessed_at``
    descending, then ``id`` ascending.
    """
    wanted = set(tags)
    if limit <= 0 or not wanted:
        return []
    matches = [entry for entry in candidates if entry.tags & wanted]
    matches.sort(key=lambda e: (-e.importance_score, _recency_key(e.last_accessed_at), e.id))
    return matches[:limit]
