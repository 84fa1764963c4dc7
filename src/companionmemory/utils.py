"""Shared utility functions for Companion Memory.

Vector helpers used by the embedding generator, the similarity search
and the embedding providers.
"""

import math


def vector_norm(vector: list[float]) -> float:
    """L2 magnitude of a vector."""
    return math.sqrt(sum(x * x for x in vector))


def normalize_embedding(embedding: list[float]) -> list[float]:
    """Normalize embedding to unit length for consistent similarity math.

    Args:
        embedding: Vector of floats representing an embedding.

    Returns:
        Normalized embedding with unit length (L2 norm = 1).
        Returns the original embedding if it has zero magnitude.
    """
    norm = vector_norm(embedding)
    if norm == 0:
        return embedding
    return [x / norm for x in embedding]


def zero_vector(dimensions: int) -> list[float]:
    """Fixed-dimension zero vector used as the embedding fallback."""
    return [0.0] * dimensions


def mean_vector(vectors: list[list[float]]) -> list[float]:
    """Element-wise mean of equally sized vectors."""
    if not vectors:
        return []
    width = len(vectors[0])
    total = [0.0] * width
    for vector in vectors:
        for i, value in enumerate(vector):
            total[i] += value
    count = float(len(vectors))
    return [x / count for x in total]
