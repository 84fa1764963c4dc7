"""Shared embedding utilities for mock providers.

Provides consistent, deterministic token vectors for testing.
"""

import hashlib
import math
import random


def hash_to_embedding(token: str, dimensions: int = 300) -> list[float]:
    """Convert a token to a deterministic unit vector.

    The same token (case-insensitive) always maps to the same vector, so
    texts sharing words end up with similar averaged embeddings.

    Args:
        token: Token to embed.
        dimensions: Output embedding dimensions.

    Returns:
        Normalized embedding vector.
    """
    term_hash = hashlib.sha256(token.lower().encode()).digest()
    rng = random.Random(int.from_bytes(term_hash[:8], "big"))
    embedding = [rng.gauss(0, 1) for _ in range(dimensions)]

    norm = math.sqrt(sum(x * x for x in embedding))
    if norm == 0:
        embedding = [1.0] + [0.0] * (dimensions - 1)
        norm = 1.0

    return [x / norm for x in embedding]


def axis_vector(index: int, dimensions: int) -> list[float]:
    """Unit vector along one axis; vectors on different axes are orthogonal."""
    if not 0 <= index < dimensions:
        raise ValueError(f"axis {index} outside 0..{dimensions - 1}")
    vector = [0.0] * dimensions
    vector[index] = 1.0
    return vector
