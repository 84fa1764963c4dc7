"""Pytest fixtures for Companion Memory tests."""

from datetime import timedelta

import pytest

from companionmemory.interfaces import utcnow
from companionmemory.services import InMemoryBackend, MemoryStore
from companionmemory.testing import (
    FlakyBackend,
    MockEmbeddingProvider,
    StaticEmbeddingProvider,
    axis_vector,
)

DIMENSIONS = 16


@pytest.fixture
def embedding_provider():
    """Provide a deterministic mock embedding provider."""
    return MockEmbeddingProvider(dimensions=DIMENSIONS)


@pytest.fixture
def backend():
    """Provide an in-memory persistent backend."""
    return InMemoryBackend()


@pytest.fixture
def flaky_backend():
    """Provide a failure-injecting backend (no failures until configured)."""
    return FlakyBackend()


@pytest.fixture
async def store(backend, embedding_provider):
    """Provide a memory store over the in-memory backend."""
    memory_store = MemoryStore(backend=backend, embedding_provider=embedding_provider)
    yield memory_store
    await memory_store.flush()


@pytest.fixture
async def flaky_store(flaky_backend, embedding_provider):
    """Provide a memory store whose backend can be told to fail."""
    memory_store = MemoryStore(backend=flaky_backend, embedding_provider=embedding_provider)
    yield memory_store
    flaky_backend.fail_operations.clear()
    await memory_store.flush()


@pytest.fixture
def topic_provider():
    """Static provider placing hobbies, food and work on orthogonal axes."""
    hiking = axis_vector(0, 3)
    food = axis_vector(1, 3)
    work = axis_vector(2, 3)
    return StaticEmbeddingProvider({
        "hiking": hiking,
        "pizza": food,
        "food": food,
        "work": work,
        "engineer": work,
    })


@pytest.fixture
def long_ago():
    """A timestamp well past the default retention window."""
    return utcnow() - timedelta(days=90)
