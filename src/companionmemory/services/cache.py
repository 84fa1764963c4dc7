"""Bounded, thread-safe LRU cache of memory entries keyed by id.

The cache only holds an in-process shortcut: evicting an entry never
touches the persistent backend.
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

from ..interfaces import MemoryEntry

logger = logging.getLogger(__name__)

DEFAULT_CACHE_CAPACITY = 100


@dataclass
class CacheStats:
    """Counters exposed by ``LRUCache.stats``."""
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    size: int = 0
    capacity: int = DEFAULT_CACHE_CAPACITY

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class LRUCache:
    """Least-recently-used map from memory id to entry.

    Both ``get`` and ``put`` count as an access and move the key to the
    most-recently-used end. Inserting beyond ``capacity`` evicts the key
    at the least-recently-used end.
    """

    def __init__(self, capacity: int = DEFAULT_CACHE_CAPACITY):
        if capacity < 1:
            raise ValueError(f"Cache capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._items: "OrderedDict[str, MemoryEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, memory_id: str) -> Optional[MemoryEntry]:
        with self._lock:
            entry = self._items.get(memory_id)
            if entry is None:
                self._misses += 1
                logger.debug("Cache miss: %s", memory_id)
                return None
            self._items.move_to_end(memory_id)
            self._hits += 1
            logger.debug("Cache hit: %s", memory_id)
            return entry

    def put(self, entry: MemoryEntry) -> Optional[str]:
        """Insert or refresh an entry.

        Returns:
            The id evicted to make room, if any.
        """
        evicted = None
        with self._lock:
            if entry.id in self._items:
                self._items.move_to_end(entry.id)
            self._items[entry.id] = entry
            if len(self._items) > self.capacity:
                evicted, _ = self._items.popitem(last=False)
                self._evictions += 1
        if evicted is not None:
            logger.debug("Cache evicted: %s", evicted)
        return evicted

    def remove(self, memory_id: str) -> bool:
        with self._lock:
            return self._items.pop(memory_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def keys(self) -> list[str]:
        """Ids from least to most recently used."""
        with self._lock:
            return list(self._items.keys())

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                size=len(self._items),
                capacity=self.capacity,
            )

    def __contains__(self, memory_id: str) -> bool:
        with self._lock:
            return memory_id in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
