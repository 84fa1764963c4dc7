"""Pruning policy: which memories are stale enough to remove."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from ..interfaces import EntryFilter, MemoryEntry, utcnow

# Entries at or above this importance survive a protecting prune
DEFAULT_IMPORTANCE_FLOOR = 0.7

# Cutoff age used by the daily maintenance pass
DEFAULT_RETENTION_DAYS = 30


@dataclass
class PruningPolicy:
    """Eligibility rule for removal.

    An entry is eligible when it was created before the cutoff and, when
    important entries are protected, its importance is below the floor.
    """
    importance_floor: float = DEFAULT_IMPORTANCE_FLOOR

    def __post_init__(self):
        if not 0.0 <= self.importance_floor <= 1.0:
            raise ValueError(
                f"importance_floor must be within [0, 1], got {self.importance_floor}"
            )

    def to_filter(self, older_than: datetime, except_important_ones: bool = True) -> EntryFilter:
        return EntryFilter(
            created_before=older_than,
            importance_below=self.importance_floor if except_important_ones else None,
        )

    def is_eligible(
        self,
        entry: MemoryEntry,
        older_than: datetime,
        except_important_ones: bool = True,
    ) -> bool:
        return self.to_filter(older_than, except_important_ones).matches(entry)

    def select(
        self,
        entries: Iterable[MemoryEntry],
        older_than: datetime,
        except_important_ones: bool = True,
    ) -> list[str]:
        """Ids of eligible entries, oldest first."""
        entry_filter = self.to_filter(older_than, except_important_ones)
        eligible = [e for e in entries if entry_filter.matches(e)]
        eligible.sort(key=lambda e: (e.created_at, e.id))
        return [e.id for e in eligible]


def retention_cutoff(days: int = DEFAULT_RETENTION_DAYS, now: Optional[datetime] = None) -> datetime:
    """Cutoff timestamp ``days`` before ``now``."""
    return (now or utcnow()) - timedelta(days=days)
