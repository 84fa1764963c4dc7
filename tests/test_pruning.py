"""Tests for the pruning policy."""

from datetime import datetime, timedelta, timezone

import pytest

from companionmemory.interfaces import EntryFilter, MemoryEntry, utcnow
from companionmemory.services.pruning import (
    DEFAULT_IMPORTANCE_FLOOR,
    PruningPolicy,
    retention_cutoff,
)


def _entry(memory_id, age_days, importance):
    return MemoryEntry(
        id=memory_id,
        content=memory_id,
        owner_id="u1",
        importance_score=importance,
        created_at=utcnow() - timedelta(days=age_days),
    )


class TestPruningPolicy:

    def test_default_floor(self):
        assert PruningPolicy().importance_floor == DEFAULT_IMPORTANCE_FLOOR == 0.7

    def test_rejects_out_of_range_floor(self):
        with pytest.raises(ValueError, match="importance_floor"):
            PruningPolicy(importance_floor=1.5)

    def test_young_entries_are_not_eligible(self):
        policy = PruningPolicy()
        cutoff = retention_cutoff(30)
        assert not policy.is_eligible(_entry("young", 5, 0.1), cutoff)

    def test_important_entries_survive_any_age(self):
        policy = PruningPolicy()
        cutoff = retention_cutoff(30)
        assert not policy.is_eligible(_entry("old-important", 3650, 0.7), cutoff)
        assert policy.is_eligible(_entry("old-minor", 3650, 0.69), cutoff)

    def test_unprotected_pass_ignores_importance(self):
        policy = PruningPolicy()
        cutoff = retention_cutoff(30)
        assert policy.is_eligible(
            _entry("old-important", 60, 1.0), cutoff, except_important_ones=False,
        )

    def test_custom_floor(self):
        policy = PruningPolicy(importance_floor=0.9)
        cutoff = retention_cutoff(30)
        assert policy.is_eligible(_entry("old", 60, 0.8), cutoff)

    def test_select_orders_oldest_first(self):
        policy = PruningPolicy()
        entries = [
            _entry("newer", 40, 0.1),
            _entry("oldest", 400, 0.1),
            _entry("kept", 400, 0.95),
            _entry("recent", 1, 0.1),
        ]
        assert policy.select(entries, retention_cutoff(30)) == ["oldest", "newer"]

    def test_to_filter(self):
        cutoff = retention_cutoff(30)
        assert PruningPolicy().to_filter(cutoff) == EntryFilter(
            created_before=cutoff, importance_below=0.7,
        )
        assert PruningPolicy().to_filter(cutoff, except_important_ones=False) == EntryFilter(
            created_before=cutoff, importance_below=None,
        )

    def test_naive_cutoff_is_treated_as_utc(self):
        naive = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=30)
        entry_filter = PruningPolicy().to_filter(naive)
        assert entry_filter.created_before == naive.replace(tzinfo=timezone.utc)
        assert entry_filter.matches(_entry("stale", 60, 0.1))
        assert not entry_filter.matches(_entry("fresh", 5, 0.1))


def test_retention_cutoff():
    now = utcnow()
    assert retention_cutoff(30, now=now) == now - timedelta(days=30)
