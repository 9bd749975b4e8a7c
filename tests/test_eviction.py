"""
Unit tests for snippet_kb.eviction

Rank normalisation, victim selection and compaction against a real
RecordStore.
"""

from __future__ import annotations

import math

import pytest

from snippet_kb.eviction import (
    FREQUENCY_WEIGHT,
    RECENCY_WEIGHT,
    EvictionPolicy,
    eviction_scores,
    rank_normalize,
)
from snippet_kb.store.record_store import NewRecord, Record


def _record(rid, count=0, accessed=0.0):
    return Record(rid, f"r{rid}", (1.0, 0.0), None, None, 0.0, accessed, count)


def _fill(store, clock, n):
    ids = []
    for i in range(n):
        clock.advance(1)
        ids.extend(store.insert_batch([NewRecord(f"text {i}", [1.0, float(i)])]))
    return ids


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

class TestRankNormalize:

    def test_distinct_values(self):
        assert rank_normalize([30.0, 10.0, 20.0]) == [1.0, 0.0, 0.5]

    def test_ties_share_average_rank(self):
        assert rank_normalize([1.0, 1.0, 2.0]) == [0.25, 0.25, 1.0]

    def test_degenerate_inputs(self):
        assert rank_normalize([]) == []
        assert rank_normalize([5.0]) == [0.0]
        assert rank_normalize([3.0, 3.0, 3.0]) == [0.0, 0.0, 0.0]

    def test_scale_free(self):
        assert rank_normalize([1.0, 2.0, 3.0]) == rank_normalize([1e9, 2e9, 3e9])


class TestEvictionScores:

    def test_weights(self):
        records = [
            _record(1, count=0, accessed=1.0),
            _record(2, count=9, accessed=2.0),
        ]
        scores = eviction_scores(records)
        assert scores[1] == 0.0
        assert scores[2] == pytest.approx(FREQUENCY_WEIGHT + RECENCY_WEIGHT)

    def test_frequency_outweighs_recency(self):
        records = [
            _record(1, count=10, accessed=1.0),  # popular but stale
            _record(2, count=0, accessed=100.0),  # fresh but unused
        ]
        scores = eviction_scores(records)
        assert scores[2] < scores[1]


# ---------------------------------------------------------------------------
# EvictionPolicy
# ---------------------------------------------------------------------------

class TestPolicyConfig:

    @pytest.mark.parametrize("fraction", [0.0, 1.0, -0.1, 1.5])
    def test_invalid_prune_fraction(self, fraction):
        with pytest.raises(ValueError):
            EvictionPolicy(prune_fraction=fraction)


class TestSelectVictims:

    def test_lowest_scores_first(self):
        policy = EvictionPolicy(prune_fraction=0.5)
        records = [
            _record(1, count=5, accessed=5.0),
            _record(2, count=0, accessed=1.0),
            _record(3, count=1, accessed=2.0),
            _record(4, count=9, accessed=9.0),
        ]
        assert policy.select_victims(records) == [2, 3]

    def test_ties_broken_by_age_then_id(self):
        policy = EvictionPolicy(prune_fraction=0.5)
        records = [_record(i, count=0, accessed=0.0) for i in (4, 2, 3, 1)]
        assert policy.select_victims(records) == [1, 2]

    def test_empty(self):
        assert EvictionPolicy().select_victims([]) == []

    def test_monotonic_cut(self):
        """Every survivor scores at least as high as every victim."""
        policy = EvictionPolicy(prune_fraction=0.3)
        records = [_record(i, count=(i * 7) % 5, accessed=float((i * 3) % 11))
                   for i in range(1, 21)]
        victims = set(policy.select_victims(records))
        assert len(victims) == 6
        scores = eviction_scores(records)
        survivors = [r.id for r in records if r.id not in victims]
        assert max(scores[v] for v in victims) <= min(scores[s] for s in survivors)


class TestCompact:

    def test_noop_within_budget(self, store, clock):
        _fill(store, clock, 3)
        policy = EvictionPolicy(max_records=10)
        assert not policy.should_compact(store)
        assert policy.compact(store) == 0
        assert store.count() == 3

    def test_over_record_budget(self, store, clock):
        _fill(store, clock, 5)
        policy = EvictionPolicy(max_records=4, prune_fraction=0.25)
        assert policy.should_compact(store)
        removed = policy.compact(store)
        assert removed == 2
        assert store.count() == 3

    def test_over_byte_budget(self, store, clock):
        _fill(store, clock, 4)
        policy = EvictionPolicy(byte_threshold=store.estimated_byte_size() - 1,
                                prune_fraction=0.5)
        assert policy.should_compact(store)
        assert policy.compact(store) == 2

    @pytest.mark.parametrize("n", [4, 5, 8, 13])
    def test_remaining_count(self, store, clock, n):
        _fill(store, clock, n)
        policy = EvictionPolicy(max_records=0, prune_fraction=0.25)
        policy.compact(store)
        assert store.count() == n - math.ceil(n * 0.25)

    def test_evicts_least_used(self, store, clock):
        ids = _fill(store, clock, 4)
        clock.advance(10)
        store.touch([ids[0], ids[2]])
        store.touch([ids[0]])
        policy = EvictionPolicy(max_records=3, prune_fraction=0.5)
        policy.compact(store)
        assert sorted(r.id for r in store.scan_all()) == [ids[0], ids[2]]

    def test_exempt_ids_survive(self, store, clock):
        ids = _fill(store, clock, 6)
        policy = EvictionPolicy(max_records=1, prune_fraction=0.5)
        removed = policy.compact(store, exempt_ids=ids[:2])
        remaining = {r.id for r in store.scan_all()}
        assert set(ids[:2]) <= remaining
        assert removed == 2

    def test_force_ignores_budget(self, store, clock):
        _fill(store, clock, 4)
        policy = EvictionPolicy(max_records=100, prune_fraction=0.25)
        assert policy.compact(store, force=True) == 1
        assert store.count() == 3
