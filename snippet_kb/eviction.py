"""
Access-aware eviction for the record store.

When the store exceeds its byte or record budget, the least valuable
records are dropped.  Value is a weighted mix of access frequency and
recency, each converted to a rank in ``[0, 1]`` across the current record
set so neither unit dominates the other.
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, Sequence

from .store.record_store import Record, RecordStore

logger = logging.getLogger(__name__)

FREQUENCY_WEIGHT = 0.7
RECENCY_WEIGHT = 0.3


def rank_normalize(values: Sequence[float]) -> list[float]:
    """Map each value to its rank in ``[0, 1]`` (ties share the average rank).

    The smallest value maps to 0 and the largest to 1.  A single value, or
    a set of identical values, maps to 0.
    """
    n = len(values)
    if n <= 1:
        return [0.0] * n
    order = sorted(range(n), key=lambda i: values[i])
    ranks = [0.0] * n
    i = 0
    while i < n:
        j = i
        while j + 1 < n and values[order[j + 1]] == values[order[i]]:
            j += 1
        avg = (i + j) / 2.0
        for pos in range(i, j + 1):
            ranks[order[pos]] = avg
        i = j + 1
    top = n - 1
    if all(r == ranks[0] for r in ranks):
        return [0.0] * n
    return [r / top for r in ranks]


def eviction_scores(records: Sequence[Record]) -> dict[int, float]:
    """Return ``{record_id: eviction_score}``; lower scores are evicted first."""
    frequency = rank_normalize([float(r.access_count) for r in records])
    recency = rank_normalize([r.last_accessed_at for r in records])
    return {
        rec.id: FREQUENCY_WEIGHT * f + RECENCY_WEIGHT * t
        for rec, f, t in zip(records, frequency, recency)
    }


class EvictionPolicy:
    """
    Decides when the store is over budget and which records to drop.

    Parameters
    ----------
    byte_threshold:
        Compact when :meth:`RecordStore.estimated_byte_size` exceeds this.
    max_records:
        Compact when :meth:`RecordStore.count` exceeds this.
    prune_fraction:
        Fraction of the (non-exempt) records removed by one compaction.
    """

    def __init__(self, byte_threshold: int = 4_000_000, max_records: int = 10_000,
                 prune_fraction: float = 0.25) -> None:
        if not 0.0 < prune_fraction < 1.0:
            raise ValueError("prune_fraction must be in (0, 1)")
        self.byte_threshold = byte_threshold
        self.max_records = max_records
        self.prune_fraction = prune_fraction

    def should_compact(self, store: RecordStore) -> bool:
        return (store.estimated_byte_size() > self.byte_threshold
                or store.count() > self.max_records)

    def select_victims(self, records: Sequence[Record]) -> list[int]:
        """Ids of the lowest-scoring ``ceil(len(records) * prune_fraction)`` records."""
        if not records:
            return []
        scores = eviction_scores(records)
        ordered = sorted(
            records,
            key=lambda r: (scores[r.id], r.last_accessed_at, r.id),
        )
        # round() first: 20 * 0.3 is 6.000000000000001 in binary floating point
        n_victims = math.ceil(round(len(records) * self.prune_fraction, 9))
        return [r.id for r in ordered[:n_victims]]

    def compact(self, store: RecordStore, exempt_ids: Iterable[int] = (),
                force: bool = False) -> int:
        """Drop the least valuable records; return how many were deleted.

        A no-op unless :meth:`should_compact` is true or *force* is set.
        Records in *exempt_ids* (the batch being inserted) are never
        candidates and do not count toward the pruned fraction.
        """
        if not force and not self.should_compact(store):
            return 0

        exempt = set(exempt_ids)
        candidates = [r for r in store.scan_all() if r.id not in exempt]
        victims = self.select_victims(candidates)
        if not victims:
            return 0

        deleted = store.delete(victims)
        logger.info(
            "[EvictionPolicy] Compacted store: removed %d of %d records "
            "(%d exempt)", deleted, len(candidates), len(exempt),
        )
        return deleted
