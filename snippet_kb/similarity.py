"""
Brute-force cosine similarity ranking over a record set.

Scoring is fanned out over a fixed-size thread pool: the candidates are
split into contiguous chunks, each worker ranks its chunk on its own, and
the partial rankings are merged.  Each score is computed row by row with
the same arithmetic regardless of chunking, so the merged result is
identical to a single-worker run.
"""

from __future__ import annotations

import heapq
import logging
import math
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .store.record_store import Record

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoredRecord:
    """A record paired with its similarity to the query."""

    record: Record
    score: float


def _norm(vec: np.ndarray) -> float:
    return math.sqrt(float(np.dot(vec, vec)))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of *a* and *b*; ``0.0`` if either has zero magnitude."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    return _cosine(va, _norm(va), vb)


def _cosine(query: np.ndarray, query_norm: float, vec: np.ndarray) -> float:
    vec_norm = _norm(vec)
    if query_norm == 0.0 or vec_norm == 0.0:
        return 0.0
    score = float(np.dot(query, vec)) / (query_norm * vec_norm)
    return max(-1.0, min(1.0, score))


def _rank_key(item: ScoredRecord) -> tuple[float, float, int]:
    # score desc, then most recently accessed, then lowest id
    return (-item.score, -item.record.last_accessed_at, item.record.id)


def _score_chunk(query: np.ndarray, query_norm: float,
                 chunk: Sequence[Record], k: int) -> list[ScoredRecord]:
    """Score one chunk and return its own top-*k*, ranked."""
    scored = [
        ScoredRecord(rec, _cosine(query, query_norm,
                                  np.asarray(rec.embedding, dtype=np.float64)))
        for rec in chunk
    ]
    scored.sort(key=_rank_key)
    return scored[:k]


def _partition(candidates: Sequence[Record], parts: int) -> list[Sequence[Record]]:
    """Split *candidates* into at most *parts* contiguous, near-equal chunks."""
    n = len(candidates)
    parts = max(1, min(parts, n))
    size, extra = divmod(n, parts)
    chunks = []
    start = 0
    for i in range(parts):
        end = start + size + (1 if i < extra else 0)
        chunks.append(candidates[start:end])
        start = end
    return chunks


class SimilarityEngine:
    """
    Ranks records by cosine similarity using a fixed-size worker pool.

    Parameters
    ----------
    worker_count:
        Pool size.  ``None`` or ``0`` uses the CPU count; minimum 1.
    """

    def __init__(self, worker_count: Optional[int] = None) -> None:
        if not worker_count:
            worker_count = os.cpu_count() or 1
        self.worker_count = max(1, worker_count)
        self._pool: ThreadPoolExecutor | None = None

    def _get_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self.worker_count,
                thread_name_prefix="snippet-kb-score",
            )
        return self._pool

    def top_k(self, query: Sequence[float], candidates: Sequence[Record],
              k: int) -> list[ScoredRecord]:
        """Return the *k* candidates most similar to *query*, best first.

        Ties are broken by ``last_accessed_at`` (newest first) and then by
        ``id`` (lowest first).  *k* is clamped to ``[0, len(candidates)]``.
        """
        k = max(0, min(k, len(candidates)))
        if k == 0:
            return []

        q = np.asarray(query, dtype=np.float64)
        q_norm = _norm(q)
        chunks = _partition(candidates, self.worker_count)

        if len(chunks) == 1:
            partials = [_score_chunk(q, q_norm, chunks[0], k)]
        else:
            pool = self._get_pool()
            futures = [pool.submit(_score_chunk, q, q_norm, chunk, k)
                       for chunk in chunks]
            # Join point: every chunk finishes before merging.
            partials = [f.result() for f in futures]

        merged = heapq.merge(*partials, key=_rank_key)
        result = [item for _, item in zip(range(k), merged)]
        logger.debug("[SimilarityEngine] Ranked %d candidates over %d chunk(s)",
                     len(candidates), len(chunks))
        return result

    def close(self) -> None:
        """Shut down the worker pool."""
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
