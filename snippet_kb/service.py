"""
KnowledgeService — the entry point external collaborators call.

Orchestrates the vault, the embedding client, the record store, the
similarity engine and the eviction policy::

    store:  credential check -> embed (retried) -> insert -> maybe compact
    search: credential check -> embed query (retried) -> scan -> rank -> touch

Retries apply only to transient failures (rate limiting, transport errors,
transient service errors) and use jittered exponential backoff.  Every
other error reaches the caller untranslated.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Sequence, TypeVar

from .embedding.base import EmbeddingClient
from .errors import AuthError, DimensionMismatchError, KBError, RateLimited, StorageFull
from .eviction import EvictionPolicy
from .operations import OperationRegistry
from .progress import ProgressReporter, ProgressTask
from .similarity import SimilarityEngine
from .store.record_store import NewRecord, RecordStore
from .vault import KeyVault

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Snippet:
    """A captured piece of text with optional provenance."""

    text: str
    url: Optional[str] = None
    title: Optional[str] = None


@dataclass(frozen=True)
class SearchResult:
    """One ranked hit.  Carries no embedding."""

    id: int
    text: str
    url: Optional[str]
    title: Optional[str]
    similarity: float


@dataclass(frozen=True)
class KBStats:
    count: int
    byte_size: int
    dimension: Optional[int]
    byte_threshold: int
    max_records: int
    over_budget: bool


def _coerce_snippet(item: Any) -> Snippet:
    if isinstance(item, Snippet):
        snippet = item
    elif isinstance(item, str):
        snippet = Snippet(item)
    elif isinstance(item, dict):
        snippet = Snippet(item.get("text", ""), item.get("url"), item.get("title"))
    elif isinstance(item, (tuple, list)) and 1 <= len(item) <= 3:
        snippet = Snippet(*item)
    else:
        raise ValueError(f"cannot interpret {type(item).__name__} as a snippet")
    if not isinstance(snippet.text, str) or not snippet.text.strip():
        raise ValueError("snippet text must be a non-empty string")
    return snippet


class KnowledgeService:
    """
    Store and search snippets.

    Parameters
    ----------
    store, embedder, vault, policy, engine:
        The collaborating components.
    batch_size:
        Maximum number of texts per embedding call.
    top_k:
        Default number of search results.
    retry_count:
        Total attempts for a retryable embedding failure.
    retry_base_delay:
        Delay in seconds before the first retry; doubles each attempt.
    max_retry_delay:
        Upper bound on any single wait, including a server-sent Retry-After.
    operations:
        Registry recording each store/search call.
    sleep:
        Injectable for tests.
    """

    def __init__(
        self,
        store: RecordStore,
        embedder: EmbeddingClient,
        vault: KeyVault,
        policy: EvictionPolicy,
        engine: SimilarityEngine,
        *,
        batch_size: int = 5,
        top_k: int = 3,
        retry_count: int = 3,
        retry_base_delay: float = 1.0,
        max_retry_delay: float = 60.0,
        operations: Optional[OperationRegistry] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._vault = vault
        self._policy = policy
        self._engine = engine
        self.batch_size = max(1, batch_size)
        self.top_k = top_k
        self.retry_count = max(1, retry_count)
        self.retry_base_delay = retry_base_delay
        self.max_retry_delay = max_retry_delay
        self.operations = operations or OperationRegistry()
        self._sleep = sleep
        # Serialises insertion against compaction.
        self._write_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def store(self, text: str, url: Optional[str] = None,
              title: Optional[str] = None) -> int:
        """Embed and persist one snippet; return its record id."""
        return self.store_batch([Snippet(text, url, title)])[0]

    def store_batch(self, items: Iterable[Any],
                    reporter: Optional[ProgressReporter] = None) -> List[int]:
        """Embed and persist many snippets in chunks of ``batch_size``.

        Each chunk is inserted atomically once its embeddings arrive, so a
        failure part-way leaves earlier chunks stored and no partial chunk.
        """
        snippets = [_coerce_snippet(item) for item in items]
        if not snippets:
            return []

        with self.operations.track("store"):
            self._require_credential()
            total = len(snippets)
            ids: List[int] = []
            for start in range(0, total, self.batch_size):
                chunk = snippets[start:start + self.batch_size]
                if reporter:
                    reporter.report(start / total,
                                    f"embedding {start + 1}-{start + len(chunk)} of {total}")
                texts = [s.text for s in chunk]
                vectors = self._with_retry(lambda: self._embedder.embed_batch(texts),
                                           "embed")
                records = [NewRecord(s.text, vec, s.url, s.title)
                           for s, vec in zip(chunk, vectors)]
                ids.extend(self._insert(records))
            if reporter:
                reporter.report(1.0, f"stored {total} snippet(s)")
            logger.info("[KnowledgeService] Stored %d snippet(s)", total)
            return ids

    def start_store_batch(self, items: Iterable[Any]) -> ProgressTask[List[int]]:
        """Run :meth:`store_batch` in the background with progress events."""
        snippets = [_coerce_snippet(item) for item in items]
        return ProgressTask(
            lambda reporter: self.store_batch(snippets, reporter=reporter),
            name="snippet-kb-store-batch",
        ).start()

    def _insert(self, records: Sequence[NewRecord]) -> List[int]:
        with self._write_lock:
            try:
                ids = self._store.insert_batch(records)
            except StorageFull:
                logger.warning("[KnowledgeService] Storage full; compacting and retrying once")
                self._policy.compact(self._store, force=True)
                ids = self._store.insert_batch(records)
            if self._policy.should_compact(self._store):
                self._policy.compact(self._store, exempt_ids=ids)
        return ids

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, query: str, k: Optional[int] = None) -> List[SearchResult]:
        """Return the *k* stored snippets most similar to *query*."""
        if not isinstance(query, str) or not query.strip():
            raise ValueError("query must be a non-empty string")
        k = self.top_k if k is None else k

        with self.operations.track("search"):
            self._require_credential()
            [query_vec] = self._with_retry(lambda: self._embedder.embed_batch([query]),
                                           "embed query")
            dimension = self._store.embedding_dimension()
            if dimension is not None and len(query_vec) != dimension:
                raise DimensionMismatchError(dimension, len(query_vec))

            candidates = self._store.scan_all()
            ranked = self._engine.top_k(query_vec, candidates, k)
            # Best effort: never fails the search.
            self._store.touch(item.record.id for item in ranked)

        logger.debug("[KnowledgeService] Search over %d records returned %d hit(s)",
                     len(candidates), len(ranked))
        return [
            SearchResult(
                id=item.record.id,
                text=item.record.text,
                url=item.record.source_url,
                title=item.record.source_title,
                similarity=item.score,
            )
            for item in ranked
        ]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def delete(self, ids: Iterable[int]) -> int:
        with self._write_lock:
            return self._store.delete(ids)

    def compact(self, force: bool = False) -> int:
        with self._write_lock:
            return self._policy.compact(self._store, force=force)

    def stats(self) -> KBStats:
        return KBStats(
            count=self._store.count(),
            byte_size=self._store.estimated_byte_size(),
            dimension=self._store.embedding_dimension(),
            byte_threshold=self._policy.byte_threshold,
            max_records=self._policy.max_records,
            over_budget=self._policy.should_compact(self._store),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_credential(self) -> None:
        if not self._embedder.requires_credential:
            return
        if not self._vault.get_secret():
            raise AuthError("no API key stored")

    def _with_retry(self, fn: Callable[[], T], what: str) -> T:
        """Call *fn*, retrying retryable errors with jittered backoff."""
        for attempt in range(1, self.retry_count + 1):
            try:
                return fn()
            except KBError as exc:
                if not exc.retryable or attempt >= self.retry_count:
                    raise
                wait = self.retry_base_delay * (2 ** (attempt - 1))
                if isinstance(exc, RateLimited):
                    wait = max(wait * 2, exc.retry_after or 0.0)
                wait += wait * 0.1 * random.random()
                wait = min(wait, self.max_retry_delay)
                logger.warning(
                    "[KnowledgeService] %s failed (attempt %d/%d): %s; retrying in %.2fs",
                    what, attempt, self.retry_count, exc, wait,
                )
                self._sleep(wait)
        raise AssertionError("unreachable")
