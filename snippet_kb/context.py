"""
KBContext — owns every long-lived resource of one knowledge base.

Replaces module-level state: the record store, vault, embedding client,
worker pool and operation registry are created by :meth:`KBContext.open`
and released by :meth:`KBContext.close`.

Usage::

    with KBContext(Config.load()) as ctx:
        ctx.vault.store_secret("sk-...")
        ctx.service.store("Paris is the capital of France", url, title)
        hits = ctx.service.search("capital of France")
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from .config import Config
from .device import device_identity
from .embedding.base import EmbeddingClient
from .embedding.factory import client_from_config
from .eviction import EvictionPolicy
from .operations import OperationRegistry
from .service import KnowledgeService
from .similarity import SimilarityEngine
from .store.kv_store import KeyValueStore
from .store.record_store import RecordStore
from .vault import KeyVault

logger = logging.getLogger(__name__)


class KBContext:
    """
    Explicit lifecycle for the knowledge base components.

    Parameters
    ----------
    config:
        Resolved configuration.
    embedder:
        Optional pre-built embedding client (tests, custom backends).  When
        omitted the client is built from ``config.EMBEDDING_BACKEND``.
    """

    def __init__(self, config: Optional[Config] = None,
                 embedder: Optional[EmbeddingClient] = None) -> None:
        self.config = config or Config.load()
        self._embedder_override = embedder
        self._lock = threading.Lock()
        self._open = False
        self.operations = OperationRegistry()
        self._store: Optional[RecordStore] = None
        self._vault: Optional[KeyVault] = None
        self._embedder: Optional[EmbeddingClient] = None
        self._engine: Optional[SimilarityEngine] = None
        self._service: Optional[KnowledgeService] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "KBContext":
        with self._lock:
            if self._open:
                return self
            cfg = self.config
            db_path = cfg.db_path
            self._store = RecordStore(db_path, quota_bytes=cfg.STORAGE_QUOTA_BYTES)
            self._vault = KeyVault(KeyValueStore(db_path),
                                   identity=device_identity(cfg.DEVICE_ID))
            try:
                self._embedder = self._embedder_override or client_from_config(
                    cfg, credential_provider=self._vault.get_secret
                )
            except Exception:
                self._store.close()
                self._store = None
                self._vault = None
                raise
            self._embedder.initialize()
            self._engine = SimilarityEngine(cfg.effective_worker_count())
            policy = EvictionPolicy(
                byte_threshold=cfg.BYTE_THRESHOLD,
                max_records=cfg.MAX_RECORDS,
                prune_fraction=cfg.PRUNE_FRACTION,
            )
            self._service = KnowledgeService(
                self._store,
                self._embedder,
                self._vault,
                policy,
                self._engine,
                batch_size=cfg.BATCH_SIZE,
                top_k=cfg.TOP_K,
                retry_count=cfg.RETRY_COUNT,
                retry_base_delay=cfg.RETRY_BASE_DELAY,
                max_retry_delay=cfg.MAX_RETRY_DELAY,
                operations=self.operations,
            )
            self._open = True
        logger.info("[KBContext] Opened knowledge base at %s (backend=%s, workers=%d)",
                    db_path, self._embedder.backend.value, self._engine.worker_count)
        return self

    def close(self) -> None:
        with self._lock:
            if not self._open:
                return
            if self.operations.in_flight():
                logger.warning("[KBContext] Closing with %d operation(s) in flight",
                               len(self.operations.in_flight()))
            self._engine.close()
            self._embedder.cleanup()
            self._store.close()
            self._service = None
            self._engine = None
            self._embedder = None
            self._vault = None
            self._store = None
            self._open = False
        logger.info("[KBContext] Closed")

    def __enter__(self) -> "KBContext":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def _require_open(self) -> None:
        if not self._open:
            raise RuntimeError("KBContext is not open")

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def service(self) -> KnowledgeService:
        self._require_open()
        return self._service  # type: ignore[return-value]

    @property
    def vault(self) -> KeyVault:
        self._require_open()
        return self._vault  # type: ignore[return-value]

    @property
    def store(self) -> RecordStore:
        self._require_open()
        return self._store  # type: ignore[return-value]

    @property
    def embedder(self) -> EmbeddingClient:
        self._require_open()
        return self._embedder  # type: ignore[return-value]
