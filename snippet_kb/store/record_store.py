"""
SQLite-backed record store for the snippet knowledge base.

Stores each snippet with its embedding vector (float64 BLOB), provenance
and access metrics.  Zero-config — no Docker, no external services required.

Storage: ``{data_dir}/knowledge.db``, table ``records``.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

import numpy as np

from ..errors import DimensionMismatchError, StorageFull

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS records (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    text             TEXT    NOT NULL,
    embedding        BLOB    NOT NULL,
    source_url       TEXT,
    source_title     TEXT,
    created_at       REAL    NOT NULL,
    last_accessed_at REAL    NOT NULL,
    access_count     INTEGER NOT NULL DEFAULT 0,
    size_bytes       INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS store_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

_SELECT_COLUMNS = (
    "id, text, embedding, source_url, source_title, "
    "created_at, last_accessed_at, access_count"
)

_DIMENSION_KEY = "embedding_dimension"

# Keeps IN (...) lists under SQLite's host-parameter limit.
_DELETE_CHUNK = 500

_SQLITE_FULL = 13


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NewRecord:
    """A snippet waiting to be inserted (no id or timestamps yet)."""

    text: str
    embedding: Sequence[float]
    source_url: Optional[str] = None
    source_title: Optional[str] = None


@dataclass(frozen=True)
class Record:
    """One stored knowledge unit."""

    id: int
    text: str
    embedding: tuple[float, ...]
    source_url: Optional[str]
    source_title: Optional[str]
    created_at: float
    last_accessed_at: float
    access_count: int


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _vec_to_bytes(vec: Sequence[float]) -> bytes:
    """Serialise a float sequence losslessly (float64)."""
    return np.asarray(vec, dtype=np.float64).tobytes()


def _bytes_to_vec(buf: bytes) -> tuple[float, ...]:
    """Deserialise bytes back to a tuple of Python floats."""
    return tuple(np.frombuffer(buf, dtype=np.float64).tolist())


def record_size(item: NewRecord) -> int:
    """Byte length of the record's canonical JSON serialisation.

    Depends only on the immutable fields, so a record's size never changes
    after insertion.
    """
    payload = {
        "text": item.text,
        "embedding": [float(x) for x in item.embedding],
        "url": item.source_url,
        "title": item.source_title,
    }
    return len(json.dumps(payload, separators=(",", ":")).encode("utf-8"))


def _is_full_error(exc: sqlite3.Error) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    if code == _SQLITE_FULL:
        return True
    return "full" in str(exc).lower()


def _row_to_record(row: tuple) -> Record:
    rid, text, emb, url, title, created, accessed, count = row
    return Record(
        id=rid,
        text=text,
        embedding=_bytes_to_vec(emb),
        source_url=url,
        source_title=title,
        created_at=created,
        last_accessed_at=accessed,
        access_count=count,
    )


# ---------------------------------------------------------------------------
# RecordStore
# ---------------------------------------------------------------------------

class RecordStore:
    """Durable collection of knowledge records backed by SQLite.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Created if absent.
    quota_bytes:
        Optional hard cap on the database file size.  Writes past it fail
        with :class:`~snippet_kb.errors.StorageFull`.  ``0`` means no cap.
    clock:
        Returns the current time in seconds; injectable for tests.
    """

    def __init__(
        self,
        db_path: str,
        quota_bytes: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = db_path
        self._quota_bytes = quota_bytes
        self._clock = clock
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        self._dimension: Optional[int] = None
        self._init_db()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _init_db(self) -> None:
        """Create the database and tables if missing."""
        os.makedirs(os.path.dirname(os.path.abspath(self._db_path)), exist_ok=True)
        with self._lock:
            conn = self._get_conn()
            conn.executescript(_CREATE_TABLES)
            row = conn.execute(
                "SELECT value FROM store_meta WHERE key = ?", (_DIMENSION_KEY,)
            ).fetchone()
            conn.commit()
        if row is not None:
            self._dimension = int(row[0])
        logger.debug("[RecordStore] Opened %s (dimension=%s)",
                     self._db_path, self._dimension)

    def _get_conn(self) -> sqlite3.Connection:
        """Thread-safe lazy connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            if self._quota_bytes > 0:
                page_size = self._conn.execute("PRAGMA page_size").fetchone()[0]
                max_pages = max(1, self._quota_bytes // page_size)
                self._conn.execute(f"PRAGMA max_page_count = {int(max_pages)}")
        return self._conn

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                except sqlite3.Error:
                    pass
                self._conn = None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_batch(self, items: Sequence[NewRecord]) -> list[int]:
        """Insert *items* atomically and return their new ids in order.

        Either every record of the batch is committed or none is.

        Raises
        ------
        DimensionMismatchError
            If an embedding's length differs from the store's dimension.
        StorageFull
            If the database (or its quota) has no room for the batch.
        """
        if not items:
            return []

        dimension = self._dimension
        for item in items:
            size = len(item.embedding)
            if dimension is None:
                dimension = size
            elif size != dimension:
                raise DimensionMismatchError(dimension, size)

        # Serialise up front so a bad vector fails before any row is written.
        encoded = [(item, _vec_to_bytes(item.embedding), record_size(item))
                   for item in items]

        now = self._clock()
        ids: list[int] = []
        with self._lock:
            conn = self._get_conn()
            try:
                if self._dimension is None:
                    conn.execute(
                        "INSERT OR REPLACE INTO store_meta (key, value) VALUES (?, ?)",
                        (_DIMENSION_KEY, str(dimension)),
                    )
                for item, blob, size_bytes in encoded:
                    cur = conn.execute(
                        "INSERT INTO records (text, embedding, source_url, "
                        "source_title, created_at, last_accessed_at, "
                        "access_count, size_bytes) VALUES (?, ?, ?, ?, ?, ?, 0, ?)",
                        (
                            item.text,
                            blob,
                            item.source_url,
                            item.source_title,
                            now,
                            now,
                            size_bytes,
                        ),
                    )
                    ids.append(cur.lastrowid)
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                if _is_full_error(exc):
                    logger.warning("[RecordStore] Storage full inserting %d records",
                                   len(items))
                    raise StorageFull(str(exc)) from exc
                raise
            except BaseException:
                conn.rollback()
                raise
            self._dimension = dimension

        logger.debug("[RecordStore] Inserted %d records", len(ids))
        return ids

    def touch(self, ids: Iterable[int]) -> None:
        """Record an access for each id.  Best effort: errors are logged."""
        id_list = list(ids)
        if not id_list:
            return
        now = self._clock()
        with self._lock:
            try:
                conn = self._get_conn()
                conn.executemany(
                    "UPDATE records SET access_count = access_count + 1, "
                    "last_accessed_at = MAX(created_at, ?) WHERE id = ?",
                    [(now, rid) for rid in id_list],
                )
                conn.commit()
            except sqlite3.Error as exc:
                logger.warning("[RecordStore] Could not update access metrics: %s", exc)
                if self._conn is not None:
                    try:
                        self._conn.rollback()
                    except sqlite3.Error:
                        pass

    def delete(self, ids: Iterable[int]) -> int:
        """Delete the records with the given ids; return how many existed."""
        id_list = list(dict.fromkeys(ids))
        if not id_list:
            return 0
        deleted = 0
        with self._lock:
            conn = self._get_conn()
            try:
                for start in range(0, len(id_list), _DELETE_CHUNK):
                    chunk = id_list[start:start + _DELETE_CHUNK]
                    placeholders = ",".join("?" for _ in chunk)
                    cur = conn.execute(
                        f"DELETE FROM records WHERE id IN ({placeholders})", chunk
                    )
                    deleted += cur.rowcount
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
        logger.debug("[RecordStore] Deleted %d records", deleted)
        return deleted

    def delete_where(self, predicate: Callable[[Record], bool]) -> int:
        """Delete every record for which *predicate* is true."""
        doomed = [r.id for r in self.scan_all() if predicate(r)]
        return self.delete(doomed)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def scan_all(self) -> list[Record]:
        """Return a snapshot of every record, ordered by id."""
        with self._lock:
            rows = self._get_conn().execute(
                f"SELECT {_SELECT_COLUMNS} FROM records ORDER BY id"
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def get(self, record_id: int) -> Optional[Record]:
        """Return one record, or None if it does not exist."""
        with self._lock:
            row = self._get_conn().execute(
                f"SELECT {_SELECT_COLUMNS} FROM records WHERE id = ?", (record_id,)
            ).fetchone()
        return _row_to_record(row) if row else None

    def count(self) -> int:
        with self._lock:
            row = self._get_conn().execute("SELECT COUNT(*) FROM records").fetchone()
        return row[0] if row else 0

    def estimated_byte_size(self) -> int:
        """Sum of :func:`record_size` over all stored records."""
        with self._lock:
            row = self._get_conn().execute(
                "SELECT COALESCE(SUM(size_bytes), 0) FROM records"
            ).fetchone()
        return int(row[0]) if row else 0

    def embedding_dimension(self) -> Optional[int]:
        """The store's fixed embedding length, or None before the first insert."""
        return self._dimension
