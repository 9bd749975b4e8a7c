"""
Small SQLite key/value table used for vault values.

Values are raw bytes.  ``set_many`` and ``delete_prefix`` run in a single
transaction so a reader never sees half of an update.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key   TEXT PRIMARY KEY,
    value BLOB NOT NULL
);
"""


class KeyValueStore:
    """
    SQLite-backed map of ``str -> bytes``.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  May be shared with
        :class:`~snippet_kb.store.record_store.RecordStore`.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        with self._connect() as conn:
            conn.executescript(_SCHEMA)

    @contextmanager
    def _connect(self):
        """Yield a connected SQLite connection; commit on success."""
        with self._lock:
            conn = sqlite3.connect(self._db_path, timeout=10)
            conn.execute("PRAGMA journal_mode=WAL")
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def get(self, key: str) -> Optional[bytes]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return bytes(row[0]) if row else None

    def get_many(self, *keys: str) -> dict[str, bytes]:
        """Return the subset of *keys* that exist, read in one snapshot."""
        if not keys:
            return {}
        placeholders = ",".join("?" for _ in keys)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT key, value FROM kv WHERE key IN ({placeholders})", keys
            ).fetchall()
        return {k: bytes(v) for k, v in rows}

    def set_many(self, values: Mapping[str, bytes]) -> None:
        """Write all *values* in one transaction."""
        with self._connect() as conn:
            conn.executemany(
                "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                list(values.items()),
            )

    def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with *prefix*; return the number removed."""
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM kv WHERE key LIKE ? ESCAPE '\\'", (escaped + "%",)
            )
            removed = cur.rowcount
        logger.debug("[KeyValueStore] Deleted %d keys with prefix %r", removed, prefix)
        return removed
