"""
Unit tests for snippet_kb.store.record_store

Covers insertion, access tracking, deletion, size accounting and the
storage-full path of the SQLite record store.
"""

from __future__ import annotations

import sqlite3
from unittest.mock import patch

import pytest

from snippet_kb.errors import DimensionMismatchError, StorageFull
from snippet_kb.store.record_store import NewRecord, RecordStore, record_size


def _rec(text, emb=(0.1, 0.2, 0.3), url=None, title=None):
    return NewRecord(text, list(emb), url, title)


# ---------------------------------------------------------------------------
# Insert / read
# ---------------------------------------------------------------------------

class TestInsert:

    def test_round_trip_is_exact(self, store, clock):
        emb = [0.1, -0.2, 1e-12, 0.3333333333333333]
        [rid] = store.insert_batch([NewRecord("hello", emb, "https://a.example", "A")])
        rec = store.get(rid)
        assert rec.text == "hello"
        assert list(rec.embedding) == emb
        assert rec.source_url == "https://a.example"
        assert rec.source_title == "A"
        assert rec.access_count == 0
        assert rec.created_at == clock.now
        assert rec.last_accessed_at == rec.created_at

    def test_ids_are_unique_and_ordered(self, store):
        ids = store.insert_batch([_rec("a"), _rec("b"), _rec("c")])
        assert len(set(ids)) == 3
        assert ids == sorted(ids)
        assert [r.id for r in store.scan_all()] == ids

    def test_ids_not_reused_after_delete(self, store):
        first = store.insert_batch([_rec("a"), _rec("b")])
        store.delete([first[1]])
        [third] = store.insert_batch([_rec("c")])
        assert third not in first

    def test_empty_batch(self, store):
        assert store.insert_batch([]) == []
        assert store.count() == 0

    def test_missing_provenance_allowed(self, store):
        [rid] = store.insert_batch([_rec("no source")])
        rec = store.get(rid)
        assert rec.source_url is None
        assert rec.source_title is None

    def test_get_unknown_id(self, store):
        assert store.get(999) is None

    def test_non_numeric_vector_inserts_nothing(self, store):
        [rid] = store.insert_batch([_rec("seed", (0.1, 0.2))])
        with pytest.raises(ValueError):
            store.insert_batch([_rec("good", (0.5, 0.5)), _rec("bad", ("1", "x"))])
        # A later commit on the same connection must not publish "good".
        store.touch([rid])
        assert store.count() == 1
        assert [r.text for r in store.scan_all()] == ["seed"]

    def test_failure_mid_batch_rolls_back(self, store):
        [rid] = store.insert_batch([_rec("seed")])
        real_conn = store._get_conn()

        class FailingConn:
            """Passes through to SQLite but fails on the second record insert."""

            def __init__(self):
                self.inserts = 0

            def execute(self, sql, *args):
                if sql.startswith("INSERT INTO records"):
                    self.inserts += 1
                    if self.inserts == 2:
                        raise RuntimeError("interrupted")
                return real_conn.execute(sql, *args)

            def __getattr__(self, name):
                return getattr(real_conn, name)

        with patch.object(store, "_get_conn", return_value=FailingConn()):
            with pytest.raises(RuntimeError):
                store.insert_batch([_rec("a"), _rec("b"), _rec("c")])
        store.touch([rid])
        assert [r.text for r in store.scan_all()] == ["seed"]


class TestDimension:

    def test_first_insert_fixes_dimension(self, store):
        assert store.embedding_dimension() is None
        store.insert_batch([_rec("a", (1.0, 2.0))])
        assert store.embedding_dimension() == 2

    def test_mismatch_across_batches(self, store):
        store.insert_batch([_rec("a", (1.0, 2.0))])
        with pytest.raises(DimensionMismatchError) as exc_info:
            store.insert_batch([_rec("b", (1.0, 2.0, 3.0))])
        assert exc_info.value.expected == 2
        assert exc_info.value.actual == 3
        assert store.count() == 1

    def test_mismatch_within_batch_inserts_nothing(self, store):
        with pytest.raises(DimensionMismatchError):
            store.insert_batch([_rec("a", (1.0, 2.0)), _rec("b", (1.0,))])
        assert store.count() == 0
        assert store.embedding_dimension() is None

    def test_dimension_persists_across_reopen(self, db_path, clock):
        s = RecordStore(db_path, clock=clock)
        s.insert_batch([_rec("a", (1.0, 2.0, 3.0))])
        s.close()

        reopened = RecordStore(db_path, clock=clock)
        try:
            assert reopened.embedding_dimension() == 3
            assert reopened.count() == 1
            assert reopened.scan_all()[0].text == "a"
        finally:
            reopened.close()


# ---------------------------------------------------------------------------
# Access tracking
# ---------------------------------------------------------------------------

class TestTouch:

    def test_touch_updates_metrics(self, store, clock):
        [rid] = store.insert_batch([_rec("a")])
        clock.advance(10)
        store.touch([rid])
        store.touch([rid])
        rec = store.get(rid)
        assert rec.access_count == 2
        assert rec.last_accessed_at == clock.now

    def test_last_access_never_before_creation(self, store, clock):
        [rid] = store.insert_batch([_rec("a")])
        created = store.get(rid).created_at
        clock.advance(-100)
        store.touch([rid])
        rec = store.get(rid)
        assert rec.last_accessed_at >= created
        assert rec.access_count == 1

    def test_touch_unknown_id_is_noop(self, store):
        store.touch([12345])
        assert store.count() == 0

    def test_touch_swallows_database_errors(self, store):
        [rid] = store.insert_batch([_rec("a")])
        with patch.object(store, "_get_conn") as get_conn:
            get_conn.return_value.executemany.side_effect = sqlite3.OperationalError("locked")
            store.touch([rid])
        assert store.get(rid).access_count == 0


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------

class TestDelete:

    def test_delete_returns_count(self, store):
        ids = store.insert_batch([_rec("a"), _rec("b"), _rec("c")])
        assert store.delete([ids[0], ids[2], 999]) == 2
        assert [r.id for r in store.scan_all()] == [ids[1]]

    def test_delete_nothing(self, store):
        assert store.delete([]) == 0

    def test_delete_many_ids(self, store):
        ids = store.insert_batch([_rec(f"t{i}") for i in range(1200)])
        assert store.delete(ids) == 1200
        assert store.count() == 0

    def test_delete_where(self, store):
        store.insert_batch([
            _rec("keep", url="https://keep.example"),
            _rec("drop", url="https://drop.example"),
            _rec("drop too", url="https://drop.example"),
        ])
        removed = store.delete_where(lambda r: r.source_url == "https://drop.example")
        assert removed == 2
        assert [r.text for r in store.scan_all()] == ["keep"]


# ---------------------------------------------------------------------------
# Size accounting
# ---------------------------------------------------------------------------

class TestByteSize:

    def test_empty_store(self, store):
        assert store.estimated_byte_size() == 0

    def test_sum_of_record_sizes(self, store):
        items = [_rec("a", url="https://x.example"), _rec("bbbb", title="T")]
        store.insert_batch(items)
        assert store.estimated_byte_size() == sum(record_size(i) for i in items)

    def test_grows_and_shrinks(self, store):
        [a] = store.insert_batch([_rec("a")])
        one = store.estimated_byte_size()
        store.insert_batch([_rec("b")])
        two = store.estimated_byte_size()
        assert two > one
        store.delete([a])
        assert store.estimated_byte_size() < two

    def test_size_unaffected_by_touch(self, store):
        [rid] = store.insert_batch([_rec("a")])
        before = store.estimated_byte_size()
        store.touch([rid])
        assert store.estimated_byte_size() == before

    def test_record_size_counts_text_bytes(self):
        short = record_size(_rec("a"))
        longer = record_size(_rec("a" * 101))
        assert longer - short == 100


# ---------------------------------------------------------------------------
# Storage full
# ---------------------------------------------------------------------------

class TestStorageFull:

    def test_quota_exceeded_raises_and_keeps_state(self, db_path, clock):
        s = RecordStore(db_path, clock=clock)
        s.insert_batch([_rec("small")])
        s.close()

        # A 1-byte quota caps the file at its current page count.
        capped = RecordStore(db_path, quota_bytes=1, clock=clock)
        try:
            with pytest.raises(StorageFull):
                capped.insert_batch([_rec("x" * 200_000), _rec("y" * 200_000)])
            assert capped.count() == 1
            assert [r.text for r in capped.scan_all()] == ["small"]
        finally:
            capped.close()
