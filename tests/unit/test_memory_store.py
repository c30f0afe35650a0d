"""
Unit tests for the in-memory record store.
"""

import pytest
from dataclasses import replace
from datetime import timedelta

from readiness.core.exceptions import RecordNotFoundError
from readiness.core.models import PageCursor
from readiness.rules_classifier import ReadinessClassifier
from readiness.storage import InMemoryRecordStore, create_record_store


class TestInMemoryRecordStore:
    """Tests for InMemoryRecordStore."""

    def test_fetch_page_ordering(self, record_factory):
        """Test that pages are ordered by (created_at, record_id) regardless of insert order."""
        store = InMemoryRecordStore([record_factory(i) for i in (3, 1, 2, 0)])
        page = store.fetch_page(0, 10)
        assert [r.record_id for r in page] == ["rec-00000", "rec-00001", "rec-00002", "rec-00003"]

    def test_fetch_page_offset_and_limit(self, records_factory):
        """Test offset pagination bounds."""
        store = InMemoryRecordStore(records_factory(10))

        assert [r.record_id for r in store.fetch_page(4, 3)] == ["rec-00004", "rec-00005", "rec-00006"]
        assert len(store.fetch_page(8, 5)) == 2
        assert store.fetch_page(10, 5) == []

    def test_ties_broken_by_record_id(self, record_factory):
        """Test that equal timestamps fall back to record_id ordering."""
        first = record_factory(1)
        twin = record_factory(2)
        twin = replace(twin, created_at=first.created_at)
        store = InMemoryRecordStore([twin, first])

        assert [r.record_id for r in store.fetch_page(0, 2)] == ["rec-00001", "rec-00002"]

    def test_fetch_page_after_cursor(self, records_factory):
        """Test keyset pagination."""
        store = InMemoryRecordStore(records_factory(5))
        first = store.fetch_page_after(None, 2)
        second = store.fetch_page_after(PageCursor.after(first[-1]), 2)
        third = store.fetch_page_after(PageCursor.after(second[-1]), 2)

        assert [r.record_id for r in first + second + third] == [f"rec-{i:05d}" for i in range(5)]
        assert store.fetch_page_after(PageCursor.after(third[-1]), 2) == []

    def test_keyset_is_stable_under_earlier_inserts(self, records_factory, record_factory):
        """Test that inserting before the cursor neither duplicates nor skips records."""
        store = InMemoryRecordStore(records_factory(4))
        first = store.fetch_page_after(None, 2)

        early = record_factory(99)
        store.add_records([replace(early, created_at=first[0].created_at - timedelta(days=1))])

        rest = store.fetch_page_after(PageCursor.after(first[-1]), 10)
        assert [r.record_id for r in rest] == ["rec-00002", "rec-00003"]

    def test_write_analysis(self, record_factory, fixed_clock):
        """Test that a write replaces only the analysis."""
        record = record_factory(1)
        store = InMemoryRecordStore([record])
        analysis = ReadinessClassifier(clock=fixed_clock).classify(record)

        store.write_analysis(record.record_id, analysis)

        stored = store.get_record(record.record_id)
        assert stored.analysis == analysis
        assert stored.vintage_year == record.vintage_year
        assert stored.created_at == record.created_at
        assert store.write_count == 1

    def test_write_missing_record(self, fixed_clock, record_factory):
        """Test that writing to an unknown id raises RecordNotFoundError."""
        analysis = ReadinessClassifier(clock=fixed_clock).classify(record_factory(1))
        with pytest.raises(RecordNotFoundError):
            InMemoryRecordStore().write_analysis("ghost", analysis)

    def test_counts_and_delete(self, records_factory):
        """Test count_records and delete_record."""
        store = InMemoryRecordStore(records_factory(3))
        assert store.count_records() == 3
        assert store.delete_record("rec-00001") is True
        assert store.delete_record("rec-00001") is False
        assert store.count_records() == 2

    def test_job_checkpoints(self, memory_store):
        """Test save_job/load_job."""
        assert memory_store.supports_checkpoints
        memory_store.save_job({"job_id": "j1", "status": "running", "processed": 5})

        assert memory_store.load_job("j1")["processed"] == 5
        assert memory_store.load_job("missing") is None

    def test_negative_offset_rejected(self, memory_store):
        """Test argument validation."""
        with pytest.raises(ValueError):
            memory_store.fetch_page(-1, 10)


class TestCreateRecordStore:
    """Tests for the store factory."""

    def test_memory_backend(self):
        """Test creating an in-memory store."""
        assert isinstance(create_record_store("memory"), InMemoryRecordStore)

    def test_sqlite_backend(self, tmp_path):
        """Test creating a SQLite store."""
        from readiness.storage import SqliteRecordStore

        store = create_record_store("sqlite", db_path=tmp_path / "x.db")
        try:
            assert isinstance(store, SqliteRecordStore)
        finally:
            store.close()

    def test_backend_from_env(self, monkeypatch):
        """Test that READINESS_STORE_BACKEND picks the backend."""
        monkeypatch.setenv("READINESS_STORE_BACKEND", "memory")
        assert isinstance(create_record_store(), InMemoryRecordStore)

    def test_unknown_backend(self):
        """Test that unknown backends are rejected."""
        with pytest.raises(ValueError, match="Unknown backend"):
            create_record_store("mongo")
