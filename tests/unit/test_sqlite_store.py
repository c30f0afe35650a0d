"""
Unit tests for the SQLite record store.
"""

import sqlite3
import pytest
from unittest.mock import patch

from readiness.core.exceptions import (
    FetchError,
    RecordNotFoundError,
    StoreAuthorizationError,
    StoreWriteError,
    TransientStoreError,
)
from readiness import start_batch_job
from readiness.core.models import JobStatus, PageCursor, RegionTier, WineKind
from readiness.rules_classifier import CURRENT_ALGORITHM_VERSION, ReadinessClassifier
from readiness.runner.batch_runner import BatchConfig
from readiness.storage import SqliteRecordStore
from readiness.storage.sqlite_store import format_timestamp


class TestSqliteRecordStore:
    """Tests for SqliteRecordStore."""

    def test_insert_and_fetch(self, sqlite_store, records_factory):
        """Test that inserted records come back in order with their fields."""
        sqlite_store.insert_records(records_factory(5, kind="Rosé", vintage_year=2023))

        page = sqlite_store.fetch_page(0, 10)
        assert [r.record_id for r in page] == [f"rec-{i:05d}" for i in range(5)]
        assert page[0].kind == WineKind.ROSE
        assert page[0].kind_label == "Rosé"
        assert page[0].vintage_year == 2023
        assert page[0].analysis is None

    def test_fetch_page_offset(self, sqlite_store, records_factory):
        """Test LIMIT/OFFSET pagination."""
        sqlite_store.insert_records(records_factory(10))
        assert [r.record_id for r in sqlite_store.fetch_page(7, 5)] == ["rec-00007", "rec-00008", "rec-00009"]
        assert sqlite_store.fetch_page(10, 5) == []

    def test_fetch_page_after(self, sqlite_store, records_factory):
        """Test keyset pagination walks every record once."""
        sqlite_store.insert_records(records_factory(7))
        seen = []
        cursor = None
        while True:
            page = sqlite_store.fetch_page_after(cursor, 3)
            if not page:
                break
            seen.extend(r.record_id for r in page)
            cursor = PageCursor.after(page[-1])

        assert seen == [f"rec-{i:05d}" for i in range(7)]

    def test_created_at_round_trip(self, sqlite_store, record_factory):
        """Test that timestamps survive storage as aware UTC datetimes."""
        record = record_factory(3)
        sqlite_store.insert_records([record])
        assert sqlite_store.get_record(record.record_id).created_at == record.created_at

    def test_write_analysis(self, sqlite_store, record_factory, fixed_clock):
        """Test that the analysis is written atomically and read back intact."""
        record = record_factory(1, region_tier=RegionTier.PREMIUM)
        sqlite_store.insert_records([record])
        analysis = ReadinessClassifier(clock=fixed_clock).classify(record)

        sqlite_store.write_analysis(record.record_id, analysis)

        stored = sqlite_store.get_record(record.record_id)
        assert stored.analysis == analysis
        assert stored.region_tier == RegionTier.PREMIUM

    def test_write_missing_record(self, sqlite_store, record_factory, fixed_clock):
        """Test that writing an unknown record raises RecordNotFoundError."""
        analysis = ReadinessClassifier(clock=fixed_clock).classify(record_factory(1))
        with pytest.raises(RecordNotFoundError):
            sqlite_store.write_analysis("ghost", analysis)

    def test_locked_database_is_transient(self, sqlite_store, record_factory, fixed_clock):
        """Test that a locked database maps to TransientStoreError."""
        record = record_factory(1)
        sqlite_store.insert_records([record])
        analysis = ReadinessClassifier(clock=fixed_clock).classify(record)

        with patch.object(sqlite_store, "conn") as conn:
            conn.__enter__.return_value = conn
            conn.execute.side_effect = sqlite3.OperationalError("database is locked")
            with pytest.raises(TransientStoreError):
                sqlite_store.write_analysis(record.record_id, analysis)

    def test_other_write_errors(self, sqlite_store, record_factory, fixed_clock):
        """Test that other database errors map to StoreWriteError."""
        record = record_factory(1)
        analysis = ReadinessClassifier(clock=fixed_clock).classify(record)

        with patch.object(sqlite_store, "conn") as conn:
            conn.__enter__.return_value = conn
            conn.execute.side_effect = sqlite3.IntegrityError("constraint failed")
            with pytest.raises(StoreWriteError) as exc_info:
                sqlite_store.write_analysis(record.record_id, analysis)
        assert not isinstance(exc_info.value, TransientStoreError)

    def test_read_errors_map_to_fetch_error(self, sqlite_store):
        """Test that read failures raise FetchError."""
        with patch.object(sqlite_store, "conn") as conn:
            conn.execute.side_effect = sqlite3.DatabaseError("disk I/O error")
            with pytest.raises(FetchError):
                sqlite_store.fetch_page(0, 10)

    def test_authorization_errors(self, sqlite_store):
        """Test that authorization failures raise StoreAuthorizationError."""
        with patch.object(sqlite_store, "conn") as conn:
            conn.execute.side_effect = sqlite3.DatabaseError("not authorized")
            with pytest.raises(StoreAuthorizationError):
                sqlite_store.fetch_page_after(None, 10)

    def test_count_by_freshness(self, sqlite_store, records_factory, fixed_clock):
        """Test missing/stale/current counts."""
        records = records_factory(6)
        sqlite_store.insert_records(records)
        current = ReadinessClassifier(clock=fixed_clock)
        stale = ReadinessClassifier(clock=fixed_clock, version=CURRENT_ALGORITHM_VERSION - 1)
        sqlite_store.write_analysis(records[0].record_id, current.classify(records[0]))
        sqlite_store.write_analysis(records[1].record_id, current.classify(records[1]))
        sqlite_store.write_analysis(records[2].record_id, stale.classify(records[2]))

        counts = sqlite_store.count_by_freshness(CURRENT_ALGORITHM_VERSION)

        assert counts == {"missing": 3, "stale": 1, "current": 2, "total": 6}
        assert sqlite_store.count_records() == 6

    def test_job_checkpoints(self, sqlite_store):
        """Test saving, updating and listing job checkpoints."""
        assert sqlite_store.supports_checkpoints
        sqlite_store.save_job({"job_id": "j1", "status": "running", "processed": 1})
        sqlite_store.save_job({"job_id": "j1", "status": "cancelled", "processed": 50})

        assert sqlite_store.load_job("j1") == {"job_id": "j1", "status": "cancelled", "processed": 50}
        assert sqlite_store.load_job("nope") is None
        assert [job["job_id"] for job in sqlite_store.list_jobs()] == ["j1"]

    def test_persists_across_connections(self, tmp_path, records_factory):
        """Test that data survives reopening the database file."""
        path = tmp_path / "cellar.db"
        store = SqliteRecordStore(path)
        store.insert_records(records_factory(3))
        store.close()

        reopened = SqliteRecordStore(path)
        try:
            assert reopened.count_records() == 3
        finally:
            reopened.close()

    def test_malformed_vintage_survives(self, sqlite_store, record_factory):
        """Test that a non-numeric vintage is stored and returned unchanged."""
        sqlite_store.insert_records([record_factory(1, vintage_year="NV")])
        assert sqlite_store.get_record("rec-00001").vintage_year == "NV"


class TestUntidyRows:
    """Tests for rows written by older code or edited by hand."""

    LEGACY_ANALYSIS = '{"status": "Peak", "score": 90, "algorithm_version": 1}'

    def test_unknown_region_tier_falls_back(self, sqlite_store, records_factory, fixed_clock):
        """Test that an unknown tier does not fail the page that contains it."""
        sqlite_store.insert_records(records_factory(4, region="Bordeaux"))
        sqlite_store.conn.execute(
            "UPDATE bottles SET region_tier = 'premium-aging' WHERE record_id = 'rec-00002'"
        )
        sqlite_store.conn.commit()

        summary = start_batch_job(
            sqlite_store,
            mode="all",
            config=BatchConfig(yield_seconds=0),
            classifier=ReadinessClassifier(clock=fixed_clock),
        )

        assert summary.terminal_state == JobStatus.COMPLETED
        assert (summary.processed, summary.failed) == (4, 0)
        record = sqlite_store.get_record("rec-00002")
        assert record.region_tier == RegionTier.PREMIUM
        assert record.analysis is not None

    def test_legacy_analysis_is_stale(self, sqlite_store, records_factory, fixed_clock):
        """Test that a legacy analysis is kept by missing_only and redone by stale_only."""
        sqlite_store.insert_records(records_factory(3))
        sqlite_store.conn.execute(
            "UPDATE bottles SET analysis_json = ?, analysis_version = 1 WHERE record_id = 'rec-00001'",
            (self.LEGACY_ANALYSIS,),
        )
        sqlite_store.conn.commit()

        legacy = sqlite_store.get_record("rec-00001")
        assert legacy.analysis is None
        assert legacy.unreadable_analysis

        classifier = ReadinessClassifier(clock=fixed_clock)
        first = start_batch_job(
            sqlite_store,
            mode="missing_only",
            config=BatchConfig(yield_seconds=0),
            classifier=classifier,
        )
        assert first.terminal_state == JobStatus.COMPLETED
        assert (first.processed, first.skipped, first.failed) == (2, 1, 0)
        assert sqlite_store.count_by_freshness(CURRENT_ALGORITHM_VERSION)["stale"] == 1

        second = start_batch_job(
            sqlite_store,
            mode="stale_only",
            config=BatchConfig(yield_seconds=0),
            classifier=classifier,
        )

        assert second.terminal_state == JobStatus.COMPLETED
        assert (second.processed, second.skipped, second.failed) == (1, 2, 0)
        assert sqlite_store.get_record("rec-00001").analysis.algorithm_version == CURRENT_ALGORITHM_VERSION
        assert sqlite_store.count_by_freshness(CURRENT_ALGORITHM_VERSION) == {
            "missing": 0, "stale": 0, "current": 3, "total": 3,
        }

    def test_corrupt_analysis_json(self, sqlite_store, records_factory):
        """Test that analysis text that is not JSON reads back as unreadable."""
        sqlite_store.insert_records(records_factory(1))
        sqlite_store.conn.execute("UPDATE bottles SET analysis_json = '{oops' WHERE record_id = 'rec-00000'")
        sqlite_store.conn.commit()

        [record] = sqlite_store.fetch_page(0, 10)
        assert record.analysis is None
        assert record.unreadable_analysis


class TestFormatTimestamp:
    """Tests for format_timestamp."""

    def test_fixed_width_ordering(self, record_factory):
        """Test that text order matches time order."""
        early, late = record_factory(1), record_factory(2)
        assert format_timestamp(early.created_at) < format_timestamp(late.created_at)
        assert len(format_timestamp(early.created_at)) == len(format_timestamp(late.created_at))
