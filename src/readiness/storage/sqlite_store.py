"""
SQLite-based record store.

Suitable for local use, the CLI and tests. A single connection is shared
across threads and serialized with a lock.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from ..core.exceptions import (
    FetchError,
    RecordNotFoundError,
    StoreAuthorizationError,
    StoreWriteError,
    TransientStoreError,
)
from ..core.models import Analysis, PageCursor, Record
from .record_store import RecordStore


logger = logging.getLogger(__name__)


DEFAULT_BUSY_TIMEOUT_SECONDS = 5.0


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC ISO format so text ordering matches time ordering."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class SqliteRecordStore(RecordStore):
    """
    SQLite implementation of the record store.

    Bottles live in the ``bottles`` table; the analysis is stored as a JSON
    document next to an ``analysis_version`` column, and both are replaced
    by one UPDATE so readers never see a half-written analysis. Job
    checkpoints are kept in ``readiness_jobs``.
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        auto_init: bool = True,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT_SECONDS,
    ):
        """
        Initialize the SQLite record store.

        Args:
            db_path: Path to the SQLite database file (":memory:" for a private in-memory DB)
            auto_init: Whether to create tables automatically
            busy_timeout: Seconds a statement waits on a locked database before failing
        """
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path)
        self.busy_timeout = busy_timeout
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._connect()

        if auto_init:
            self._init_schema()

    def _connect(self) -> None:
        """Establish database connection."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
            timeout=self.busy_timeout,
        )
        self.conn.row_factory = sqlite3.Row
        logger.debug(f"Connected to SQLite record store: {self.db_path}")

    def _init_schema(self) -> None:
        """Initialize database schema."""
        with self._lock:
            cursor = self.conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS bottles (
                    record_id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    name TEXT,
                    kind TEXT,
                    vintage_year INTEGER,
                    region TEXT,
                    region_tier TEXT NOT NULL DEFAULT 'standard',
                    analysis_json TEXT,
                    analysis_version INTEGER,
                    analysis_updated_at TEXT
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS ix_bottles_order
                ON bottles (created_at, record_id)
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS readiness_jobs (
                    job_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    state_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            self.conn.commit()
        logger.debug("Initialized record store schema")

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def insert_records(self, records: Iterable[Record]) -> int:
        """
        Insert or replace records (including any analysis they carry).

        Returns:
            Number of rows written
        """
        rows = [self._record_to_row(r) for r in records]
        with self._lock:
            self.conn.executemany("""
                INSERT OR REPLACE INTO bottles (
                    record_id, created_at, name, kind, vintage_year, region,
                    region_tier, analysis_json, analysis_version, analysis_updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, rows)
            self.conn.commit()
        logger.info(f"Inserted {len(rows)} records")
        return len(rows)

    def _record_to_row(self, record: Record) -> tuple:
        analysis = record.analysis
        return (
            record.record_id,
            format_timestamp(record.created_at),
            record.name,
            record.kind_label if record.kind_label is not None else (
                record.kind.value if record.kind else None
            ),
            record.vintage_year,
            record.region,
            record.region_tier.value,
            json.dumps(analysis.to_dict()) if analysis else None,
            analysis.algorithm_version if analysis else None,
            format_timestamp(analysis.computed_at) if analysis else None,
        )

    def _row_to_record(self, row: sqlite3.Row) -> Record:
        data: Dict[str, Any] = dict(row)
        data["analysis"] = data.pop("analysis_json", None)
        return Record.from_row(data)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    _SELECT = """
        SELECT record_id, created_at, name, kind, vintage_year, region,
               region_tier, analysis_json
        FROM bottles
    """

    def fetch_page(self, offset: int, limit: int) -> List[Record]:
        return self._query(
            self._SELECT + " ORDER BY created_at, record_id LIMIT ? OFFSET ?",
            (limit, offset),
        )

    def fetch_page_after(self, cursor: Optional[PageCursor], limit: int) -> List[Record]:
        if cursor is None:
            return self.fetch_page(0, limit)
        created_at = format_timestamp(cursor.created_at)
        return self._query(
            self._SELECT + """
                WHERE created_at > ? OR (created_at = ? AND record_id > ?)
                ORDER BY created_at, record_id
                LIMIT ?
            """,
            (created_at, created_at, cursor.record_id, limit),
        )

    def _query(self, sql: str, params: tuple) -> List[Record]:
        try:
            with self._lock:
                rows = self.conn.execute(sql, params).fetchall()
        except sqlite3.DatabaseError as e:
            message = str(e).lower()
            if "authoriz" in message or "readonly" in message or "permission" in message:
                raise StoreAuthorizationError(f"Not allowed to read records: {e}") from e
            raise FetchError(f"Failed to read records: {e}") from e
        return [self._row_to_record(row) for row in rows]

    def get_record(self, record_id: str) -> Optional[Record]:
        records = self._query(self._SELECT + " WHERE record_id = ?", (record_id,))
        return records[0] if records else None

    def count_records(self) -> int:
        try:
            with self._lock:
                row = self.conn.execute("SELECT COUNT(*) FROM bottles").fetchone()
        except sqlite3.DatabaseError as e:
            raise FetchError(f"Failed to count records: {e}") from e
        return row[0] if row else 0

    def count_by_freshness(self, current_version: int) -> Dict[str, int]:
        """Count records with missing, stale and current analyses."""
        with self._lock:
            row = self.conn.execute("""
                SELECT
                    SUM(CASE WHEN analysis_json IS NULL THEN 1 ELSE 0 END),
                    SUM(CASE WHEN analysis_json IS NOT NULL
                             AND (analysis_version IS NULL OR analysis_version <> ?) THEN 1 ELSE 0 END),
                    SUM(CASE WHEN analysis_json IS NOT NULL AND analysis_version = ? THEN 1 ELSE 0 END),
                    COUNT(*)
                FROM bottles
            """, (current_version, current_version)).fetchone()
        missing, stale, current, total = (v or 0 for v in row)
        return {"missing": missing, "stale": stale, "current": current, "total": total}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write_analysis(self, record_id: str, analysis: Analysis) -> None:
        payload = json.dumps(analysis.to_dict())
        try:
            with self._lock:
                with self.conn:
                    cursor = self.conn.execute("""
                        UPDATE bottles
                        SET analysis_json = ?,
                            analysis_version = ?,
                            analysis_updated_at = ?
                        WHERE record_id = ?
                    """, (
                        payload,
                        analysis.algorithm_version,
                        format_timestamp(analysis.computed_at),
                        record_id,
                    ))
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                raise TransientStoreError(f"Database busy writing {record_id}: {e}", record_id=record_id) from e
            raise StoreWriteError(f"Failed to write analysis for {record_id}: {e}", record_id=record_id) from e
        except sqlite3.DatabaseError as e:
            raise StoreWriteError(f"Failed to write analysis for {record_id}: {e}", record_id=record_id) from e

        if cursor.rowcount == 0:
            raise RecordNotFoundError(f"Record not found: {record_id}", record_id=record_id)

    # ------------------------------------------------------------------
    # Job checkpoints
    # ------------------------------------------------------------------

    @property
    def supports_checkpoints(self) -> bool:
        return True

    def save_job(self, job_state: Dict[str, Any]) -> None:
        with self._lock:
            with self.conn:
                self.conn.execute("""
                    INSERT INTO readiness_jobs (job_id, status, state_json, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(job_id) DO UPDATE SET
                        status = excluded.status,
                        state_json = excluded.state_json,
                        updated_at = excluded.updated_at
                """, (
                    job_state["job_id"],
                    job_state.get("status", "running"),
                    json.dumps(job_state, default=str),
                    format_timestamp(datetime.now(timezone.utc)),
                ))

    def load_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute(
                "SELECT state_json FROM readiness_jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
        return json.loads(row["state_json"]) if row else None

    def list_jobs(self, limit: int = 20) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT state_json FROM readiness_jobs ORDER BY updated_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [json.loads(row["state_json"]) for row in rows]

    def close(self) -> None:
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug("Closed SQLite record store")
