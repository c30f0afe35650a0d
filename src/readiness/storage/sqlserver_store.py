"""
SQL Server-based record store.

Production backend for inventories shared with the rest of the application.
Each thread gets its own pyodbc connection, so the per-page fan-out can
write concurrently. Connections of threads that have exited are closed the
next time a thread opens one, and every statement runs under a query timeout.
"""

import json
import logging
import re
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

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


# SQLSTATE codes
AUTHORIZATION_STATES = {"28000", "42000"}
TRANSIENT_STATES = {"40001", "HYT00", "HYT01", "08S01"}

DEFAULT_QUERY_TIMEOUT_SECONDS = 30


def _sqlstate(error: Exception) -> Optional[str]:
    args = getattr(error, "args", ())
    return args[0] if args and isinstance(args[0], str) else None


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class SqlServerRecordStore(RecordStore):
    """
    SQL Server implementation of the record store.

    Features:
    - Thread-local connections for concurrent writers, pruned when threads exit
    - Per-statement query timeout
    - OFFSET/FETCH and keyset pagination over (created_at, record_id)
    - Single-statement analysis updates
    - Schema name whitelist validation
    """

    def __init__(
        self,
        connection_string: Optional[str] = None,
        host: str = "localhost",
        port: int = 1433,
        database: str = "Cellar",
        username: str = "sa",
        password: Optional[str] = None,
        driver: str = "ODBC Driver 18 for SQL Server",
        schema: str = "cellar",
        auto_init: bool = True,
        trust_server_certificate: bool = True,
        query_timeout: Optional[int] = DEFAULT_QUERY_TIMEOUT_SECONDS,
    ):
        """
        Initialize the SQL Server record store.

        Args:
            connection_string: Full ODBC connection string (if provided, other params ignored)
            host: SQL Server host
            port: SQL Server port
            database: Database name
            username: Database username
            password: Database password
            driver: ODBC driver name
            schema: Schema name for tables (default: 'cellar')
            auto_init: Whether to create schema and tables automatically
            trust_server_certificate: Whether to trust self-signed certificates (for local Docker)
            query_timeout: Seconds before a statement is abandoned by the driver (None = no limit)
        """
        if not self._is_valid_identifier(schema):
            raise ValueError(f"Invalid schema name: {schema}")

        self.schema = schema
        self.query_timeout = query_timeout

        if connection_string:
            self.connection_string = connection_string
        else:
            trust_cert = "yes" if trust_server_certificate else "no"
            self.connection_string = (
                f"Driver={{{driver}}};"
                f"Server={host},{port};"
                f"Database={database};"
                f"UID={username};"
                f"PWD={password};"
                f"TrustServerCertificate={trust_cert}"
            )

        self._thread_local = threading.local()
        self._connections = []
        self._connections_lock = threading.Lock()
        self._get_conn()
        logger.debug(f"Connected to SQL Server record store (schema: {self.schema})")

        if auto_init:
            self._init_schema()

    @staticmethod
    def _is_valid_identifier(name: str) -> bool:
        """
        Validate that a name is a safe SQL identifier.

        Must start with a letter or underscore, contain only letters, digits
        and underscores, and not be a reserved word.
        """
        if not name or len(name) > 128:
            return False
        if not re.match(r'^[a-zA-Z_][a-zA-Z0-9_]*$', name):
            return False
        reserved_words = {
            'select', 'insert', 'update', 'delete', 'drop', 'create', 'alter',
            'exec', 'execute', 'union', 'where', 'from', 'table', 'database',
            'schema', 'index', 'grant', 'revoke', 'truncate', 'declare', 'set'
        }
        return name.lower() not in reserved_words

    def _get_conn(self):
        """Get (or create) a thread-local connection."""
        import pyodbc

        conn = getattr(self._thread_local, "conn", None)
        if conn is None:
            self._prune_connections()
            try:
                conn = pyodbc.connect(self.connection_string)
            except pyodbc.Error as e:
                if _sqlstate(e) in AUTHORIZATION_STATES:
                    raise StoreAuthorizationError(f"SQL Server rejected credentials: {e}") from e
                raise FetchError(f"Failed to connect to SQL Server: {e}") from e
            if self.query_timeout:
                conn.timeout = int(self.query_timeout)
            self._thread_local.conn = conn
            with self._connections_lock:
                self._connections.append((threading.current_thread(), conn))
        return conn

    def _prune_connections(self) -> None:
        """Close connections owned by threads that have exited."""
        with self._connections_lock:
            live = []
            for thread, conn in self._connections:
                if thread.is_alive():
                    live.append((thread, conn))
                    continue
                try:
                    conn.close()
                except Exception as e:
                    logger.debug(f"Error closing connection of exited thread {thread.name}: {e}")
            if len(live) < len(self._connections):
                logger.debug(f"Closed {len(self._connections) - len(live)} connections of exited threads")
            self._connections = live

    @property
    def open_connections(self) -> int:
        with self._connections_lock:
            return len(self._connections)

    def _init_schema(self) -> None:
        """Create the schema and tables if they do not exist."""
        conn = self._get_conn()
        cursor = conn.cursor()

        # Schema name is whitelisted in __init__; CREATE SCHEMA cannot take parameters
        cursor.execute(f"""
            IF NOT EXISTS (SELECT * FROM sys.schemas WHERE name = ?)
            BEGIN
                EXEC('CREATE SCHEMA [{self.schema}]')
            END
        """, (self.schema,))

        cursor.execute(f"""
            IF OBJECT_ID('[{self.schema}].[bottles]', 'U') IS NULL
            BEGIN
                CREATE TABLE [{self.schema}].[bottles] (
                    record_id NVARCHAR(64) NOT NULL PRIMARY KEY,
                    created_at DATETIME2 NOT NULL,
                    name NVARCHAR(400),
                    kind NVARCHAR(50),
                    vintage_year INT,
                    region NVARCHAR(200),
                    region_tier NVARCHAR(20) NOT NULL DEFAULT 'standard',
                    analysis_json NVARCHAR(MAX),
                    analysis_version INT,
                    analysis_updated_at DATETIME2
                );
                CREATE INDEX ix_bottles_order ON [{self.schema}].[bottles] (created_at, record_id);
            END
        """)

        cursor.execute(f"""
            IF OBJECT_ID('[{self.schema}].[readiness_jobs]', 'U') IS NULL
            BEGIN
                CREATE TABLE [{self.schema}].[readiness_jobs] (
                    job_id NVARCHAR(36) NOT NULL PRIMARY KEY,
                    status NVARCHAR(20) NOT NULL,
                    state_json NVARCHAR(MAX) NOT NULL,
                    updated_at DATETIME2 NOT NULL
                )
            END
        """)

        conn.commit()
        logger.debug("Initialized SQL Server record store schema")

    def _select(self) -> str:
        return f"""
            SELECT record_id, created_at, name, kind, vintage_year, region,
                   region_tier, analysis_json
            FROM [{self.schema}].[bottles]
        """

    def _query(self, sql: str, params: tuple) -> List[Record]:
        import pyodbc

        try:
            cursor = self._get_conn().cursor()
            cursor.execute(sql, params)
            columns = [c[0] for c in cursor.description]
            rows = [dict(zip(columns, row)) for row in cursor.fetchall()]
        except pyodbc.Error as e:
            if _sqlstate(e) in AUTHORIZATION_STATES:
                raise StoreAuthorizationError(f"Not allowed to read records: {e}") from e
            raise FetchError(f"Failed to read records: {e}") from e

        records = []
        for row in rows:
            row["analysis"] = row.pop("analysis_json", None)
            records.append(Record.from_row(row))
        return records

    def fetch_page(self, offset: int, limit: int) -> List[Record]:
        return self._query(
            self._select() + """
                ORDER BY created_at, record_id
                OFFSET ? ROWS FETCH NEXT ? ROWS ONLY
            """,
            (offset, limit),
        )

    def fetch_page_after(self, cursor: Optional[PageCursor], limit: int) -> List[Record]:
        if cursor is None:
            return self.fetch_page(0, limit)
        created_at = _to_naive_utc(cursor.created_at)
        return self._query(
            self._select() + """
                WHERE created_at > ? OR (created_at = ? AND record_id > ?)
                ORDER BY created_at, record_id
                OFFSET 0 ROWS FETCH NEXT ? ROWS ONLY
            """,
            (created_at, created_at, cursor.record_id, limit),
        )

    def get_record(self, record_id: str) -> Optional[Record]:
        records = self._query(self._select() + " WHERE record_id = ?", (record_id,))
        return records[0] if records else None

    def count_records(self) -> int:
        import pyodbc

        try:
            cursor = self._get_conn().cursor()
            cursor.execute(f"SELECT COUNT(*) FROM [{self.schema}].[bottles]")
            row = cursor.fetchone()
        except pyodbc.Error as e:
            raise FetchError(f"Failed to count records: {e}") from e
        return row[0] if row else 0

    def insert_records(self, records: List[Record]) -> int:
        """Insert records; used for seeding and integration tests."""
        conn = self._get_conn()
        cursor = conn.cursor()
        for record in records:
            analysis = record.analysis
            cursor.execute(f"""
                INSERT INTO [{self.schema}].[bottles] (
                    record_id, created_at, name, kind, vintage_year, region,
                    region_tier, analysis_json, analysis_version, analysis_updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.record_id,
                _to_naive_utc(record.created_at),
                record.name,
                record.kind_label or (record.kind.value if record.kind else None),
                record.vintage_year,
                record.region,
                record.region_tier.value,
                json.dumps(analysis.to_dict()) if analysis else None,
                analysis.algorithm_version if analysis else None,
                _to_naive_utc(analysis.computed_at) if analysis else None,
            ))
        conn.commit()
        return len(records)

    def write_analysis(self, record_id: str, analysis: Analysis) -> None:
        import pyodbc

        conn = self._get_conn()
        try:
            cursor = conn.cursor()
            cursor.execute(f"""
                UPDATE [{self.schema}].[bottles]
                SET analysis_json = ?,
                    analysis_version = ?,
                    analysis_updated_at = ?
                WHERE record_id = ?
            """, (
                json.dumps(analysis.to_dict()),
                analysis.algorithm_version,
                _to_naive_utc(analysis.computed_at),
                record_id,
            ))
            updated = cursor.rowcount
            conn.commit()
        except pyodbc.Error as e:
            conn.rollback()
            if _sqlstate(e) in TRANSIENT_STATES:
                raise TransientStoreError(f"Transient failure writing {record_id}: {e}", record_id=record_id) from e
            raise StoreWriteError(f"Failed to write analysis for {record_id}: {e}", record_id=record_id) from e

        if updated == 0:
            raise RecordNotFoundError(f"Record not found: {record_id}", record_id=record_id)

    @property
    def supports_checkpoints(self) -> bool:
        return True

    def save_job(self, job_state: Dict[str, Any]) -> None:
        conn = self._get_conn()
        cursor = conn.cursor()
        cursor.execute(f"""
            MERGE [{self.schema}].[readiness_jobs] AS target
            USING (SELECT ? AS job_id) AS source
            ON target.job_id = source.job_id
            WHEN MATCHED THEN
                UPDATE SET status = ?, state_json = ?, updated_at = SYSUTCDATETIME()
            WHEN NOT MATCHED THEN
                INSERT (job_id, status, state_json, updated_at)
                VALUES (?, ?, ?, SYSUTCDATETIME());
        """, (
            job_state["job_id"],
            job_state.get("status", "running"),
            json.dumps(job_state, default=str),
            job_state["job_id"],
            job_state.get("status", "running"),
            json.dumps(job_state, default=str),
        ))
        conn.commit()

    def load_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        cursor = self._get_conn().cursor()
        cursor.execute(
            f"SELECT state_json FROM [{self.schema}].[readiness_jobs] WHERE job_id = ?",
            (job_id,),
        )
        row = cursor.fetchone()
        return json.loads(row[0]) if row else None

    def close(self) -> None:
        """Close all thread-local connections."""
        with self._connections_lock:
            for _, conn in self._connections:
                try:
                    conn.close()
                except Exception as e:
                    logger.debug(f"Error closing connection: {e}")
            self._connections.clear()
        self._thread_local = threading.local()
