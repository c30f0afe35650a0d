"""
Record store implementations.

Backends:
    - memory: InMemoryRecordStore (tests, embedding hosts)
    - sqlite: SqliteRecordStore (local use, CLI)
    - sqlserver: SqlServerRecordStore (shared production database, needs pyodbc)

To select a backend, pass ``backend`` to create_record_store() or set the
READINESS_STORE_BACKEND environment variable.
"""

import logging
import os
from pathlib import Path
from typing import Optional, Union

from .record_store import RecordStore
from .memory_store import InMemoryRecordStore
from .sqlite_store import DEFAULT_BUSY_TIMEOUT_SECONDS, SqliteRecordStore


logger = logging.getLogger(__name__)


def create_record_store(
    backend: Optional[str] = None,
    # SQLite options
    db_path: Optional[Union[str, Path]] = None,
    busy_timeout: Optional[float] = None,
    # SQL Server options
    connection_string: Optional[str] = None,
    host: str = "localhost",
    port: int = 1433,
    database: str = "Cellar",
    username: str = "sa",
    password: Optional[str] = None,
    driver: str = "ODBC Driver 18 for SQL Server",
    schema: str = "cellar",
    trust_server_certificate: bool = True,
    query_timeout: Optional[int] = None,
    auto_init: bool = True,
) -> RecordStore:
    """
    Factory function to create the record store for a backend.

    Args:
        backend: 'memory', 'sqlite' or 'sqlserver'. Defaults to READINESS_STORE_BACKEND or 'sqlite'.
        db_path: Path to SQLite database file
        busy_timeout: Seconds SQLite waits on a locked database (default 5)
        connection_string: Full ODBC connection string (SQL Server)
        host, port, database, username, password, driver, schema: SQL Server settings
        trust_server_certificate: Trust self-signed certs (SQL Server)
        query_timeout: Per-statement timeout in seconds (SQL Server, default 30)
        auto_init: Auto-create schema/tables

    Returns:
        RecordStore instance

    Raises:
        ValueError: If backend is not recognized
    """
    if backend is None:
        backend = os.environ.get("READINESS_STORE_BACKEND", "sqlite")
    backend = backend.lower()

    if backend == "memory":
        return InMemoryRecordStore()

    if backend == "sqlite":
        if db_path is None:
            db_path = Path("local/readiness/cellar.db")
        return SqliteRecordStore(
            db_path=db_path,
            auto_init=auto_init,
            busy_timeout=DEFAULT_BUSY_TIMEOUT_SECONDS if busy_timeout is None else busy_timeout,
        )

    if backend == "sqlserver":
        from .sqlserver_store import DEFAULT_QUERY_TIMEOUT_SECONDS, SqlServerRecordStore

        if password is None:
            password = os.environ.get("READINESS_SQLSERVER_PASSWORD") or os.environ.get("MSSQL_SA_PASSWORD")
        if connection_string is None:
            connection_string = os.environ.get("READINESS_SQLSERVER_CONN_STR")

        return SqlServerRecordStore(
            connection_string=connection_string,
            host=host,
            port=port,
            database=database,
            username=username,
            password=password,
            driver=driver,
            schema=schema,
            auto_init=auto_init,
            trust_server_certificate=trust_server_certificate,
            query_timeout=DEFAULT_QUERY_TIMEOUT_SECONDS if query_timeout is None else query_timeout,
        )

    raise ValueError(
        f"Unknown backend: {backend}. "
        "Supported backends: 'memory', 'sqlite', 'sqlserver'"
    )


__all__ = [
    "RecordStore",
    "InMemoryRecordStore",
    "SqliteRecordStore",
    "create_record_store",
]
