"""
Shared test fixtures and configuration for pytest.
"""

import logging
import os
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Optional

import pytest

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from readiness.core.clock import FixedClock
from readiness.core.models import Analysis, Record, RegionTier, WineKind
from readiness.storage import InMemoryRecordStore, SqliteRecordStore


logger = logging.getLogger(__name__)


BASE_CREATED_AT = datetime(2024, 1, 1, tzinfo=timezone.utc)
CURRENT_YEAR = 2025


# ============================================================================
# Environment detection
# ============================================================================

def is_sqlserver_available() -> bool:
    """Check if SQL Server is available for testing."""
    password = os.environ.get("READINESS_SQLSERVER_PASSWORD") or os.environ.get("MSSQL_SA_PASSWORD")
    if not password:
        return False

    try:
        import pyodbc

        host = os.environ.get("READINESS_SQLSERVER_HOST", "localhost")
        port = int(os.environ.get("READINESS_SQLSERVER_PORT", "1433"))
        database = os.environ.get("READINESS_SQLSERVER_DATABASE",
                                  os.environ.get("MSSQL_DATABASE", "Cellar"))
        username = os.environ.get("READINESS_SQLSERVER_USER", "sa")
        driver = os.environ.get("READINESS_SQLSERVER_DRIVER", "ODBC Driver 18 for SQL Server")

        conn_str = (
            f"Driver={{{driver}}};"
            f"Server={host},{port};"
            f"Database={database};"
            f"UID={username};"
            f"PWD={password};"
            f"TrustServerCertificate=yes"
        )

        conn = pyodbc.connect(conn_str, timeout=5)
        conn.close()
        return True

    except Exception as e:
        logger.debug(f"SQL Server not available: {e}")
        return False


def wait_for_sqlserver(timeout: int = 60, interval: int = 2) -> bool:
    """
    Wait for SQL Server to become available.

    Args:
        timeout: Maximum time to wait in seconds
        interval: Time between retries in seconds

    Returns:
        True if SQL Server became available, False otherwise
    """
    start_time = time.time()

    while time.time() - start_time < timeout:
        if is_sqlserver_available():
            return True
        time.sleep(interval)

    return False


# ============================================================================
# Pytest hooks
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line("markers", "integration: Integration tests (requires SQL Server)")
    config.addinivalue_line("markers", "e2e: End-to-end tests (SQLite and the CLI)")
    config.addinivalue_line("markers", "slow: Tests that take a long time to run")


def pytest_collection_modifyitems(config, items):
    """Automatically skip integration tests if SQL Server is not available."""
    if not any("integration" in item.keywords for item in items):
        return
    if is_sqlserver_available():
        return

    skip_sqlserver = pytest.mark.skip(
        reason="SQL Server not available (set MSSQL_SA_PASSWORD and ensure SQL Server is running)"
    )

    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_sqlserver)


# ============================================================================
# Record helpers
# ============================================================================

def make_record(
    index: int,
    kind: Optional[str] = "red",
    vintage_year: Optional[int] = 2018,
    region_tier: RegionTier = RegionTier.STANDARD,
    region: Optional[str] = None,
    analysis: Optional[Analysis] = None,
) -> Record:
    """Build a record whose created_at and id both sort by ``index``."""
    return Record(
        record_id=f"rec-{index:05d}",
        created_at=BASE_CREATED_AT + timedelta(seconds=index),
        kind=WineKind.parse(kind),
        kind_label=kind,
        vintage_year=vintage_year,
        region_tier=region_tier,
        region=region,
        name=f"Bottle {index}",
        analysis=analysis,
    )


def make_records(count: int, **kwargs) -> List[Record]:
    return [make_record(i, **kwargs) for i in range(count)]


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def fixed_clock() -> FixedClock:
    """Clock pinned to mid-2025."""
    return FixedClock.for_year(CURRENT_YEAR)


@pytest.fixture
def record_factory() -> Callable[..., Record]:
    """Fixture providing the make_record helper."""
    return make_record


@pytest.fixture
def records_factory() -> Callable[..., List[Record]]:
    """Fixture providing the make_records helper."""
    return make_records


@pytest.fixture
def memory_store() -> InMemoryRecordStore:
    """Empty in-memory record store."""
    return InMemoryRecordStore()


@pytest.fixture
def populated_memory_store() -> InMemoryRecordStore:
    """In-memory store with 1000 red bottles and no analyses."""
    return InMemoryRecordStore(make_records(1000))


@pytest.fixture
def sqlite_store(tmp_path):
    """SQLite record store in a temporary directory."""
    store = SqliteRecordStore(tmp_path / "cellar.db")
    yield store
    store.close()


@pytest.fixture(scope="session")
def sqlserver_config() -> dict:
    """Session-scoped fixture providing SQL Server connection configuration."""
    return {
        "host": os.environ.get("READINESS_SQLSERVER_HOST", "localhost"),
        "port": int(os.environ.get("READINESS_SQLSERVER_PORT", "1433")),
        "database": os.environ.get("READINESS_SQLSERVER_DATABASE",
                                   os.environ.get("MSSQL_DATABASE", "Cellar")),
        "username": os.environ.get("READINESS_SQLSERVER_USER", "sa"),
        "password": os.environ.get("READINESS_SQLSERVER_PASSWORD",
                                   os.environ.get("MSSQL_SA_PASSWORD")),
        "driver": os.environ.get("READINESS_SQLSERVER_DRIVER", "ODBC Driver 18 for SQL Server"),
    }


@pytest.fixture(scope="function")
def test_schema_name() -> str:
    """Fixture providing a unique test schema name."""
    import uuid
    return f"test_{uuid.uuid4().hex[:8]}"
