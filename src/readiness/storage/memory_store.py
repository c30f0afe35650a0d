"""
In-memory record store.

Useful for tests and for hosts that already hold their inventory in memory.
"""

import dataclasses
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional

from ..core.exceptions import RecordNotFoundError
from ..core.models import Analysis, PageCursor, Record
from .record_store import RecordStore


logger = logging.getLogger(__name__)


class InMemoryRecordStore(RecordStore):
    """
    Thread-safe record store backed by a dict.

    Reads sort on demand, so records inserted mid-run show up in their
    proper position, the same as a database-backed store.
    """

    def __init__(self, records: Optional[Iterable[Record]] = None):
        self._lock = threading.Lock()
        self._records: Dict[str, Record] = {}
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self.write_count = 0
        if records:
            self.add_records(records)

    def add_records(self, records: Iterable[Record]) -> int:
        count = 0
        with self._lock:
            for record in records:
                self._records[record.record_id] = record
                count += 1
        return count

    def delete_record(self, record_id: str) -> bool:
        with self._lock:
            return self._records.pop(record_id, None) is not None

    def _ordered(self) -> List[Record]:
        return sorted(self._records.values(), key=lambda r: r.sort_key)

    def fetch_page(self, offset: int, limit: int) -> List[Record]:
        if offset < 0 or limit < 0:
            raise ValueError("offset and limit must be non-negative")
        with self._lock:
            return self._ordered()[offset:offset + limit]

    def fetch_page_after(self, cursor: Optional[PageCursor], limit: int) -> List[Record]:
        if limit < 0:
            raise ValueError("limit must be non-negative")
        with self._lock:
            ordered = self._ordered()
        if cursor is not None:
            position = (cursor.created_at, cursor.record_id)
            ordered = [r for r in ordered if r.sort_key > position]
        return ordered[:limit]

    def write_analysis(self, record_id: str, analysis: Analysis) -> None:
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise RecordNotFoundError(f"Record not found: {record_id}", record_id=record_id)
            # Records are frozen; replace the whole entry
            self._records[record_id] = dataclasses.replace(record, analysis=analysis)
            self.write_count += 1

    def get_record(self, record_id: str) -> Optional[Record]:
        with self._lock:
            return self._records.get(record_id)

    def count_records(self) -> int:
        with self._lock:
            return len(self._records)

    def save_job(self, job_state: Dict[str, Any]) -> None:
        with self._lock:
            self._jobs[job_state["job_id"]] = dict(job_state)

    def load_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            job = self._jobs.get(job_id)
            return dict(job) if job else None

    @property
    def supports_checkpoints(self) -> bool:
        return True
