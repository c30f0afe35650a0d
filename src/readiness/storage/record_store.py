"""
Record store interface: paginated reads and atomic analysis writes.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..core.models import Analysis, PageCursor, Record


class RecordStore(ABC):
    """
    Abstract base class for record stores.

    Pages are ordered by (created_at, record_id) ascending. Stores do not
    provide snapshot isolation across pages; callers that need to tolerate
    concurrent inserts should paginate with ``fetch_page_after``.
    """

    @abstractmethod
    def fetch_page(self, offset: int, limit: int) -> List[Record]:
        """
        Read one page of records by numeric offset.

        Args:
            offset: Number of records to skip in the stable ordering
            limit: Maximum number of records to return

        Returns:
            At most ``limit`` records; an empty list means the source is exhausted

        Raises:
            FetchError: If the store cannot be read
        """
        pass

    @abstractmethod
    def fetch_page_after(self, cursor: Optional[PageCursor], limit: int) -> List[Record]:
        """
        Read one page of records strictly after ``cursor`` (keyset pagination).

        Args:
            cursor: Last position seen, or None to start from the beginning
            limit: Maximum number of records to return

        Raises:
            FetchError: If the store cannot be read
        """
        pass

    @abstractmethod
    def write_analysis(self, record_id: str, analysis: Analysis) -> None:
        """
        Replace a record's analysis in a single atomic write.

        Raises:
            RecordNotFoundError: If the record does not exist
            StoreWriteError: If the write fails
        """
        pass

    @abstractmethod
    def get_record(self, record_id: str) -> Optional[Record]:
        """Get a specific record by ID."""
        pass

    @abstractmethod
    def count_records(self) -> int:
        """Total number of records in the store."""
        pass

    def save_job(self, job_state: Dict[str, Any]) -> None:
        """Persist a job checkpoint. Optional; stores without job tables ignore it."""
        pass

    def load_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Load a persisted job checkpoint. Optional."""
        return None

    @property
    def supports_checkpoints(self) -> bool:
        return False

    def close(self) -> None:
        """Close any open resources. Optional."""
        pass
