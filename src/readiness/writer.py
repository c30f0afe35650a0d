"""
Result writer: persists one analysis per record and reports the outcome.

The writer is the per-record boundary of the pipeline. Store failures are
turned into a failed WriteOutcome instead of propagating, so one bad record
never stops a batch.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .core.exceptions import TransientStoreError
from .core.models import Analysis
from .storage.record_store import RecordStore
from .utils.retry import RetryConfig, retry_with_backoff


logger = logging.getLogger(__name__)


@dataclass
class WriteOutcome:
    """Result of writing one analysis."""
    record_id: str
    success: bool
    error: Optional[str] = None
    attempts: int = 1


class ResultWriter:
    """
    Writes analyses to a record store with retry on transient failures.

    Only TransientStoreError is retried; a missing record or a permanent
    store error fails on the first attempt.
    """

    def __init__(self, store: RecordStore, retry_config: Optional[RetryConfig] = None):
        self.store = store
        self.retry_config = retry_config or RetryConfig()

    def write_analysis(self, record_id: str, analysis: Analysis) -> WriteOutcome:
        result = retry_with_backoff(
            lambda: self.store.write_analysis(record_id, analysis),
            self.retry_config,
            retry_on=(TransientStoreError,),
            operation_name=f"write_analysis({record_id})",
        )
        if result.success:
            return WriteOutcome(record_id=record_id, success=True, attempts=result.attempts)

        error = result.error
        message = f"{type(error).__name__}: {error}" if error else "unknown write failure"
        logger.warning(f"Failed to write analysis for {record_id}: {message}")
        return WriteOutcome(
            record_id=record_id,
            success=False,
            error=message,
            attempts=result.attempts,
        )
