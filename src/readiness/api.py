"""
Public entry points for running readiness batch jobs.

``start_batch_job`` runs a job on the calling thread.
``start_batch_job_in_background`` runs it on a daemon thread and returns a
handle, so a UI or service thread is never blocked.
"""

import logging
import threading
from dataclasses import replace
from typing import Any, Optional

from .core.models import AnalysisMode
from .rules_classifier import ReadinessClassifier
from .progress import as_reporter
from .runner.batch_runner import (
    DEFAULT_MAX_RECORDS,
    DEFAULT_PAGE_SIZE,
    BatchConfig,
    BatchRunner,
    BatchSummary,
    CancellationToken,
    JobContext,
)
from .storage.record_store import RecordStore


logger = logging.getLogger(__name__)

_UNSET: Any = object()


def _build_runner(
    store: RecordStore,
    mode: Any,
    page_size: int,
    max_records: Optional[int],
    on_progress: Any,
    config: Optional[BatchConfig],
    classifier: Optional[ReadinessClassifier],
) -> BatchRunner:
    if config is None:
        config = BatchConfig(
            mode=AnalysisMode.MISSING_ONLY if mode is _UNSET else mode,
            page_size=DEFAULT_PAGE_SIZE if page_size is _UNSET else page_size,
            max_records=DEFAULT_MAX_RECORDS if max_records is _UNSET else max_records,
        )
    else:
        overrides = {}
        if mode is not _UNSET:
            overrides["mode"] = mode
        if page_size is not _UNSET:
            overrides["page_size"] = page_size
        if max_records is not _UNSET:
            overrides["max_records"] = max_records
        if overrides:
            config = replace(config, **overrides)
    return BatchRunner(
        store,
        classifier=classifier,
        config=config,
        progress=as_reporter(on_progress),
    )


def start_batch_job(
    store: RecordStore,
    mode: Any = _UNSET,
    page_size: int = _UNSET,
    max_records: Optional[int] = _UNSET,
    on_progress: Any = None,
    cancellation: Optional[CancellationToken] = None,
    config: Optional[BatchConfig] = None,
    classifier: Optional[ReadinessClassifier] = None,
    job: Optional[JobContext] = None,
) -> BatchSummary:
    """
    Run a batch job to completion on the calling thread.

    Args:
        store: Record store to read from and write to
        mode: 'missing_only' (default), 'stale_only' or 'all'
        page_size: Records per page (default 50)
        max_records: Safety cap on processed + failed + skipped (default 1000, None = no cap)
        on_progress: Callable or ProgressReporter receiving one snapshot per page
        cancellation: Token the caller can cancel from another thread
        config: Full BatchConfig; explicit arguments above override its fields
        classifier: Classifier to use (defaults to the rules classifier)
        job: Existing job context to resume

    Returns:
        BatchSummary with counters and the terminal state

    Example:
        >>> token = CancellationToken()
        >>> summary = start_batch_job(store, mode="all", on_progress=print, cancellation=token)
        >>> summary.terminal_state
        <JobStatus.COMPLETED: 'completed'>
    """
    runner = _build_runner(store, mode, page_size, max_records, on_progress, config, classifier)
    if job is None:
        job = runner.new_job(cancel_token=cancellation)
    elif cancellation is not None:
        job.cancel_token = cancellation
    return runner.run(job)


class BatchJobHandle:
    """Handle to a batch job running on a background thread."""

    def __init__(self, job: JobContext):
        self.job = job
        self._thread: Optional[threading.Thread] = None
        self._summary: Optional[BatchSummary] = None
        self._error: Optional[BaseException] = None
        self._finished = threading.Event()

    @property
    def job_id(self) -> str:
        return self.job.job_id

    def cancel(self) -> None:
        """Request cooperative cancellation; the current page still finishes."""
        self.job.cancel()

    def done(self) -> bool:
        return self._finished.is_set()

    def result(self, timeout: Optional[float] = None) -> BatchSummary:
        """
        Wait for the job and return its summary.

        Raises:
            TimeoutError: If the job is still running after ``timeout`` seconds
        """
        if not self._finished.wait(timeout):
            raise TimeoutError(f"Job {self.job.job_id} still running after {timeout}s")
        if self._error is not None:
            raise self._error
        return self._summary

    def _set_result(self, summary: BatchSummary) -> None:
        self._summary = summary
        self._finished.set()

    def _set_error(self, error: BaseException) -> None:
        self._error = error
        self._finished.set()


def start_batch_job_in_background(
    store: RecordStore,
    mode: Any = _UNSET,
    page_size: int = _UNSET,
    max_records: Optional[int] = _UNSET,
    on_progress: Any = None,
    cancellation: Optional[CancellationToken] = None,
    config: Optional[BatchConfig] = None,
    classifier: Optional[ReadinessClassifier] = None,
    job: Optional[JobContext] = None,
) -> BatchJobHandle:
    """
    Start a batch job on a daemon thread and return immediately.

    Takes the same arguments as start_batch_job().
    """
    runner = _build_runner(store, mode, page_size, max_records, on_progress, config, classifier)
    if job is None:
        job = runner.new_job(cancel_token=cancellation)
    elif cancellation is not None:
        job.cancel_token = cancellation

    handle = BatchJobHandle(job)

    def _target():
        try:
            handle._set_result(runner.run(job))
        except BaseException as e:
            logger.error(f"Background job {job.job_id} crashed: {e}")
            handle._set_error(e)

    handle._thread = threading.Thread(
        target=_target,
        name=f"readiness-job-{job.job_id[:8]}",
        daemon=True,
    )
    handle._thread.start()
    logger.info(f"Started background batch job {job.job_id}")
    return handle
