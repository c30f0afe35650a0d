"""
Batch runner for bulk readiness classification.

Drives one job through the store page by page:
- Checks the job's cancellation token before every page
- Fetches the next page (keyset or offset pagination)
- Skips records whose analysis is still fresh for the job's mode
- Classifies and writes the rest on a small fixed-size thread pool
- Emits one progress snapshot per page and yields between pages

Only a failed page fetch ends a job early. Per-record problems are counted
as failures and the job moves on. A unit that overruns its deadline is
counted as a timeout and left to finish on a retired worker; the write it
may still complete is not reported.
"""

import logging
import os
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from ..core.exceptions import ConfigError, UnitTimeoutError
from ..core.logging import CorrelationContext
from ..core.models import (
    AnalysisMode,
    JobStatus,
    PageCursor,
    Record,
    RecordFailure,
    parse_timestamp,
)
from ..freshness import partition_page
from ..progress import ProgressReporter, ProgressSnapshot, safe_report
from ..rules_classifier import CURRENT_ALGORITHM_VERSION, ReadinessClassifier
from ..storage.record_store import RecordStore
from ..writer import ResultWriter, WriteOutcome


logger = logging.getLogger(__name__)


# Default job configuration
DEFAULT_PAGE_SIZE = 50
DEFAULT_MAX_RECORDS = 1000
DEFAULT_CONCURRENCY = 3
DEFAULT_UNIT_TIMEOUT_SECONDS = 30.0
DEFAULT_YIELD_SECONDS = 0.05
DEFAULT_MAX_FAILURES_KEPT = 50

PAGINATION_MODES = ("keyset", "offset")


def _optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or value.strip().lower() in ("", "none", "unlimited"):
        return None
    return int(value)


@dataclass
class BatchConfig:
    """
    Configuration for a batch job.

    Attributes:
        mode: Which records to (re-)classify
        page_size: Records fetched per page
        max_records: Stop once processed + failed + skipped reaches this (None = no cap)
        concurrency: Classify+write units running at once within a page
        unit_timeout_seconds: Deadline for one classify+write unit, counted from when a worker
            starts it; late units are failed and abandoned (None = no deadline)
        yield_seconds: Pause between pages so the host stays responsive
        pagination: 'keyset' (after the last record seen) or 'offset'
        algorithm_version: Version stamped on analyses and used for staleness
        max_failures_kept: Number of per-record failures kept on the summary
        checkpoint: Persist job state after every page when the store supports it
    """
    mode: AnalysisMode = AnalysisMode.MISSING_ONLY
    page_size: int = DEFAULT_PAGE_SIZE
    max_records: Optional[int] = DEFAULT_MAX_RECORDS
    concurrency: int = DEFAULT_CONCURRENCY
    unit_timeout_seconds: Optional[float] = DEFAULT_UNIT_TIMEOUT_SECONDS
    yield_seconds: float = DEFAULT_YIELD_SECONDS
    pagination: str = "keyset"
    algorithm_version: int = CURRENT_ALGORITHM_VERSION
    max_failures_kept: int = DEFAULT_MAX_FAILURES_KEPT
    checkpoint: bool = True

    def __post_init__(self):
        try:
            self.mode = AnalysisMode.parse(self.mode)
        except ValueError as e:
            raise ConfigError(str(e)) from e
        self.validate()

    def validate(self) -> None:
        """Raise ConfigError if any value is out of range."""
        if self.page_size < 1:
            raise ConfigError(f"page_size must be >= 1, got {self.page_size}")
        if self.max_records is not None and self.max_records < 0:
            raise ConfigError(f"max_records must be >= 0, got {self.max_records}")
        if self.concurrency < 1:
            raise ConfigError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.unit_timeout_seconds is not None and self.unit_timeout_seconds <= 0:
            raise ConfigError(f"unit_timeout_seconds must be > 0, got {self.unit_timeout_seconds}")
        if self.yield_seconds < 0:
            raise ConfigError(f"yield_seconds must be >= 0, got {self.yield_seconds}")
        if self.pagination not in PAGINATION_MODES:
            raise ConfigError(f"pagination must be one of {PAGINATION_MODES}, got {self.pagination!r}")
        if self.max_failures_kept < 0:
            raise ConfigError(f"max_failures_kept must be >= 0, got {self.max_failures_kept}")

    @classmethod
    def from_env(cls) -> "BatchConfig":
        """Create config from environment variables."""
        try:
            return cls(
                mode=os.environ.get("READINESS_MODE", AnalysisMode.MISSING_ONLY.value),
                page_size=int(os.environ.get("READINESS_PAGE_SIZE", str(DEFAULT_PAGE_SIZE))),
                max_records=_optional_int(os.environ.get("READINESS_MAX_RECORDS", str(DEFAULT_MAX_RECORDS))),
                concurrency=int(os.environ.get("READINESS_CONCURRENCY", str(DEFAULT_CONCURRENCY))),
                unit_timeout_seconds=float(
                    os.environ.get("READINESS_UNIT_TIMEOUT_SECONDS", str(DEFAULT_UNIT_TIMEOUT_SECONDS))
                ),
                yield_seconds=float(os.environ.get("READINESS_YIELD_SECONDS", str(DEFAULT_YIELD_SECONDS))),
                pagination=os.environ.get("READINESS_PAGINATION", "keyset"),
            )
        except ValueError as e:
            raise ConfigError(f"Invalid readiness environment setting: {e}") from e


class CancellationToken:
    """
    Cooperative cancellation signal shared between a job and its caller.

    Safe to cancel from any thread. The runner polls it before fetching each
    page, so in-flight work for the current page always finishes.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def reset(self) -> None:
        self._event.clear()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to ``timeout`` seconds; returns early (True) if cancelled."""
        return self._event.wait(timeout)


@dataclass
class JobContext:
    """
    Caller-owned state of one batch job.

    Holds the counters, the pagination position and the cancellation token.
    A context left cancelled, failed or interrupted can be passed back to
    BatchRunner.run() to continue where it stopped.
    """
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    mode: AnalysisMode = AnalysisMode.MISSING_ONLY
    status: JobStatus = JobStatus.IDLE
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    pages: int = 0
    offset: int = 0
    cursor: Optional[PageCursor] = None
    total_estimate: Optional[int] = None
    failures: List[RecordFailure] = field(default_factory=list)
    cancel_token: CancellationToken = field(default_factory=CancellationToken, repr=False, compare=False)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    error: Optional[str] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    def __post_init__(self):
        self.mode = AnalysisMode.parse(self.mode)
        self.status = JobStatus(self.status)

    @property
    def total(self) -> int:
        return self.processed + self.failed + self.skipped

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_token.is_cancelled

    def cancel(self) -> None:
        self.cancel_token.cancel()

    def record_outcome(self, outcome: WriteOutcome, max_failures_kept: int) -> None:
        with self._lock:
            if outcome.success:
                self.processed += 1
                return
            self.failed += 1
            if len(self.failures) < max_failures_kept:
                self.failures.append(
                    RecordFailure(record_id=outcome.record_id, reason=outcome.error or "unknown error")
                )

    def add_skipped(self, count: int) -> None:
        with self._lock:
            self.skipped += count

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return ProgressSnapshot(
                job_id=self.job_id,
                page=self.pages,
                processed=self.processed,
                failed=self.failed,
                skipped=self.skipped,
                total_estimate=self.total_estimate,
            )

    def to_dict(self) -> Dict[str, Any]:
        """Serializable checkpoint of the job (the cancellation token is not persisted)."""
        with self._lock:
            return {
                "job_id": self.job_id,
                "mode": self.mode.value,
                "status": self.status.value,
                "processed": self.processed,
                "failed": self.failed,
                "skipped": self.skipped,
                "pages": self.pages,
                "offset": self.offset,
                "cursor": self.cursor.to_dict() if self.cursor else None,
                "total_estimate": self.total_estimate,
                "failures": [f.to_dict() for f in self.failures],
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "ended_at": self.ended_at.isoformat() if self.ended_at else None,
                "error": self.error,
            }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], cancel_token: Optional[CancellationToken] = None) -> "JobContext":
        job = cls(
            job_id=data["job_id"],
            mode=data.get("mode", AnalysisMode.MISSING_ONLY.value),
            status=data.get("status", JobStatus.IDLE.value),
            processed=data.get("processed", 0),
            failed=data.get("failed", 0),
            skipped=data.get("skipped", 0),
            pages=data.get("pages", 0),
            offset=data.get("offset", 0),
            cursor=PageCursor.from_dict(data["cursor"]) if data.get("cursor") else None,
            total_estimate=data.get("total_estimate"),
            failures=[
                RecordFailure(
                    record_id=f["record_id"],
                    reason=f["reason"],
                    occurred_at=parse_timestamp(f["occurred_at"]),
                )
                for f in data.get("failures", [])
            ],
            started_at=parse_timestamp(data["started_at"]) if data.get("started_at") else None,
            ended_at=parse_timestamp(data["ended_at"]) if data.get("ended_at") else None,
            error=data.get("error"),
        )
        if cancel_token is not None:
            job.cancel_token = cancel_token
        return job


@dataclass
class BatchSummary:
    """Final counters and terminal state of a batch job."""
    job_id: str
    processed: int
    failed: int
    skipped: int
    terminal_state: JobStatus
    pages: int = 0
    total_estimate: Optional[int] = None
    failures: List[RecordFailure] = field(default_factory=list)
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def total(self) -> int:
        return self.processed + self.failed + self.skipped

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at is None or self.ended_at is None:
            return None
        return int((self.ended_at - self.started_at).total_seconds() * 1000)

    @classmethod
    def from_job(cls, job: JobContext) -> "BatchSummary":
        with job._lock:
            return cls(
                job_id=job.job_id,
                processed=job.processed,
                failed=job.failed,
                skipped=job.skipped,
                terminal_state=job.status,
                pages=job.pages,
                total_estimate=job.total_estimate,
                failures=list(job.failures),
                error=job.error,
                started_at=job.started_at,
                ended_at=job.ended_at,
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "terminal_state": self.terminal_state.value,
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "total": self.total,
            "pages": self.pages,
            "total_estimate": self.total_estimate,
            "failures": [f.to_dict() for f in self.failures],
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_ms": self.duration_ms,
        }


class _Unit:
    """One record's classify+write, shared by the page loop and its worker."""

    def __init__(self, record: Record):
        self.record = record
        self.started_at: Optional[float] = None
        self.abandoned = False

    def remaining(self, timeout: float, now: float) -> Optional[float]:
        """Seconds left before the deadline, or None if no worker has started it."""
        if self.started_at is None:
            return None
        return self.started_at + timeout - now


class _UnitPool:
    """
    Worker threads for classify+write units.

    A unit past its deadline keeps its worker busy, so the page loop retires
    the executor it runs on and continues with a fresh one. Retired executors
    are shut down without waiting; their workers exit once the blocked call
    returns.
    """

    def __init__(self, workers: int):
        self.workers = workers
        self.retired = 0
        self._executor = self._new_executor()

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="readiness-worker")

    def submit(self, fn, *args) -> Future:
        return self._executor.submit(fn, *args)

    def replace(self) -> None:
        self._executor.shutdown(wait=False)
        self._executor = self._new_executor()
        self.retired += 1

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


class BatchRunner:
    """
    Runs readiness classification over a record store.

    Features:
    - Bounded per-page fan-out on a ThreadPoolExecutor
    - Cooperative cancellation checked before each page
    - Per-unit deadlines; a unit past its deadline is failed and its worker replaced
    - Progress snapshots after every page
    - Optional checkpoints so interrupted jobs can be resumed

    Example:
        >>> runner = BatchRunner(store, config=BatchConfig(mode="all", page_size=50))
        >>> summary = runner.run()
        >>> print(summary.terminal_state, summary.processed)
    """

    def __init__(
        self,
        store: RecordStore,
        classifier: Optional[ReadinessClassifier] = None,
        writer: Optional[ResultWriter] = None,
        config: Optional[BatchConfig] = None,
        progress: Optional[ProgressReporter] = None,
    ):
        self.store = store
        self.config = config or BatchConfig()
        self.classifier = classifier or ReadinessClassifier(version=self.config.algorithm_version)
        self.writer = writer or ResultWriter(store)
        self.progress = progress

    def new_job(self, cancel_token: Optional[CancellationToken] = None) -> JobContext:
        job = JobContext(mode=self.config.mode)
        if cancel_token is not None:
            job.cancel_token = cancel_token
        return job

    def load_job(self, job_id: str, cancel_token: Optional[CancellationToken] = None) -> Optional[JobContext]:
        """Rebuild a job context from the store's checkpoint, if there is one."""
        data = self.store.load_job(job_id)
        if data is None:
            return None
        return JobContext.from_dict(data, cancel_token=cancel_token)

    def run(self, job: Optional[JobContext] = None) -> BatchSummary:
        """
        Run a job until the source is exhausted, the cap is reached, the
        job is cancelled, or a page fetch fails.

        Args:
            job: Existing job context to run or resume (a new one is created if None)

        Returns:
            BatchSummary with the counters accumulated so far

        Raises:
            ValueError: If ``job`` already completed
            Exception: Anything unexpected from the run loop, after the job is
                marked failed and checkpointed
        """
        if job is None:
            job = self.new_job()
        elif job.status == JobStatus.COMPLETED:
            raise ValueError(f"Job {job.job_id} already completed")
        elif job.status == JobStatus.CANCELLED:
            logger.info(f"Resuming cancelled job {job.job_id}")
            job.cancel_token.reset()

        job.status = JobStatus.RUNNING
        job.error = None
        job.ended_at = None
        if job.started_at is None:
            job.started_at = datetime.now(timezone.utc)

        with CorrelationContext(job_id=job.job_id, mode=job.mode.value):
            logger.info(
                f"Starting batch job {job.job_id}: mode={job.mode.value}, "
                f"page_size={self.config.page_size}, max_records={self.config.max_records}, "
                f"concurrency={self.config.concurrency}, pagination={self.config.pagination}"
            )
            if job.total_estimate is None:
                job.total_estimate = self._estimate_total()

            pool = _UnitPool(self.config.concurrency)
            try:
                self._run_loop(job, pool)
            except Exception as e:
                job.status = JobStatus.FAILED
                job.error = f"{type(e).__name__}: {e}"
                logger.exception(f"Batch job {job.job_id} failed unexpectedly: {e}")
                raise
            finally:
                pool.shutdown()
                job.ended_at = datetime.now(timezone.utc)
                self._checkpoint(job)

            summary = BatchSummary.from_job(job)
            logger.info(
                f"Batch job {job.job_id} {summary.terminal_state.value}: "
                f"processed={summary.processed}, failed={summary.failed}, "
                f"skipped={summary.skipped}, pages={summary.pages}"
            )
        return summary

    def _run_loop(self, job: JobContext, pool: _UnitPool) -> None:
        while True:
            if job.is_cancelled:
                logger.info(f"Cancellation observed after {job.pages} pages")
                job.status = JobStatus.CANCELLED
                return

            limit = self._next_limit(job)
            if limit <= 0:
                logger.info(f"Record cap reached ({self.config.max_records})")
                job.status = JobStatus.COMPLETED
                return

            try:
                page = self._fetch(job, limit)
            except Exception as e:
                job.error = f"{type(e).__name__}: {e}"
                job.status = JobStatus.FAILED
                logger.error(f"Page fetch failed at page {job.pages + 1}: {e}")
                return

            if not page:
                logger.debug("Source exhausted")
                job.status = JobStatus.COMPLETED
                return

            page = page[:limit]
            job.pages += 1
            with CorrelationContext(page=job.pages):
                self._process_page(job, page, pool)
                job.offset += len(page)
                job.cursor = PageCursor.after(page[-1])
                safe_report(self.progress, job.snapshot())
                self._checkpoint(job)

            if len(page) < limit:
                logger.debug("Short page; source exhausted")
                job.status = JobStatus.COMPLETED
                return
            if self.config.max_records is not None and job.total >= self.config.max_records:
                logger.info(f"Record cap reached ({self.config.max_records})")
                job.status = JobStatus.COMPLETED
                return

            if self.config.yield_seconds > 0:
                job.cancel_token.wait(self.config.yield_seconds)

    def _next_limit(self, job: JobContext) -> int:
        if self.config.max_records is None:
            return self.config.page_size
        return min(self.config.page_size, self.config.max_records - job.total)

    def _fetch(self, job: JobContext, limit: int) -> List[Record]:
        if self.config.pagination == "offset":
            return self.store.fetch_page(job.offset, limit)
        return self.store.fetch_page_after(job.cursor, limit)

    def _process_page(self, job: JobContext, page: List[Record], pool: _UnitPool) -> None:
        to_analyze, skipped = partition_page(page, job.mode, self.config.algorithm_version)
        job.add_skipped(len(skipped))

        units: Dict[Future, _Unit] = {}
        for record in to_analyze:
            unit = _Unit(record)
            units[pool.submit(self._process_unit, job.job_id, job.pages, unit)] = unit

        pending: Set[Future] = set(units)
        while pending:
            done, pending = wait(pending, timeout=self._wait_timeout(units, pending), return_when=FIRST_COMPLETED)
            for future in done:
                job.record_outcome(self._outcome(future, units[future]), self.config.max_failures_kept)

            expired = self._expired(units, pending)
            if not expired:
                continue
            for future in expired:
                pending.discard(future)
                job.record_outcome(self._abandon(units[future]), self.config.max_failures_kept)
            pending = self._move_queued_units(job, units, pending, pool)

        logger.debug(
            f"Page {job.pages}: {len(page)} records, {len(to_analyze)} analyzed, {len(skipped)} skipped"
        )

    def _wait_timeout(self, units: Dict[Future, _Unit], pending: Set[Future]) -> Optional[float]:
        """Time until the earliest running unit's deadline."""
        timeout = self.config.unit_timeout_seconds
        if timeout is None:
            return None
        now = time.monotonic()
        remaining = [units[f].remaining(timeout, now) for f in pending]
        remaining = [r for r in remaining if r is not None]
        if not remaining:
            return timeout
        return max(0.0, min(remaining))

    def _expired(self, units: Dict[Future, _Unit], pending: Set[Future]) -> List[Future]:
        timeout = self.config.unit_timeout_seconds
        if timeout is None:
            return []
        now = time.monotonic()
        expired = []
        for future in pending:
            remaining = units[future].remaining(timeout, now)
            if remaining is not None and remaining <= 0 and not future.done():
                expired.append(future)
        return expired

    def _abandon(self, unit: _Unit) -> WriteOutcome:
        unit.abandoned = True
        elapsed = time.monotonic() - unit.started_at
        record_id = unit.record.record_id
        error = UnitTimeoutError(
            f"Unit for {record_id} still running after {elapsed:.3f}s "
            f"(limit {self.config.unit_timeout_seconds}s); abandoned",
            record_id=record_id,
            elapsed_seconds=elapsed,
        )
        logger.warning(str(error))
        return WriteOutcome(record_id=record_id, success=False, error=f"UnitTimeoutError: {error}", attempts=0)

    def _move_queued_units(
        self,
        job: JobContext,
        units: Dict[Future, _Unit],
        pending: Set[Future],
        pool: _UnitPool,
    ) -> Set[Future]:
        """Retire the pool holding abandoned units and resubmit units no worker has started."""
        pool.replace()
        kept: Set[Future] = set()
        moved = 0
        for future in pending:
            if future.cancel():
                unit = units.pop(future)
                new_future = pool.submit(self._process_unit, job.job_id, job.pages, unit)
                units[new_future] = unit
                kept.add(new_future)
                moved += 1
            else:
                kept.add(future)
        logger.info(f"Replaced worker pool after unit timeout ({moved} queued units moved)")
        return kept

    @staticmethod
    def _outcome(future: Future, unit: _Unit) -> WriteOutcome:
        try:
            return future.result()
        except Exception as e:
            return WriteOutcome(record_id=unit.record.record_id, success=False, error=str(e))

    def _process_unit(self, job_id: str, page: int, unit: _Unit) -> WriteOutcome:
        """Classify one record and write the result; never raises."""
        record = unit.record
        with CorrelationContext(
            job_id=job_id,
            page=page,
            record_id=record.record_id,
            worker_id=threading.current_thread().name,
        ):
            unit.started_at = time.monotonic()
            try:
                analysis = self.classifier.classify(record)
                analysis.validate_for(record.kind)
            except Exception as e:
                logger.warning(f"Classification failed for {record.record_id}: {e}")
                return WriteOutcome(
                    record_id=record.record_id,
                    success=False,
                    error=f"{type(e).__name__}: {e}",
                    attempts=0,
                )

            # An abandoned unit has already been counted; it must not write
            elapsed = time.monotonic() - unit.started_at
            timeout = self.config.unit_timeout_seconds
            if unit.abandoned or (timeout is not None and elapsed > timeout):
                error = UnitTimeoutError(
                    f"Unit for {record.record_id} took {elapsed:.3f}s (limit {timeout}s)",
                    record_id=record.record_id,
                    elapsed_seconds=elapsed,
                )
                logger.warning(str(error))
                return WriteOutcome(
                    record_id=record.record_id,
                    success=False,
                    error=f"UnitTimeoutError: {error}",
                    attempts=0,
                )

            return self.writer.write_analysis(record.record_id, analysis)

    def _estimate_total(self) -> Optional[int]:
        try:
            count = self.store.count_records()
        except Exception as e:
            logger.warning(f"Could not estimate record count: {e}")
            return None
        if self.config.max_records is not None:
            return min(count, self.config.max_records)
        return count

    def _checkpoint(self, job: JobContext) -> None:
        if not (self.config.checkpoint and self.store.supports_checkpoints):
            return
        try:
            self.store.save_job(job.to_dict())
        except Exception as e:
            logger.warning(f"Failed to checkpoint job {job.job_id}: {e}")
