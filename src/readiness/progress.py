"""
Progress reporting for batch jobs.

The runner emits one ProgressSnapshot per non-empty page to a
ProgressReporter. Reporters are sinks: a plain callback, the log, a queue
read by another thread, or several of those at once.
"""

import logging
import queue
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressSnapshot:
    """Counters of a job after a page has been fully processed."""
    job_id: str
    page: int
    processed: int
    failed: int
    skipped: int
    total_estimate: Optional[int] = None

    @property
    def total_so_far(self) -> int:
        return self.processed + self.failed + self.skipped

    @property
    def percent(self) -> Optional[float]:
        if not self.total_estimate:
            return None
        return min(100.0, 100.0 * self.total_so_far / self.total_estimate)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["total_so_far"] = self.total_so_far
        return data


class ProgressReporter(ABC):
    """Sink for progress snapshots."""

    @abstractmethod
    def report(self, snapshot: ProgressSnapshot) -> None:
        pass


class CallbackProgressReporter(ProgressReporter):
    """Adapts a plain ``on_progress(snapshot)`` callable."""

    def __init__(self, callback: Callable[[ProgressSnapshot], None]):
        self.callback = callback

    def report(self, snapshot: ProgressSnapshot) -> None:
        self.callback(snapshot)


class LoggingProgressReporter(ProgressReporter):
    """Logs one line per snapshot."""

    def __init__(self, logger_: Optional[logging.Logger] = None, level: int = logging.INFO):
        self.logger = logger_ or logger
        self.level = level

    def report(self, snapshot: ProgressSnapshot) -> None:
        total = f"/{snapshot.total_estimate}" if snapshot.total_estimate else ""
        self.logger.log(
            self.level,
            f"Job {snapshot.job_id} page {snapshot.page}: "
            f"{snapshot.total_so_far}{total} records "
            f"(processed={snapshot.processed}, failed={snapshot.failed}, skipped={snapshot.skipped})",
        )


class QueueProgressReporter(ProgressReporter):
    """
    Puts snapshots on a queue for a consumer on another thread.

    Example:
        >>> reporter = QueueProgressReporter()
        >>> handle = start_batch_job_in_background(store, on_progress=reporter)
        >>> snapshot = reporter.queue.get(timeout=5)
    """

    def __init__(self, queue_: Optional["queue.Queue[ProgressSnapshot]"] = None):
        self.queue = queue_ if queue_ is not None else queue.Queue()

    def report(self, snapshot: ProgressSnapshot) -> None:
        self.queue.put(snapshot)

    def drain(self) -> List[ProgressSnapshot]:
        """Return every snapshot currently queued without blocking."""
        snapshots = []
        while True:
            try:
                snapshots.append(self.queue.get_nowait())
            except queue.Empty:
                return snapshots


class CompositeProgressReporter(ProgressReporter):
    """Fans a snapshot out to several reporters."""

    def __init__(self, reporters: Iterable[ProgressReporter]):
        self.reporters = list(reporters)

    def report(self, snapshot: ProgressSnapshot) -> None:
        for reporter in self.reporters:
            safe_report(reporter, snapshot)


def safe_report(reporter: Optional[ProgressReporter], snapshot: ProgressSnapshot) -> None:
    """Deliver a snapshot; a failing sink is logged and otherwise ignored."""
    if reporter is None:
        return
    try:
        reporter.report(snapshot)
    except Exception as e:
        logger.warning(f"Progress reporter {type(reporter).__name__} failed: {e}")


def as_reporter(on_progress: Any) -> Optional[ProgressReporter]:
    """Coerce None, a ProgressReporter, a callable or a list of those into a reporter."""
    if on_progress is None or isinstance(on_progress, ProgressReporter):
        return on_progress
    if callable(on_progress):
        return CallbackProgressReporter(on_progress)
    if isinstance(on_progress, (list, tuple)):
        return CompositeProgressReporter(as_reporter(p) for p in on_progress if p is not None)
    raise TypeError(f"Unsupported progress sink: {on_progress!r}")
