"""
Cellar readiness backfill.

Computes a drink-readiness analysis for every wine bottle in a paginated
record store that needs one, with bounded concurrency, cooperative
cancellation and per-page progress.

Typical use:
    >>> from readiness import start_batch_job
    >>> from readiness.storage import SqliteRecordStore
    >>> store = SqliteRecordStore("local/readiness/cellar.db")
    >>> summary = start_batch_job(store, mode="stale_only")
"""

from .core.models import (
    Analysis,
    AnalysisMode,
    Confidence,
    JobStatus,
    ReadinessStatus,
    Record,
    RegionTier,
    WineKind,
)
from .rules_classifier import CURRENT_ALGORITHM_VERSION, ReadinessClassifier
from .freshness import needs_analysis
from .progress import ProgressReporter, ProgressSnapshot
from .runner.batch_runner import BatchConfig, BatchRunner, BatchSummary, CancellationToken, JobContext
from .api import BatchJobHandle, start_batch_job, start_batch_job_in_background

__version__ = "0.1.0"

__all__ = [
    "Analysis",
    "AnalysisMode",
    "Confidence",
    "JobStatus",
    "ReadinessStatus",
    "Record",
    "RegionTier",
    "WineKind",
    "CURRENT_ALGORITHM_VERSION",
    "ReadinessClassifier",
    "needs_analysis",
    "ProgressReporter",
    "ProgressSnapshot",
    "BatchConfig",
    "BatchRunner",
    "BatchSummary",
    "CancellationToken",
    "JobContext",
    "BatchJobHandle",
    "start_batch_job",
    "start_batch_job_in_background",
]
