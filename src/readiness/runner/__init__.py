"""
Runner module for orchestrating batch readiness jobs.
"""

from .batch_runner import (
    BatchConfig,
    BatchRunner,
    BatchSummary,
    CancellationToken,
    JobContext,
)

__all__ = ["BatchConfig", "BatchRunner", "BatchSummary", "CancellationToken", "JobContext"]
