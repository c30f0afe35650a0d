"""
Core subpackage for the readiness pipeline.

Contains models, exceptions, the clock and logging utilities.
"""

from .clock import Clock, FixedClock
from .models import (
    Analysis,
    AnalysisMode,
    Confidence,
    JobStatus,
    PageCursor,
    ReadinessStatus,
    Record,
    RecordFailure,
    RegionTier,
    WineKind,
)
from .exceptions import (
    ReadinessError,
    RecordValidationError,
    AnalysisInvariantError,
    StoreError,
    FetchError,
    StoreAuthorizationError,
    StoreWriteError,
    TransientStoreError,
    RecordNotFoundError,
    UnitTimeoutError,
    ConfigError,
)

__all__ = [
    # Clock
    "Clock",
    "FixedClock",
    # Models
    "Analysis",
    "AnalysisMode",
    "Confidence",
    "JobStatus",
    "PageCursor",
    "ReadinessStatus",
    "Record",
    "RecordFailure",
    "RegionTier",
    "WineKind",
    # Exceptions
    "ReadinessError",
    "RecordValidationError",
    "AnalysisInvariantError",
    "StoreError",
    "FetchError",
    "StoreAuthorizationError",
    "StoreWriteError",
    "TransientStoreError",
    "RecordNotFoundError",
    "UnitTimeoutError",
    "ConfigError",
]
