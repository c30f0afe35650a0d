"""
Custom exceptions for the readiness backfill pipeline.
"""


class ReadinessError(Exception):
    """Base exception for all readiness pipeline errors."""
    pass


class RecordValidationError(ReadinessError):
    """
    A record's attributes are malformed or incomplete.

    Raised when:
    - Vintage year is not an integer
    - Vintage year is implausibly old

    The classifier recovers from this locally by degrading to an Unknown
    analysis with low confidence.
    """

    def __init__(self, message: str, record_id: str = None, field: str = None):
        super().__init__(message)
        self.record_id = record_id
        self.field = field


class AnalysisInvariantError(ReadinessError):
    """An Analysis violates one of its invariants (score bounds, decant/kind)."""
    pass


class StoreError(ReadinessError):
    """Base class for record store failures."""
    pass


class FetchError(StoreError):
    """
    A page of records could not be read.

    Fatal for a batch job: the job transitions to failed and returns the
    summary accumulated so far.
    """
    pass


class StoreAuthorizationError(FetchError):
    """The store rejected the caller's credentials or permissions."""
    pass


class StoreWriteError(StoreError):
    """
    An analysis could not be persisted.

    Recovered per record: counted as failed, the job continues.
    """

    def __init__(self, message: str, record_id: str = None):
        super().__init__(message)
        self.record_id = record_id


class TransientStoreError(StoreWriteError):
    """A write failed for a reason worth retrying (lock timeout, busy database)."""
    pass


class RecordNotFoundError(StoreWriteError):
    """The record to update no longer exists."""
    pass


class UnitTimeoutError(ReadinessError):
    """A classify+write unit exceeded its deadline before the write started."""

    def __init__(self, message: str, record_id: str = None, elapsed_seconds: float = None):
        super().__init__(message)
        self.record_id = record_id
        self.elapsed_seconds = elapsed_seconds


class ConfigError(ReadinessError):
    """
    Error in pipeline configuration.

    Raised when:
    - Configuration file is invalid
    - Configuration values are out of valid range
    """
    pass
