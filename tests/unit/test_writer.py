"""
Unit tests for the result writer.
"""

import pytest
from unittest.mock import Mock

from readiness.core.exceptions import RecordNotFoundError, StoreWriteError, TransientStoreError
from readiness.rules_classifier import ReadinessClassifier
from readiness.storage import InMemoryRecordStore
from readiness.utils.retry import RetryConfig
from readiness.writer import ResultWriter, WriteOutcome


FAST_RETRY = RetryConfig(max_attempts=3, initial_delay_ms=0.0, max_delay_ms=0.0, jitter=False)


@pytest.fixture
def analysis(fixed_clock, record_factory):
    return ReadinessClassifier(clock=fixed_clock).classify(record_factory(0))


class TestResultWriter:
    """Tests for ResultWriter.write_analysis."""

    def test_successful_write(self, record_factory, analysis):
        """Test that a successful write is persisted and reported."""
        store = InMemoryRecordStore([record_factory(1)])
        outcome = ResultWriter(store, FAST_RETRY).write_analysis("rec-00001", analysis)

        assert outcome == WriteOutcome(record_id="rec-00001", success=True, attempts=1)
        assert store.get_record("rec-00001").analysis == analysis

    def test_missing_record_is_a_failure(self, analysis):
        """Test that writing to an unknown record fails without raising."""
        outcome = ResultWriter(InMemoryRecordStore(), FAST_RETRY).write_analysis("nope", analysis)

        assert outcome.success is False
        assert "RecordNotFoundError" in outcome.error
        assert outcome.attempts == 1

    def test_transient_errors_are_retried(self, analysis):
        """Test that transient store errors are retried."""
        store = Mock()
        store.write_analysis.side_effect = [TransientStoreError("busy"), None]

        outcome = ResultWriter(store, FAST_RETRY).write_analysis("r1", analysis)

        assert outcome.success is True
        assert outcome.attempts == 2
        assert store.write_analysis.call_count == 2

    def test_permanent_errors_are_not_retried(self, analysis):
        """Test that permanent store errors fail on the first attempt."""
        store = Mock()
        store.write_analysis.side_effect = StoreWriteError("constraint violated")

        outcome = ResultWriter(store, FAST_RETRY).write_analysis("r1", analysis)

        assert outcome.success is False
        assert store.write_analysis.call_count == 1
        assert "constraint violated" in outcome.error

    def test_unexpected_errors_do_not_escape(self, analysis):
        """Test that arbitrary exceptions are turned into a failed outcome."""
        store = Mock()
        store.write_analysis.side_effect = RuntimeError("driver crashed")

        outcome = ResultWriter(store, FAST_RETRY).write_analysis("r1", analysis)

        assert outcome.success is False
        assert "RuntimeError" in outcome.error

    def test_exhausted_retries(self, analysis):
        """Test that a persistently busy store ends as a failure."""
        store = Mock()
        store.write_analysis.side_effect = TransientStoreError("busy")

        outcome = ResultWriter(store, FAST_RETRY).write_analysis("r1", analysis)

        assert outcome.success is False
        assert outcome.attempts == 3
