"""
Unit tests for the freshness gate.
"""

import pytest
from dataclasses import replace

from readiness.core.models import AnalysisMode
from readiness.freshness import is_stale, needs_analysis, partition_page
from readiness.rules_classifier import CURRENT_ALGORITHM_VERSION, ReadinessClassifier


@pytest.fixture
def current_analysis(fixed_clock, record_factory):
    return ReadinessClassifier(clock=fixed_clock).classify(record_factory(0))


@pytest.fixture
def old_analysis(fixed_clock, record_factory):
    return ReadinessClassifier(clock=fixed_clock, version=CURRENT_ALGORITHM_VERSION - 1).classify(record_factory(0))


class TestNeedsAnalysis:
    """Tests for needs_analysis across modes."""

    def test_missing_only(self, record_factory, current_analysis, old_analysis):
        """Test that missing_only selects only records without an analysis."""
        assert needs_analysis(record_factory(1), AnalysisMode.MISSING_ONLY)
        assert not needs_analysis(record_factory(2, analysis=current_analysis), AnalysisMode.MISSING_ONLY)
        assert not needs_analysis(record_factory(3, analysis=old_analysis), AnalysisMode.MISSING_ONLY)

    def test_stale_only(self, record_factory, current_analysis, old_analysis):
        """Test that stale_only selects missing and out-of-date analyses."""
        assert needs_analysis(record_factory(1), AnalysisMode.STALE_ONLY)
        assert not needs_analysis(record_factory(2, analysis=current_analysis), AnalysisMode.STALE_ONLY)
        assert needs_analysis(record_factory(3, analysis=old_analysis), AnalysisMode.STALE_ONLY)

    def test_unreadable_analysis_is_stale_not_missing(self, record_factory):
        """Test that an unparseable stored analysis is re-classified only as stale."""
        record = replace(record_factory(1), unreadable_analysis=True)
        assert not needs_analysis(record, AnalysisMode.MISSING_ONLY)
        assert needs_analysis(record, AnalysisMode.STALE_ONLY)
        assert needs_analysis(record, AnalysisMode.ALL)

    def test_all(self, record_factory, current_analysis, old_analysis):
        """Test that all selects every record."""
        for record in (
            record_factory(1),
            record_factory(2, analysis=current_analysis),
            record_factory(3, analysis=old_analysis),
        ):
            assert needs_analysis(record, AnalysisMode.ALL)

    def test_accepts_mode_strings(self, record_factory):
        """Test that mode names are parsed."""
        assert needs_analysis(record_factory(1), "stale_or_missing")

    def test_newer_version_is_stale(self, fixed_clock, record_factory):
        """Test that any version other than the current one counts as stale."""
        newer = ReadinessClassifier(clock=fixed_clock, version=CURRENT_ALGORITHM_VERSION + 1).classify(record_factory(0))
        assert needs_analysis(record_factory(1, analysis=newer), AnalysisMode.STALE_ONLY)

    def test_explicit_current_version(self, record_factory, old_analysis):
        """Test checking against a caller-supplied version."""
        record = record_factory(1, analysis=old_analysis)
        assert not needs_analysis(record, AnalysisMode.STALE_ONLY, current_version=CURRENT_ALGORITHM_VERSION - 1)


class TestHelpers:
    """Tests for is_stale and partition_page."""

    def test_is_stale(self, current_analysis, old_analysis):
        """Test staleness of missing, old and current analyses."""
        assert is_stale(None)
        assert is_stale(old_analysis)
        assert not is_stale(current_analysis)

    def test_partition_page_preserves_order(self, record_factory, current_analysis):
        """Test that partition_page splits a page without reordering it."""
        page = [
            record_factory(1),
            record_factory(2, analysis=current_analysis),
            record_factory(3),
        ]
        to_analyze, skipped = partition_page(page, AnalysisMode.MISSING_ONLY)

        assert [r.record_id for r in to_analyze] == ["rec-00001", "rec-00003"]
        assert [r.record_id for r in skipped] == ["rec-00002"]
