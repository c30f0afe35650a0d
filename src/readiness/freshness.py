"""
Freshness gate: decides whether a record needs (re-)classification.
"""

from typing import Iterable, List, Optional, Tuple

from .core.models import Analysis, AnalysisMode, Record
from .rules_classifier import CURRENT_ALGORITHM_VERSION


def is_stale(analysis: Optional[Analysis], current_version: int = CURRENT_ALGORITHM_VERSION) -> bool:
    """An analysis is stale when it is missing or was produced by another algorithm version."""
    return analysis is None or analysis.algorithm_version != current_version


def needs_analysis(
    record: Record,
    mode: AnalysisMode,
    current_version: int = CURRENT_ALGORITHM_VERSION,
) -> bool:
    """
    Return True if ``record`` should be classified under ``mode``.

    - missing_only: the record has no analysis (an unreadable one counts as present)
    - stale_only: the analysis is missing or from another algorithm version
    - all: always
    """
    mode = AnalysisMode.parse(mode)
    if mode == AnalysisMode.ALL:
        return True
    if mode == AnalysisMode.MISSING_ONLY:
        return record.analysis is None and not record.unreadable_analysis
    if mode == AnalysisMode.STALE_ONLY:
        return is_stale(record.analysis, current_version)
    raise ValueError(f"Unhandled analysis mode: {mode}")


def partition_page(
    records: Iterable[Record],
    mode: AnalysisMode,
    current_version: int = CURRENT_ALGORITHM_VERSION,
) -> Tuple[List[Record], List[Record]]:
    """Split a page into (to_analyze, skipped), preserving order."""
    to_analyze: List[Record] = []
    skipped: List[Record] = []
    for record in records:
        if needs_analysis(record, mode, current_version):
            to_analyze.append(record)
        else:
            skipped.append(record)
    return to_analyze, skipped
