"""
Rules-based drink-readiness classifier.

Maps a bottle's kind, vintage and region tier onto a readiness status using
fixed aging curves. Pure and deterministic for a given clock and algorithm
version: no I/O, no hidden state.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .core.clock import Clock, resolve_clock
from .core.exceptions import RecordValidationError
from .core.models import (
    Analysis,
    Confidence,
    ReadinessStatus,
    Record,
    RegionTier,
    WineKind,
)

logger = logging.getLogger(__name__)


# Bump whenever curves, scores or reasons change; stale analyses get recomputed
CURRENT_ALGORITHM_VERSION = 2

# Vintages older than this are treated as data-entry errors
MIN_PLAUSIBLE_VINTAGE = 1800

UNKNOWN_SCORE = 50
DEFAULT_SERVING_TEMPERATURE_C = 14


@dataclass(frozen=True)
class Breakpoint:
    """
    One bracket of an aging curve.

    Applies to ages below ``until_age`` (exclusive); ``None`` means the
    bracket is open-ended and must be last.
    """
    until_age: Optional[int]
    status: ReadinessStatus
    score: int
    reason: str


AgingCurve = Tuple[Breakpoint, ...]

_S = ReadinessStatus

AGING_CURVES: Dict[Tuple[WineKind, RegionTier], AgingCurve] = {
    (WineKind.SPARKLING, RegionTier.STANDARD): (
        Breakpoint(2, _S.PEAK, 95, "Sparkling wines are best enjoyed fresh and young"),
        Breakpoint(5, _S.IN_WINDOW, 85, "Still excellent, though past peak freshness"),
        Breakpoint(None, _S.PAST_PEAK, 65, "May have lost some of its sparkle and freshness"),
    ),
    (WineKind.SPARKLING, RegionTier.PREMIUM): (
        Breakpoint(3, _S.PEAK, 95, "Fresh and precise, at its best"),
        Breakpoint(8, _S.IN_WINDOW, 85, "Developing toasty, autolytic complexity"),
        Breakpoint(None, _S.PAST_PEAK, 65, "Likely tired unless stored perfectly"),
    ),
    (WineKind.WHITE, RegionTier.STANDARD): (
        Breakpoint(1, _S.PEAK, 92, "Young and vibrant, perfect for immediate enjoyment"),
        Breakpoint(3, _S.IN_WINDOW, 88, "In prime drinking window with good freshness"),
        Breakpoint(6, _S.IN_WINDOW, 75, "May be losing freshness, drink soon"),
        Breakpoint(None, _S.PAST_PEAK, 60, "Likely past its peak unless from an exceptional vintage"),
    ),
    (WineKind.WHITE, RegionTier.PREMIUM): (
        Breakpoint(1, _S.TOO_YOUNG, 72, "Still tight, age-worthy whites need time to open"),
        Breakpoint(3, _S.APPROACHING, 82, "Opening up and entering its drinking window"),
        Breakpoint(8, _S.PEAK, 90, "Developing complexity from bottle age"),
        Breakpoint(12, _S.IN_WINDOW, 80, "Mature and still drinking well"),
        Breakpoint(None, _S.PAST_PEAK, 60, "Likely past its peak"),
    ),
    (WineKind.ROSE, RegionTier.STANDARD): (
        Breakpoint(1, _S.PEAK, 95, "Fresh and fruity, perfect for early enjoyment"),
        Breakpoint(2, _S.IN_WINDOW, 80, "Still good, but losing some freshness"),
        Breakpoint(None, _S.PAST_PEAK, 65, "Past its prime, may lack vibrant fruit character"),
    ),
    (WineKind.ROSE, RegionTier.PREMIUM): (
        Breakpoint(2, _S.PEAK, 95, "Structured rosé at its freshest"),
        Breakpoint(4, _S.IN_WINDOW, 80, "Gaining savoury notes, still drinking well"),
        Breakpoint(None, _S.PAST_PEAK, 65, "Past its prime, may lack vibrant fruit character"),
    ),
    (WineKind.RED, RegionTier.STANDARD): (
        Breakpoint(2, _S.APPROACHING, 75, "Very young, primary fruit flavors still dominant"),
        Breakpoint(5, _S.IN_WINDOW, 85, "Youthful with good structure, entering drinking window"),
        Breakpoint(10, _S.PEAK, 92, "In prime drinking window, showing excellent balance"),
        Breakpoint(15, _S.IN_WINDOW, 80, "Fully mature, drink soon to enjoy remaining fruit"),
        Breakpoint(None, _S.PAST_PEAK, 62, "Quite old, may be fading"),
    ),
    (WineKind.RED, RegionTier.PREMIUM): (
        Breakpoint(3, _S.TOO_YOUNG, 70, "Still developing, will benefit from cellaring"),
        Breakpoint(5, _S.APPROACHING, 80, "Approaching its drinking window"),
        Breakpoint(15, _S.PEAK, 92, "At peak maturity with developing secondary complexity"),
        Breakpoint(22, _S.IN_WINDOW, 80, "Mature wine with developed tertiary aromas"),
        Breakpoint(None, _S.PAST_PEAK, 60, "Very old, quality depends heavily on storage"),
    ),
}

SERVING_TEMPERATURE_C: Dict[WineKind, int] = {
    WineKind.SPARKLING: 6,
    WineKind.WHITE: 10,
    WineKind.ROSE: 12,
    WineKind.RED: 16,
}

BASE_CONFIDENCE: Dict[Tuple[WineKind, RegionTier], Confidence] = {
    (WineKind.SPARKLING, RegionTier.STANDARD): Confidence.HIGH,
    (WineKind.SPARKLING, RegionTier.PREMIUM): Confidence.HIGH,
    (WineKind.WHITE, RegionTier.STANDARD): Confidence.MEDIUM,
    (WineKind.WHITE, RegionTier.PREMIUM): Confidence.MEDIUM,
    (WineKind.ROSE, RegionTier.STANDARD): Confidence.MEDIUM,
    (WineKind.ROSE, RegionTier.PREMIUM): Confidence.MEDIUM,
    (WineKind.RED, RegionTier.STANDARD): Confidence.MEDIUM,
    (WineKind.RED, RegionTier.PREMIUM): Confidence.HIGH,
}

# (until_age exclusive, minutes); red only
RED_DECANT_STEPS: Tuple[Tuple[Optional[int], int], ...] = (
    (3, 60),
    (8, 30),
    (15, 15),
    (None, 5),
)

KIND_NOTES: Dict[WineKind, str] = {
    WineKind.SPARKLING: "Sparkling wines age fast once past release",
    WineKind.ROSE: "Rosé is made for early drinking",
}

STATUS_NOTES: Dict[ReadinessStatus, str] = {
    ReadinessStatus.PEAK: "This wine is at its peak.",
    ReadinessStatus.IN_WINDOW: "This wine is in its drinking window.",
    ReadinessStatus.APPROACHING: "This wine is approaching its ideal drinking window.",
    ReadinessStatus.TOO_YOUNG: "This wine is still young and will improve with age.",
    ReadinessStatus.PAST_PEAK: "This wine may be past its peak.",
    ReadinessStatus.UNKNOWN: "Not enough information to judge readiness.",
}


def _check_tables() -> None:
    """Every (kind, tier) pair must have a well-formed curve."""
    for kind in WineKind:
        if kind not in SERVING_TEMPERATURE_C:
            raise RuntimeError(f"No serving temperature for wine kind: {kind.value}")
        for tier in RegionTier:
            curve = AGING_CURVES.get((kind, tier))
            if not curve:
                raise RuntimeError(f"No aging curve for ({kind.value}, {tier.value})")
            if (kind, tier) not in BASE_CONFIDENCE:
                raise RuntimeError(f"No base confidence for ({kind.value}, {tier.value})")
            if curve[-1].until_age is not None:
                raise RuntimeError(f"Aging curve ({kind.value}, {tier.value}) must end open-ended")
            bounds = [bp.until_age for bp in curve[:-1]]
            if None in bounds or bounds != sorted(bounds):
                raise RuntimeError(f"Aging curve ({kind.value}, {tier.value}) is not ordered")


_check_tables()


def lookup_breakpoint(curve: AgingCurve, age: int) -> Breakpoint:
    """Find the bracket containing ``age`` (ages below 0 fall in the first)."""
    for bp in curve:
        if bp.until_age is None or age < bp.until_age:
            return bp
    return curve[-1]


def decant_minutes_for(kind: Optional[WineKind], age: int) -> int:
    """Decanting time: red only, shorter as the wine gets older."""
    if kind != WineKind.RED:
        return 0
    for until_age, minutes in RED_DECANT_STEPS:
        if until_age is None or age < until_age:
            return minutes
    return RED_DECANT_STEPS[-1][1]


def serving_temperature_for(kind: Optional[WineKind]) -> int:
    if kind is None:
        return DEFAULT_SERVING_TEMPERATURE_C
    return SERVING_TEMPERATURE_C[kind]


def drink_window(curve: AgingCurve, vintage: int) -> Tuple[int, int]:
    """
    Estimate the drink window from a curve.

    Opens at the first Peak/InWindow bracket and closes where the last
    bracket before PastPeak ends.
    """
    start_age = 0
    previous_until = 0
    opened = False
    end_age = 0
    for bp in curve:
        if bp.status == ReadinessStatus.PAST_PEAK:
            break
        if not opened and bp.status in (ReadinessStatus.PEAK, ReadinessStatus.IN_WINDOW):
            start_age = previous_until
            opened = True
        if bp.until_age is not None:
            end_age = bp.until_age
            previous_until = bp.until_age
    return vintage + start_age, vintage + max(end_age, start_age)


class ReadinessClassifier:
    """
    Rules-based drink-readiness classifier.

    Uses aging curves keyed by (kind, region tier) to infer:
    - Readiness status and score (from the age bracket)
    - Serving temperature (from the kind)
    - Decanting time (red wines, from age)
    - Drink window and explanatory reasons

    Example usage:
        >>> classifier = ReadinessClassifier(clock=FixedClock.for_year(2025))
        >>> analysis = classifier.classify(record)
        >>> analysis.status
        ReadinessStatus.PEAK
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        version: int = CURRENT_ALGORITHM_VERSION,
    ):
        self.clock = resolve_clock(clock)
        self.version = version

    def classify(self, record: Record) -> Analysis:
        """
        Classify a record's drink readiness.

        Never raises for bad record data: missing or malformed attributes
        degrade to an Unknown analysis with low confidence.
        """
        if record.vintage_year is None:
            return self._unknown(record, "Vintage year is missing")

        if record.kind is None:
            label = record.kind_label or "unspecified"
            return self._unknown(record, f"Unsupported wine kind: {label}")

        try:
            vintage = self._validate_vintage(record)
        except RecordValidationError as e:
            logger.debug(f"Degrading record {record.record_id} to Unknown: {e}")
            return self._unknown(record, str(e))

        return self._classify_known(record, record.kind, vintage)

    def _validate_vintage(self, record: Record) -> int:
        vintage = record.vintage_year
        if isinstance(vintage, bool) or not isinstance(vintage, int):
            raise RecordValidationError(
                f"Vintage year is not a number: {vintage!r}",
                record_id=record.record_id,
                field="vintage_year",
            )
        if vintage < MIN_PLAUSIBLE_VINTAGE:
            raise RecordValidationError(
                f"Vintage year {vintage} is implausible",
                record_id=record.record_id,
                field="vintage_year",
            )
        return vintage

    def _classify_known(self, record: Record, kind: WineKind, vintage: int) -> Analysis:
        tier = record.region_tier
        curve = AGING_CURVES[(kind, tier)]
        confidence = BASE_CONFIDENCE[(kind, tier)]

        raw_age = self.clock.current_year() - vintage
        age = max(raw_age, 0)
        bracket = lookup_breakpoint(curve, age)

        reasons: List[str] = [f"Age {age} year{'s' if age != 1 else ''}: {bracket.reason}"]

        if raw_age < 0:
            confidence = Confidence.LOW
            reasons.append(f"Vintage {vintage} is in the future, treated as a new release")

        if tier == RegionTier.PREMIUM:
            where = f" ({record.region})" if record.region else ""
            reasons.append(f"Premium aging region{where}, wider peak window applies")
        else:
            reasons.append(f"Standard aging curve for {kind.value} wine")

        if kind in KIND_NOTES:
            reasons.append(KIND_NOTES[kind])

        decant = decant_minutes_for(kind, age)
        serve_temp = serving_temperature_for(kind)
        if decant > 0:
            reasons.append(f"Decant for {decant} minutes before serving")

        drink_from, drink_to = drink_window(curve, vintage)

        return Analysis(
            status=bracket.status,
            score=bracket.score,
            confidence=confidence,
            reasons=tuple(reasons),
            serving_temperature_c=serve_temp,
            decant_minutes=decant,
            algorithm_version=self.version,
            computed_at=self.clock.now(),
            drink_from_year=drink_from,
            drink_to_year=drink_to,
            notes=self._build_notes(bracket.status, decant, serve_temp),
        )

    def _unknown(self, record: Record, reason: str) -> Analysis:
        serve_temp = serving_temperature_for(record.kind)
        return Analysis(
            status=ReadinessStatus.UNKNOWN,
            score=UNKNOWN_SCORE,
            confidence=Confidence.LOW,
            reasons=(reason,),
            serving_temperature_c=serve_temp,
            decant_minutes=0,
            algorithm_version=self.version,
            computed_at=self.clock.now(),
            notes=self._build_notes(ReadinessStatus.UNKNOWN, 0, serve_temp),
        )

    def _build_notes(self, status: ReadinessStatus, decant: int, serve_temp: int) -> str:
        notes = STATUS_NOTES[status]
        if decant > 0:
            notes += f" Decant for {decant} minutes before serving."
        notes += f" Serve at {serve_temp}°C."
        return notes
