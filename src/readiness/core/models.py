"""
Core data models for the readiness backfill pipeline.

Records are read-only from the pipeline's point of view; the only field the
pipeline ever replaces is the attached Analysis.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .exceptions import AnalysisInvariantError


logger = logging.getLogger(__name__)


class WineKind(str, Enum):
    """Closed set of wine kinds the classifier has aging curves for."""
    SPARKLING = "sparkling"
    WHITE = "white"
    ROSE = "rose"
    RED = "red"

    @classmethod
    def parse(cls, value: Any) -> Optional["WineKind"]:
        """
        Map a loose kind label onto a WineKind.

        Accepts labels like "Rosé", "Sparkling wine" or "RED". Returns None
        for labels outside the supported set.
        """
        if isinstance(value, WineKind):
            return value
        if not value or not isinstance(value, str):
            return None

        label = value.strip().lower().replace("é", "e")
        if label in _KIND_ALIASES:
            return _KIND_ALIASES[label]

        for token, kind in _KIND_ALIASES.items():
            if label.startswith(token + " ") or label.endswith(" " + token):
                return kind
        return None


_KIND_ALIASES: Dict[str, WineKind] = {
    "sparkling": WineKind.SPARKLING,
    "champagne": WineKind.SPARKLING,
    "cava": WineKind.SPARKLING,
    "prosecco": WineKind.SPARKLING,
    "white": WineKind.WHITE,
    "blanc": WineKind.WHITE,
    "rose": WineKind.ROSE,
    "rosado": WineKind.ROSE,
    "rosato": WineKind.ROSE,
    "red": WineKind.RED,
    "rouge": WineKind.RED,
    "tinto": WineKind.RED,
}


# Regions whose wines are generally built for cellaring
PREMIUM_AGING_REGIONS = (
    "bordeaux",
    "burgundy",
    "bourgogne",
    "barolo",
    "barbaresco",
    "brunello",
    "rioja",
    "napa",
    "chablis",
    "alsace",
    "champagne",
    "douro",
    "mosel",
)


class RegionTier(str, Enum):
    """Aging tier of the wine's region of origin."""
    STANDARD = "standard"
    PREMIUM = "premium"

    @classmethod
    def from_region(cls, region: Optional[str]) -> "RegionTier":
        """Derive the tier from a free-text region name."""
        if not region:
            return cls.STANDARD
        lowered = region.lower()
        if any(name in lowered for name in PREMIUM_AGING_REGIONS):
            return cls.PREMIUM
        return cls.STANDARD


class ReadinessStatus(str, Enum):
    """Drink-readiness classification of a bottle."""
    TOO_YOUNG = "TooYoung"
    APPROACHING = "Approaching"
    PEAK = "Peak"
    IN_WINDOW = "InWindow"
    PAST_PEAK = "PastPeak"
    UNKNOWN = "Unknown"


class Confidence(str, Enum):
    """Confidence in a readiness classification."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AnalysisMode(str, Enum):
    """Which records a batch job re-classifies."""
    MISSING_ONLY = "missing_only"
    STALE_ONLY = "stale_only"
    ALL = "all"

    @classmethod
    def parse(cls, value: Any) -> "AnalysisMode":
        """Parse a mode name, accepting the legacy backfill aliases."""
        if isinstance(value, AnalysisMode):
            return value
        name = str(value).strip().lower()
        name = _MODE_ALIASES.get(name, name)
        try:
            return cls(name)
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise ValueError(f"Unknown analysis mode: {value!r} (expected one of: {valid})")


_MODE_ALIASES = {
    "stale_or_missing": "stale_only",
    "force_all": "all",
}


class JobStatus(str, Enum):
    """Lifecycle state of a batch job."""
    IDLE = "idle"
    RUNNING = "running"
    CANCELLED = "cancelled"
    FAILED = "failed"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.CANCELLED, JobStatus.FAILED, JobStatus.COMPLETED)


@dataclass(frozen=True)
class Analysis:
    """
    Readiness classification attached to a record.

    Attributes:
        status: Drink-readiness status
        score: Readiness score, always within 0..100
        confidence: Confidence in the classification
        reasons: Ordered short explanations, dominant factor first
        serving_temperature_c: Suggested serving temperature in Celsius
        decant_minutes: Suggested decanting time (0 for non-red wines)
        algorithm_version: Classifier version that produced this analysis
        computed_at: When the analysis was computed (UTC)
        drink_from_year: Start of the estimated drink window
        drink_to_year: End of the estimated drink window
        notes: One-line human readable summary
    """
    status: ReadinessStatus
    score: int
    confidence: Confidence
    reasons: Tuple[str, ...]
    serving_temperature_c: int
    decant_minutes: int
    algorithm_version: int
    computed_at: datetime
    drink_from_year: Optional[int] = None
    drink_to_year: Optional[int] = None
    notes: str = ""

    def __post_init__(self):
        if not 0 <= self.score <= 100:
            raise AnalysisInvariantError(f"score must be within 0..100, got {self.score}")
        if self.decant_minutes < 0:
            raise AnalysisInvariantError(
                f"decant_minutes must not be negative, got {self.decant_minutes}"
            )
        if (
            self.drink_from_year is not None
            and self.drink_to_year is not None
            and self.drink_from_year > self.drink_to_year
        ):
            raise AnalysisInvariantError(
                f"drink window is inverted: {self.drink_from_year} > {self.drink_to_year}"
            )

    def validate_for(self, kind: Optional[WineKind]) -> None:
        """Check the invariants that depend on the record's kind."""
        if self.decant_minutes > 0 and kind != WineKind.RED:
            raise AnalysisInvariantError(
                f"decant_minutes > 0 is only valid for red wine, got kind={kind}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "score": self.score,
            "confidence": self.confidence.value,
            "reasons": list(self.reasons),
            "serving_temperature_c": self.serving_temperature_c,
            "decant_minutes": self.decant_minutes,
            "algorithm_version": self.algorithm_version,
            "computed_at": self.computed_at.isoformat(),
            "drink_from_year": self.drink_from_year,
            "drink_to_year": self.drink_to_year,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Analysis":
        return cls(
            status=ReadinessStatus(data["status"]),
            score=int(data["score"]),
            confidence=Confidence(data["confidence"]),
            reasons=tuple(data.get("reasons") or ()),
            serving_temperature_c=int(data["serving_temperature_c"]),
            decant_minutes=int(data["decant_minutes"]),
            algorithm_version=int(data["algorithm_version"]),
            computed_at=parse_timestamp(data["computed_at"]),
            drink_from_year=data.get("drink_from_year"),
            drink_to_year=data.get("drink_to_year"),
            notes=data.get("notes") or "",
        )


@dataclass(frozen=True)
class Record:
    """
    One bottle in the inventory.

    Attributes:
        record_id: Opaque unique identifier
        created_at: Creation timestamp, the stable sort key
        kind: Normalized wine kind (None when the label is unsupported)
        kind_label: Kind label as stored, kept for explanations
        vintage_year: Vintage year, if known
        region_tier: Aging tier of the region
        region: Free-text region, if known
        name: Display name of the wine
        analysis: Current readiness analysis, if any
        unreadable_analysis: A stored analysis exists but could not be parsed
            (legacy or corrupt payload); it counts as stale, not missing
    """
    record_id: str
    created_at: datetime
    kind: Optional[WineKind] = None
    kind_label: Optional[str] = None
    vintage_year: Optional[int] = None
    region_tier: RegionTier = RegionTier.STANDARD
    region: Optional[str] = None
    name: Optional[str] = None
    analysis: Optional[Analysis] = None
    unreadable_analysis: bool = False

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        return (self.created_at, self.record_id)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Record":
        """
        Build a record from a loosely-typed mapping (store row, JSON, CSV).

        Recognized keys: record_id/id, created_at, kind/color, vintage_year/vintage,
        region, region_tier, name/wine_name, analysis (dict or JSON text).

        Only a missing record_id is rejected. An unknown region tier falls
        back to the tier derived from the region, and an analysis that cannot
        be parsed is dropped and flagged as ``unreadable_analysis``.
        """
        record_id = row.get("record_id") or row.get("id")
        if not record_id:
            raise ValueError("row has no record_id")

        kind_label = row.get("kind") or row.get("color")
        region = row.get("region") or None
        region_tier = _parse_region_tier(row.get("region_tier"), region, record_id)

        vintage = row.get("vintage_year", row.get("vintage"))
        if vintage in ("", None):
            vintage = None
        elif not isinstance(vintage, int):
            # Malformed vintages are kept as-is; the classifier degrades them
            try:
                vintage = int(vintage)
            except (TypeError, ValueError):
                pass

        analysis, unreadable = _parse_stored_analysis(row.get("analysis"), record_id)

        created_at = row.get("created_at")
        created_at = parse_timestamp(created_at) if created_at else datetime.now(timezone.utc)

        return cls(
            record_id=str(record_id),
            created_at=created_at,
            kind=WineKind.parse(kind_label),
            kind_label=str(kind_label) if kind_label is not None else None,
            vintage_year=vintage,
            region_tier=region_tier,
            region=region,
            name=row.get("name") or row.get("wine_name"),
            analysis=analysis,
            unreadable_analysis=unreadable,
        )


def _parse_region_tier(value: Any, region: Optional[str], record_id: Any) -> RegionTier:
    if not value:
        return RegionTier.from_region(region)
    try:
        return RegionTier(str(value).strip().lower())
    except ValueError:
        logger.warning(f"Record {record_id}: unknown region tier {value!r}, deriving from region")
        return RegionTier.from_region(region)


def _parse_stored_analysis(value: Any, record_id: Any) -> Tuple[Optional[Analysis], bool]:
    """Return (analysis, unreadable) for a stored analysis payload."""
    if value is None or value == "":
        return None, False
    if isinstance(value, Analysis):
        return value, False
    try:
        data = json.loads(value) if isinstance(value, (str, bytes)) else value
        if not isinstance(data, dict):
            raise TypeError(f"expected an object, got {type(data).__name__}")
        return Analysis.from_dict(data), False
    except (ValueError, KeyError, TypeError, AttributeError, AnalysisInvariantError) as e:
        logger.warning(f"Record {record_id}: unreadable stored analysis, treating as stale: {e!r}")
        return None, True


@dataclass(frozen=True)
class PageCursor:
    """Position of the last record seen, for keyset pagination."""
    created_at: datetime
    record_id: str

    @classmethod
    def after(cls, record: Record) -> "PageCursor":
        return cls(created_at=record.created_at, record_id=record.record_id)

    def to_dict(self) -> Dict[str, str]:
        return {"created_at": self.created_at.isoformat(), "record_id": self.record_id}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "PageCursor":
        return cls(created_at=parse_timestamp(data["created_at"]), record_id=data["record_id"])


@dataclass
class RecordFailure:
    """A record the pipeline could not classify or persist."""
    record_id: str
    reason: str
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, str]:
        return {
            "record_id": self.record_id,
            "reason": self.reason,
            "occurred_at": self.occurred_at.isoformat(),
        }


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO timestamp (or datetime) into an aware UTC datetime."""
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
