"""Value types shared by the gate discovery stages."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal

GateType = Literal["physical", "virtual"]

PHYSICAL_DERIVATION_METHOD = "gps_dbscan_clustering"
VIRTUAL_DERIVATION_METHOD = "virtual_category_based_v2"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass(frozen=True)
class GateDerivation:
    """Typed gate metadata written by discovery.

    Stored as JSON in ``gates.derivation``. Fields owned by other systems
    live in ``gates.extra_metadata`` and never pass through this type.
    """

    derivation_method: str
    confidence: float
    purity: float
    spatial_variance: float
    temporal_consistency: float
    category_entropy: float
    dominant_category: str
    category_distribution: dict[str, int]
    sample_count: int
    unique_wristbands: int = 0
    unique_staff: int = 0
    active_hours: int = 0
    temporal_span_hours: float = 0.0
    avg_accuracy: float | None = None
    avg_processing_time_ms: float | None = None
    cluster_precision_meters: float | None = None
    first_seen: datetime | None = None
    last_seen: datetime | None = None
    virtual_gate_id: str | None = None
    selection_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["first_seen"] = _iso(self.first_seen)
        data["last_seen"] = _iso(self.last_seen)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GateDerivation | None":
        if not data:
            return None
        known = set(cls.__dataclass_fields__)
        values = {key: value for key, value in data.items() if key in known}
        values["first_seen"] = _parse_dt(values.get("first_seen"))
        values["last_seen"] = _parse_dt(values.get("last_seen"))
        try:
            return cls(**values)
        except TypeError:
            return None


@dataclass(frozen=True)
class SpatialCluster:
    """One surviving physical location cluster."""

    seed_index: int
    latitude: float
    longitude: float
    sample_count: int
    category_counts: dict[str, int]
    dominant_category: str
    first_seen: datetime
    last_seen: datetime
    avg_accuracy: float
    lat_std: float
    lon_std: float
    unique_wristbands: int
    unique_staff: int
    active_hours: int
    avg_processing_time_ms: float | None
    precision_meters: float
    checkin_ids: list[str] = field(default_factory=list)

    @property
    def dominant_count(self) -> int:
        return self.category_counts.get(self.dominant_category, 0)

    @property
    def temporal_span_hours(self) -> float:
        return (self.last_seen - self.first_seen).total_seconds() / 3600.0


@dataclass(frozen=True)
class CategorySegment:
    """Check-ins of one category, the raw material of a virtual gate."""

    category: str
    sample_count: int
    event_total: int
    unique_wristbands: int
    unique_staff: int
    active_hours: int
    first_seen: datetime
    last_seen: datetime
    lat_std: float
    lon_std: float
    avg_accuracy: float | None
    avg_processing_time_ms: float | None
    # Spread of every GPS-valid check-in in the event, not just this category
    event_lat_std: float = 0.0
    event_lon_std: float = 0.0

    @property
    def share(self) -> float:
        return self.sample_count / self.event_total if self.event_total else 0.0

    @property
    def temporal_span_hours(self) -> float:
        return (self.last_seen - self.first_seen).total_seconds() / 3600.0


@dataclass(frozen=True)
class CandidateGate:
    """A scored gate candidate ready for materialization."""

    gate_type: GateType
    name: str
    category: str
    confidence: float
    sample_count: int
    derivation: GateDerivation
    latitude: float | None = None
    longitude: float | None = None

    def to_dict(self) -> dict[str, Any]:
        from discovery.scoring import enforcement_strength

        return {
            "gate_type": self.gate_type,
            "name": self.name,
            "category": self.category,
            "confidence": round(self.confidence, 4),
            "enforcement_strength": enforcement_strength(self.confidence),
            "sample_count": self.sample_count,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "derivation": self.derivation.to_dict(),
        }
