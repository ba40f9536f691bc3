"""
Discovery Thresholds — per-event tuning for gate discovery.

Defaults come from ``core.config.Settings`` (``gate_*`` and ``trigger_*``
fields). An event's ``adaptive_thresholds`` row overrides the five named
columns, and its ``overrides`` JSON map may override any other field.

Every threshold is validated when it is loaded, so a bad override is
rejected before any pipeline step touches the catalog.

Usage:
    from discovery.thresholds import load_event_thresholds

    thresholds = await load_event_thresholds(db, event_id)
    thresholds.duplicate_distance_meters
    # → 25.0
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, fields, replace
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession


class ThresholdConfigError(ValueError):
    """Raised when a discovery threshold is missing, unknown, or out of range."""


# Fields that must lie in [0, 1]
_UNIT_INTERVAL_FIELDS = (
    "confidence_threshold",
    "min_physical_confidence",
    "min_virtual_confidence",
    "active_confidence",
    "binding_enforce_confidence",
    "binding_probation_confidence",
    "orphan_min_confidence",
    "degraded_gps_penalty",
)

# Fields that must be whole numbers >= 1
_COUNT_FIELDS = (
    "promotion_sample_size",
    "min_checkins_for_gate",
    "min_checkins_per_category",
    "min_total_checkins",
    "initial_min_checkins",
    "initial_max_checkins",
    "refresh_every_checkins",
    "orphan_every",
    "orphan_min",
)

# Columns stored directly on adaptive_thresholds
ADAPTIVE_COLUMNS = (
    "duplicate_distance_meters",
    "promotion_sample_size",
    "confidence_threshold",
    "min_checkins_for_gate",
    "max_location_variance",
)


@dataclass(frozen=True)
class DiscoveryThresholds:
    duplicate_distance_meters: float = 25.0
    promotion_sample_size: int = 100
    confidence_threshold: float = 0.75
    min_checkins_for_gate: int = 3
    max_location_variance: float = 0.0001
    outlier_sigma: float = 3.0
    min_physical_confidence: float = 0.60
    min_virtual_confidence: float = 0.65
    min_checkins_per_category: int = 5
    match_distance_meters: float = 20.0
    reassign_radius_meters: float = 25.0
    active_confidence: float = 0.80
    binding_enforce_confidence: float = 0.90
    binding_probation_confidence: float = 0.75
    orphan_min_confidence: float = 0.50
    orphan_min_radius_meters: float = 100.0
    temporal_window_seconds: float = 300.0
    degraded_gps_accuracy_meters: float = 50.0
    degraded_gps_penalty: float = 0.80
    min_total_checkins: int = 50
    min_good_gps_pct: float = 20.0
    initial_min_checkins: int = 25
    initial_max_checkins: int = 50
    refresh_every_checkins: int = 100
    orphan_every: int = 50
    orphan_min: int = 20

    def __post_init__(self) -> None:
        validate_thresholds(self)

    @classmethod
    def from_settings(cls, settings: Any) -> "DiscoveryThresholds":
        values: dict[str, Any] = {}
        for field in fields(cls):
            for prefix in ("gate_", "trigger_"):
                name = f"{prefix}{field.name}"
                if hasattr(settings, name):
                    values[field.name] = getattr(settings, name)
                    break
        return cls(**values)

    def with_overrides(self, overrides: dict[str, Any] | None) -> "DiscoveryThresholds":
        """Return a copy with ``overrides`` applied. Unknown keys are rejected."""
        if not overrides:
            return self
        known = {field.name: field for field in fields(self)}
        unknown = sorted(set(overrides) - set(known))
        if unknown:
            raise ThresholdConfigError(f"Unknown discovery threshold(s): {', '.join(unknown)}")

        coerced: dict[str, Any] = {}
        for key, value in overrides.items():
            if value is None:
                continue
            caster = int if known[key].type in ("int", int) else float
            try:
                coerced[key] = caster(value)
            except (TypeError, ValueError) as exc:
                raise ThresholdConfigError(f"Threshold {key} must be numeric, got {value!r}") from exc
        return replace(self, **coerced)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def validate_thresholds(thresholds: DiscoveryThresholds) -> None:
    for field in fields(thresholds):
        value = getattr(thresholds, field.name)
        if value is None or value < 0:
            raise ThresholdConfigError(f"Threshold {field.name} must be non-negative, got {value!r}")

    for name in _UNIT_INTERVAL_FIELDS:
        value = getattr(thresholds, name)
        if value > 1:
            raise ThresholdConfigError(f"Threshold {name} must be within [0, 1], got {value!r}")

    for name in _COUNT_FIELDS:
        if getattr(thresholds, name) < 1:
            raise ThresholdConfigError(f"Threshold {name} must be at least 1")

    if thresholds.outlier_sigma <= 0:
        raise ThresholdConfigError("Threshold outlier_sigma must be positive")
    if thresholds.initial_max_checkins < thresholds.initial_min_checkins:
        raise ThresholdConfigError("initial_max_checkins must be >= initial_min_checkins")
    if thresholds.binding_probation_confidence > thresholds.binding_enforce_confidence:
        raise ThresholdConfigError("binding_probation_confidence must not exceed binding_enforce_confidence")
    if thresholds.min_good_gps_pct > 100:
        raise ThresholdConfigError("min_good_gps_pct must be a percentage")


async def load_event_thresholds(
    db: AsyncSession,
    event_id: uuid.UUID,
    *,
    settings: Any = None,
) -> DiscoveryThresholds:
    """Resolve settings defaults + the event's adaptive_thresholds row."""
    from core.config import get_settings
    from db.models import AdaptiveThreshold

    base = DiscoveryThresholds.from_settings(settings or get_settings())

    result = await db.execute(select(AdaptiveThreshold).where(AdaptiveThreshold.event_id == event_id))
    row = result.scalar_one_or_none()
    if row is None:
        return base

    overrides: dict[str, Any] = {}
    for column in ADAPTIVE_COLUMNS:
        value = getattr(row, column)
        if value is not None:
            overrides[column] = value
    overrides.update(row.overrides or {})
    return base.with_overrides(overrides)
