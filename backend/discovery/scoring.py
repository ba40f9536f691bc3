"""
Confidence Scoring — bounded [0, 1] confidence for gate candidates.

Physical clusters:
    confidence = volume × accuracy × purity × spatial × temporal

Virtual (category) segments:
    confidence = volume share × uniqueness × temporal × location boost

Each factor is a step function; the product is clamped to [0, 1].

Usage:
    from discovery.scoring import score_physical_cluster

    candidate = score_physical_cluster(cluster, thresholds)
    # → CandidateGate(name="General Entrance", confidence=0.9, ...) or None
"""

from __future__ import annotations

import hashlib
import math
import re
from typing import Any

from discovery.types import (
    PHYSICAL_DERIVATION_METHOD,
    VIRTUAL_DERIVATION_METHOD,
    CandidateGate,
    CategorySegment,
    GateDerivation,
    SpatialCluster,
)

# (minimum sample count, factor), checked top-down
VOLUME_FACTORS = ((200, 0.98), (100, 0.95), (50, 0.90), (20, 0.82), (10, 0.72))
VOLUME_FLOOR = 0.60

# (maximum mean accuracy in meters, factor)
ACCURACY_FACTORS = ((10, 1.00), (20, 0.98), (30, 0.95), (40, 0.90))
ACCURACY_FLOOR = 0.85

SPATIAL_FACTORS = ((1e-4, 1.00), (5e-4, 0.95))
SPATIAL_FLOOR = 0.90

# (minimum active hours, factor)
TEMPORAL_FACTORS = ((6, 1.00), (3, 0.95), (1, 0.90))
TEMPORAL_FLOOR = 0.85

# (minimum share of event check-ins, factor)
SHARE_FACTORS = ((0.50, 0.98), (0.30, 0.92), (0.15, 0.85), (0.05, 0.75))
SHARE_FLOOR = 0.65

# (minimum distinct attendees, factor)
UNIQUENESS_FACTORS = ((100, 1.00), (50, 0.98), (20, 0.95), (10, 0.90))

ENFORCEMENT_STRENGTHS = ((0.95, "strict"), (0.85, "moderate"), (0.75, "relaxed"))

TEMPORAL_CONSISTENCY_HOURS = 8.0


def clamp_confidence(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))


def volume_factor(sample_count: int) -> float:
    for minimum, factor in VOLUME_FACTORS:
        if sample_count >= minimum:
            return factor
    return VOLUME_FLOOR


def accuracy_factor(avg_accuracy: float | None) -> float:
    if avg_accuracy is None:
        return ACCURACY_FLOOR
    for maximum, factor in ACCURACY_FACTORS:
        if avg_accuracy <= maximum:
            return factor
    return ACCURACY_FLOOR


def purity_factor(purity: float) -> float:
    return 0.7 + 0.3 * purity


def spatial_factor(spatial_variance: float) -> float:
    for maximum, factor in SPATIAL_FACTORS:
        if spatial_variance < maximum:
            return factor
    return SPATIAL_FLOOR


def temporal_factor(active_hours: int) -> float:
    for minimum, factor in TEMPORAL_FACTORS:
        if active_hours >= minimum:
            return factor
    return TEMPORAL_FLOOR


def share_factor(share: float) -> float:
    for minimum, factor in SHARE_FACTORS:
        if share >= minimum:
            return factor
    return SHARE_FLOOR


def uniqueness_factor(unique_attendees: int) -> float:
    for minimum, factor in UNIQUENESS_FACTORS:
        if unique_attendees >= minimum:
            return factor
    return 0.80 + (unique_attendees / 10.0) * 0.10


def location_boost(lat_std: float, lon_std: float) -> float:
    """Reward near-zero spread, which is the signal that virtual gates are right."""
    if lat_std < 1e-5 and lon_std < 1e-5:
        return 1.05
    if lat_std < 1e-4 and lon_std < 1e-4:
        return 1.00
    return 0.95


def temporal_consistency(active_hours: int) -> float:
    return min(active_hours / TEMPORAL_CONSISTENCY_HOURS, 1.0)


def category_entropy(counts: dict[str, int]) -> float:
    """Shannon entropy (nats) of a category distribution."""
    total = sum(counts.values())
    if total <= 0:
        return 0.0
    entropy = 0.0
    for count in counts.values():
        if count > 0:
            p = count / total
            entropy -= p * math.log(p)
    return entropy


def enforcement_strength(confidence: float) -> str:
    for minimum, label in ENFORCEMENT_STRENGTHS:
        if confidence >= minimum:
            return label
    return "probation"


def physical_gate_name(category: str, sample_count: int, purity: float) -> str:
    if sample_count >= 200:
        return f"Primary {category} Gate"
    if sample_count >= 100:
        return f"Main {category} Gate"
    if sample_count >= 50:
        return f"{category} Entrance"
    if purity >= 0.9:
        return f"{category} Dedicated Gate"
    return f"{category} Access Point"


def virtual_gate_name(category: str) -> str:
    return f"{category} Virtual Gate"


def virtual_gate_id(category: str, event_id: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", category.lower()).strip("_") or "category"
    digest = hashlib.md5(f"{category}{event_id}".encode("utf-8")).hexdigest()[:8]
    return f"virtual_{slug}_{digest}"


# ── Physical clusters ──────────────────────────────────────────────────────


def physical_confidence(cluster: SpatialCluster) -> float:
    purity = cluster.dominant_count / cluster.sample_count
    spatial_variance = cluster.lat_std + cluster.lon_std
    return clamp_confidence(
        volume_factor(cluster.sample_count)
        * accuracy_factor(cluster.avg_accuracy)
        * purity_factor(purity)
        * spatial_factor(spatial_variance)
        * temporal_factor(cluster.active_hours)
    )


def score_physical_cluster(cluster: SpatialCluster, thresholds: Any) -> CandidateGate | None:
    """Score a cluster; ``None`` when it falls below ``min_physical_confidence``."""
    confidence = physical_confidence(cluster)
    if confidence < thresholds.min_physical_confidence:
        return None

    purity = cluster.dominant_count / cluster.sample_count
    derivation = GateDerivation(
        derivation_method=PHYSICAL_DERIVATION_METHOD,
        confidence=confidence,
        purity=purity,
        spatial_variance=cluster.lat_std + cluster.lon_std,
        temporal_consistency=temporal_consistency(cluster.active_hours),
        category_entropy=category_entropy(cluster.category_counts),
        dominant_category=cluster.dominant_category,
        category_distribution=dict(cluster.category_counts),
        sample_count=cluster.sample_count,
        unique_wristbands=cluster.unique_wristbands,
        unique_staff=cluster.unique_staff,
        active_hours=cluster.active_hours,
        temporal_span_hours=round(cluster.temporal_span_hours, 3),
        avg_accuracy=cluster.avg_accuracy,
        avg_processing_time_ms=cluster.avg_processing_time_ms,
        cluster_precision_meters=cluster.precision_meters,
        first_seen=cluster.first_seen,
        last_seen=cluster.last_seen,
    )
    return CandidateGate(
        gate_type="physical",
        name=physical_gate_name(cluster.dominant_category, cluster.sample_count, purity),
        category=cluster.dominant_category,
        confidence=confidence,
        sample_count=cluster.sample_count,
        derivation=derivation,
        latitude=cluster.latitude,
        longitude=cluster.longitude,
    )


def score_physical_clusters(clusters: list[SpatialCluster], thresholds: Any) -> list[CandidateGate]:
    """Score every cluster, keeping survivors ordered by confidence then size."""
    candidates = [candidate for candidate in (score_physical_cluster(c, thresholds) for c in clusters) if candidate]
    return sorted(candidates, key=lambda c: (-c.confidence, -c.sample_count, c.latitude, c.longitude))


# ── Virtual segments ───────────────────────────────────────────────────────


def virtual_confidence(segment: CategorySegment) -> float:
    return clamp_confidence(
        share_factor(segment.share)
        * uniqueness_factor(segment.unique_wristbands)
        * temporal_factor(segment.active_hours)
        * location_boost(segment.event_lat_std, segment.event_lon_std)
    )


def score_virtual_segment(segment: CategorySegment, event_id: str, thresholds: Any) -> CandidateGate | None:
    """Score a category segment; ``None`` when it falls below ``min_virtual_confidence``."""
    confidence = virtual_confidence(segment)
    if confidence < thresholds.min_virtual_confidence:
        return None

    derivation = GateDerivation(
        derivation_method=VIRTUAL_DERIVATION_METHOD,
        confidence=confidence,
        purity=segment.share,
        spatial_variance=segment.lat_std + segment.lon_std,
        temporal_consistency=temporal_consistency(segment.active_hours),
        category_entropy=0.0,
        dominant_category=segment.category,
        category_distribution={segment.category: segment.sample_count},
        sample_count=segment.sample_count,
        unique_wristbands=segment.unique_wristbands,
        unique_staff=segment.unique_staff,
        active_hours=segment.active_hours,
        temporal_span_hours=round(segment.temporal_span_hours, 3),
        avg_accuracy=segment.avg_accuracy,
        avg_processing_time_ms=segment.avg_processing_time_ms,
        first_seen=segment.first_seen,
        last_seen=segment.last_seen,
        virtual_gate_id=virtual_gate_id(segment.category, str(event_id)),
    )
    return CandidateGate(
        gate_type="virtual",
        name=virtual_gate_name(segment.category),
        category=segment.category,
        confidence=confidence,
        sample_count=segment.sample_count,
        derivation=derivation,
    )
