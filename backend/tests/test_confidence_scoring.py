"""
Tests for gate confidence scoring.

Covers:
  - Step-function factors
  - Physical cluster confidence (single strong cluster)
  - Virtual segment confidence (volume share, uniqueness, location boost)
  - Naming, enforcement strength, and deterministic virtual ids
"""

from datetime import datetime, timedelta

import pytest

from discovery.scoring import (
    accuracy_factor,
    category_entropy,
    clamp_confidence,
    enforcement_strength,
    location_boost,
    physical_confidence,
    physical_gate_name,
    score_physical_cluster,
    score_physical_clusters,
    score_virtual_segment,
    share_factor,
    temporal_factor,
    uniqueness_factor,
    virtual_confidence,
    virtual_gate_id,
    volume_factor,
)
from discovery.thresholds import DiscoveryThresholds
from discovery.types import CategorySegment, SpatialCluster

START = datetime(2025, 6, 14, 10, 0, 0)


def _cluster(**overrides) -> SpatialCluster:
    values = dict(
        seed_index=0,
        latitude=40.7128,
        longitude=-74.006,
        sample_count=60,
        category_counts={"General": 60},
        dominant_category="General",
        first_seen=START,
        last_seen=START + timedelta(hours=6),
        avg_accuracy=8.0,
        lat_std=0.000001,
        lon_std=0.000001,
        unique_wristbands=60,
        unique_staff=3,
        active_hours=6,
        avg_processing_time_ms=120.0,
        precision_meters=1.1,
    )
    values.update(overrides)
    return SpatialCluster(**values)


def _segment(category, sample_count, event_total, unique, **overrides) -> CategorySegment:
    values = dict(
        category=category,
        sample_count=sample_count,
        event_total=event_total,
        unique_wristbands=unique,
        unique_staff=2,
        active_hours=4,
        first_seen=START,
        last_seen=START + timedelta(hours=3, minutes=52),
        lat_std=0.0,
        lon_std=0.0,
        avg_accuracy=8.0,
        avg_processing_time_ms=120.0,
        event_lat_std=0.0,
        event_lon_std=0.0,
    )
    values.update(overrides)
    return CategorySegment(**values)


@pytest.fixture
def thresholds():
    return DiscoveryThresholds()


class TestFactors:
    @pytest.mark.parametrize(
        ("count", "factor"),
        [(250, 0.98), (100, 0.95), (60, 0.90), (20, 0.82), (10, 0.72), (3, 0.60)],
    )
    def test_volume(self, count, factor):
        assert volume_factor(count) == factor

    @pytest.mark.parametrize(
        ("accuracy", "factor"),
        [(8.0, 1.0), (20.0, 0.98), (25.0, 0.95), (40.0, 0.90), (75.0, 0.85), (None, 0.85)],
    )
    def test_accuracy(self, accuracy, factor):
        assert accuracy_factor(accuracy) == factor

    def test_temporal(self):
        assert temporal_factor(8) == 1.0
        assert temporal_factor(3) == 0.95
        assert temporal_factor(1) == 0.90
        assert temporal_factor(0) == 0.85

    def test_share_and_uniqueness(self):
        assert share_factor(0.75) == 0.98
        assert share_factor(0.25) == 0.85
        assert share_factor(0.01) == 0.65
        assert uniqueness_factor(30) == 0.95
        assert uniqueness_factor(5) == pytest.approx(0.85)

    def test_location_boost_rewards_zero_spread(self):
        assert location_boost(0.0, 0.0) == 1.05
        assert location_boost(5e-5, 5e-5) == 1.0
        assert location_boost(1e-3, 0.0) == 0.95

    def test_clamp(self):
        assert clamp_confidence(1.3) == 1.0
        assert clamp_confidence(-0.2) == 0.0
        assert clamp_confidence(float("nan")) == 0.0

    def test_category_entropy(self):
        assert category_entropy({"General": 10}) == 0.0
        assert category_entropy({"A": 5, "B": 5}) == pytest.approx(0.6931, abs=1e-4)


class TestPhysicalScoring:
    def test_single_strong_cluster_scores_at_least_090(self, thresholds):
        candidate = score_physical_cluster(_cluster(), thresholds)

        assert candidate is not None
        assert candidate.gate_type == "physical"
        assert candidate.confidence == pytest.approx(0.90)
        assert candidate.confidence >= 0.90 - 1e-9
        assert candidate.name == "General Entrance"
        assert candidate.derivation.purity == 1.0
        assert candidate.derivation.derivation_method == "gps_dbscan_clustering"

    def test_mixed_categories_lower_purity(self, thresholds):
        mixed = _cluster(category_counts={"General": 45, "VIP": 15})
        assert physical_confidence(mixed) < physical_confidence(_cluster())
        assert physical_confidence(mixed) == pytest.approx(0.90 * (0.7 + 0.3 * 0.75))

    def test_weak_cluster_is_rejected(self, thresholds):
        weak = _cluster(
            sample_count=4,
            category_counts={"General": 2, "VIP": 2},
            avg_accuracy=80.0,
            lat_std=0.001,
            lon_std=0.001,
            active_hours=0,
        )
        assert score_physical_cluster(weak, thresholds) is None

    def test_candidates_sorted_by_confidence(self, thresholds):
        big = _cluster(seed_index=1, sample_count=120, category_counts={"General": 120}, latitude=40.7138)
        small = _cluster(seed_index=0)
        ordered = score_physical_clusters([small, big], thresholds)
        assert [c.sample_count for c in ordered] == [120, 60]

    @pytest.mark.parametrize(
        ("count", "purity", "name"),
        [
            (250, 1.0, "Primary General Gate"),
            (120, 1.0, "Main General Gate"),
            (60, 1.0, "General Entrance"),
            (20, 0.95, "General Dedicated Gate"),
            (20, 0.6, "General Access Point"),
        ],
    )
    def test_physical_names(self, count, purity, name):
        assert physical_gate_name("General", count, purity) == name


class TestVirtualScoring:
    def test_majority_category_beats_minority(self, thresholds):
        vip = score_virtual_segment(_segment("VIP", 30, 40, 30), "evt", thresholds)
        staff = score_virtual_segment(_segment("Staff", 10, 40, 10), "evt", thresholds)

        assert vip.confidence == pytest.approx(0.98 * 0.95 * 0.95 * 1.05)
        assert staff.confidence == pytest.approx(0.85 * 0.90 * 0.95 * 1.05)
        assert vip.confidence > staff.confidence
        assert vip.name == "VIP Virtual Gate"
        assert vip.latitude is None and vip.longitude is None
        assert vip.derivation.derivation_method == "virtual_category_based_v2"

    def test_purity_is_category_share(self, thresholds):
        vip = score_virtual_segment(_segment("VIP", 30, 40, 30), "evt", thresholds)
        assert vip.derivation.purity == pytest.approx(0.75)

    def test_location_boost_follows_event_spread(self, thresholds):
        # Tight within the category, but the event as a whole is spread out
        spread = _segment("VIP", 30, 40, 30, event_lat_std=1e-3, event_lon_std=1e-3)
        assert virtual_confidence(spread) == pytest.approx(0.98 * 0.95 * 0.95 * 0.95)

        collocated = _segment("VIP", 30, 40, 30, lat_std=1e-3, lon_std=1e-3)
        assert virtual_confidence(collocated) == pytest.approx(0.98 * 0.95 * 0.95 * 1.05)

    def test_thin_category_is_rejected(self, thresholds):
        thin = _segment("Press", 2, 100, 2, active_hours=1)
        assert virtual_confidence(thin) < thresholds.min_virtual_confidence
        assert score_virtual_segment(thin, "evt", thresholds) is None

    def test_virtual_gate_id_is_deterministic(self):
        first = virtual_gate_id("VIP Guests", "event-1")
        assert first == virtual_gate_id("VIP Guests", "event-1")
        assert first != virtual_gate_id("VIP Guests", "event-2")
        assert first.startswith("virtual_vip_guests_")


@pytest.mark.parametrize(
    ("confidence", "strength"),
    [(0.97, "strict"), (0.95, "strict"), (0.90, "moderate"), (0.80, "relaxed"), (0.60, "probation")],
)
def test_enforcement_strength(confidence, strength):
    assert enforcement_strength(confidence) == strength
