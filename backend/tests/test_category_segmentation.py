"""
Tests for virtual-gate mode detection, category segments, and gate-type selection.
"""

import uuid
from datetime import datetime, timedelta

import pytest

from discovery.checkins import checkins_frame
from discovery.geo import valid_gps_mask
from discovery.segmentation import build_category_segments, discover_virtual_gates, use_virtual_gates
from discovery.selector import derive_gate_candidates, select_gate_type
from discovery.thresholds import DiscoveryThresholds
from discovery.types import CandidateGate, GateDerivation

START = datetime(2025, 6, 14, 10, 0, 0)


def _records(count, *, category, lat=40.7128, lon=-74.006, accuracy=8.0, step_minutes=8.0, start=START):
    return [
        {
            "checkin_id": str(uuid.uuid4()),
            "wristband_id": str(uuid.uuid4()),
            "staff_id": "staff-1",
            "timestamp": start + timedelta(minutes=step_minutes * i),
            "app_lat": lat,
            "app_lon": lon,
            "app_accuracy": accuracy if lat is not None else None,
            "processing_time_ms": 100,
            "gate_id": None,
            "category": category,
            "metadata": {},
        }
        for i in range(count)
    ]


def _candidate(gate_type, confidence, category="General"):
    return CandidateGate(
        gate_type=gate_type,
        name=f"{category} {gate_type}",
        category=category,
        confidence=confidence,
        sample_count=50,
        derivation=GateDerivation(
            derivation_method="test",
            confidence=confidence,
            purity=1.0,
            spatial_variance=0.0,
            temporal_consistency=1.0,
            category_entropy=0.0,
            dominant_category=category,
            category_distribution={category: 50},
            sample_count=50,
        ),
        latitude=40.7128 if gate_type == "physical" else None,
        longitude=-74.006 if gate_type == "physical" else None,
    )


@pytest.fixture
def thresholds():
    return DiscoveryThresholds()


@pytest.fixture
def same_spot_frame():
    return checkins_frame(
        _records(30, category="VIP")
        + _records(10, category="Staff", step_minutes=20, start=START + timedelta(minutes=5))
    )


class TestVirtualMode:
    def test_identical_coordinates_trigger_virtual_mode(self, same_spot_frame, thresholds):
        valid = same_spot_frame[valid_gps_mask(same_spot_frame)]
        assert use_virtual_gates(same_spot_frame, valid, thresholds) == (True, "low_location_variance")

    def test_no_gps_triggers_virtual_mode(self, thresholds):
        frame = checkins_frame(_records(20, category="General", lat=None, lon=None))
        valid = frame[valid_gps_mask(frame)]
        assert use_virtual_gates(frame, valid, thresholds) == (True, "no_usable_gps")

    def test_spread_out_event_stays_physical(self, thresholds):
        frame = checkins_frame(
            _records(30, category="General") + _records(30, category="General", lat=40.7138)
        )
        valid = frame[valid_gps_mask(frame)]
        assert use_virtual_gates(frame, valid, thresholds) == (False, "location_signal_sufficient")


class TestCategorySegments:
    def test_segments_in_first_appearance_order(self, same_spot_frame):
        segments = build_category_segments(same_spot_frame, min_per_category=5)
        assert [s.category for s in segments] == ["VIP", "Staff"]
        assert segments[0].share == pytest.approx(0.75)
        assert segments[0].unique_wristbands == 30
        assert segments[1].active_hours == 4

    def test_small_categories_are_skipped(self, same_spot_frame):
        segments = build_category_segments(same_spot_frame, min_per_category=11)
        assert [s.category for s in segments] == ["VIP"]

    def test_location_boost_uses_event_wide_spread(self, same_spot_frame, thresholds):
        # Each category sits on one exact coordinate, about 1 km apart
        split = checkins_frame(
            _records(30, category="VIP")
            + _records(10, category="Staff", lat=40.7228, lon=-74.016, step_minutes=20, start=START + timedelta(minutes=5))
        )

        segments = build_category_segments(split, min_per_category=5)
        assert all(s.lat_std == 0.0 and s.lon_std == 0.0 for s in segments)
        assert all(s.event_lat_std > 1e-4 and s.event_lon_std > 1e-4 for s in segments)

        split_vip = discover_virtual_gates(split, "evt-1", thresholds)[0]
        same_spot_vip = discover_virtual_gates(same_spot_frame, "evt-1", thresholds)[0]
        assert split_vip.category == same_spot_vip.category == "VIP"
        assert split_vip.confidence == pytest.approx(same_spot_vip.confidence * 0.95 / 1.05)

    def test_virtual_gates_ranked_by_confidence(self, same_spot_frame, thresholds):
        gates = discover_virtual_gates(same_spot_frame, "evt-1", thresholds)
        assert [g.name for g in gates] == ["VIP Virtual Gate", "Staff Virtual Gate"]
        assert gates[0].confidence > gates[1].confidence


class TestSelectGateType:
    def test_one_physical_gate_falls_back_to_virtual(self, thresholds):
        selection = select_gate_type(
            [_candidate("physical", 0.95)],
            [_candidate("virtual", 0.80)],
            location_variance=0.001,
            thresholds=thresholds,
        )
        assert selection.gate_type == "virtual"
        assert selection.reason == "insufficient_physical_gates"

    def test_low_variance_falls_back_to_virtual(self, thresholds):
        selection = select_gate_type(
            [_candidate("physical", 0.95), _candidate("physical", 0.95)],
            [],
            location_variance=0.00005,
            thresholds=thresholds,
        )
        assert selection.reason == "low_location_variance"

    def test_weak_physical_gates_fall_back_to_virtual(self, thresholds):
        selection = select_gate_type(
            [_candidate("physical", 0.70), _candidate("physical", 0.70)],
            [_candidate("virtual", 0.80)],
            location_variance=0.001,
            thresholds=thresholds,
        )
        assert selection.reason == "insufficient_physical_gate_quality"

    def test_two_physical_gates_lose_to_stronger_virtual(self, thresholds):
        selection = select_gate_type(
            [_candidate("physical", 0.80), _candidate("physical", 0.80)],
            [_candidate("virtual", 0.90)],
            location_variance=0.001,
            thresholds=thresholds,
        )
        assert selection.reason == "virtual_gates_more_confident"

    def test_three_physical_gates_win_regardless(self, thresholds):
        physical = [_candidate("physical", 0.80) for _ in range(3)]
        selection = select_gate_type(
            physical,
            [_candidate("virtual", 0.90)],
            location_variance=0.001,
            thresholds=thresholds,
        )
        assert selection.gate_type == "physical"
        assert selection.reason == "physical_gates_high_confidence"
        assert len(selection.candidates) == 3

    def test_selection_is_exclusive(self, thresholds):
        selection = select_gate_type(
            [_candidate("physical", 0.95), _candidate("physical", 0.92)],
            [_candidate("virtual", 0.70)],
            location_variance=0.001,
            thresholds=thresholds,
        )
        assert {c.gate_type for c in selection.candidates} == {"physical"}


class TestDeriveGateCandidates:
    def test_same_spot_event_derives_virtual_gates(self, same_spot_frame, thresholds):
        result = derive_gate_candidates(same_spot_frame, "evt-1", thresholds)

        assert result.selection.gate_type == "virtual"
        assert [c.name for c in result.selection.candidates] == ["VIP Virtual Gate", "Staff Virtual Gate"]
        assert all(c.derivation.selection_reason == result.selection.reason for c in result.selection.candidates)
        assert result.location_variance == 0.0
        assert result.virtual_mode_reason == "low_location_variance"

    def test_empty_frame_yields_no_candidates(self, thresholds):
        result = derive_gate_candidates(checkins_frame([]), "evt-1", thresholds)
        assert result.selection.candidates == []
        assert result.total_checkins == 0
