import pytest

from core import config as config_module
from db.models import AdaptiveThreshold
from discovery.thresholds import DiscoveryThresholds, ThresholdConfigError, load_event_thresholds


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    config_module.get_settings.cache_clear()
    yield
    config_module.get_settings.cache_clear()


def test_defaults_are_valid():
    thresholds = DiscoveryThresholds()
    assert thresholds.duplicate_distance_meters == 25.0
    assert thresholds.promotion_sample_size == 100
    assert thresholds.to_dict()["orphan_min_confidence"] == 0.50


def test_settings_feed_gate_and_trigger_fields(monkeypatch):
    monkeypatch.setenv("GATE_DUPLICATE_DISTANCE_METERS", "30")
    monkeypatch.setenv("TRIGGER_REFRESH_EVERY_CHECKINS", "250")

    thresholds = DiscoveryThresholds.from_settings(config_module.get_settings())

    assert thresholds.duplicate_distance_meters == 30.0
    assert thresholds.refresh_every_checkins == 250


def test_out_of_range_setting_blocks_startup(monkeypatch):
    monkeypatch.setenv("GATE_ORPHAN_MIN_CONFIDENCE", "1.5")

    with pytest.raises(ThresholdConfigError, match="orphan_min_confidence"):
        config_module.get_settings()


def test_bad_pipeline_limits_block_startup(monkeypatch):
    monkeypatch.setenv("PIPELINE_MAX_ATTEMPTS", "0")

    with pytest.raises(ValueError, match="pipeline_max_attempts"):
        config_module.get_settings()


def test_non_local_debug_mode_is_blocked(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("DEBUG", "true")

    with pytest.raises(ValueError, match="debug=true"):
        config_module.get_settings()


def test_non_local_process_lock_is_blocked(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("EVENT_LOCK_BACKEND", "local")

    with pytest.raises(ValueError, match="event_lock_backend"):
        config_module.get_settings()


def test_event_lock_backend_defaults_to_redis(monkeypatch):
    monkeypatch.delenv("EVENT_LOCK_BACKEND", raising=False)
    assert config_module.get_settings().event_lock_backend == "redis"


class TestOverrides:
    def test_unknown_key_is_rejected(self):
        with pytest.raises(ThresholdConfigError, match="bogus"):
            DiscoveryThresholds().with_overrides({"bogus": 1})

    def test_non_numeric_value_is_rejected(self):
        with pytest.raises(ThresholdConfigError, match="numeric"):
            DiscoveryThresholds().with_overrides({"orphan_min": "many"})

    def test_inverted_initial_window_is_rejected(self):
        with pytest.raises(ThresholdConfigError, match="initial_max_checkins"):
            DiscoveryThresholds().with_overrides({"initial_min_checkins": 60})

    def test_probation_above_enforce_is_rejected(self):
        with pytest.raises(ThresholdConfigError, match="binding_probation_confidence"):
            DiscoveryThresholds(binding_probation_confidence=0.95)

    def test_counts_are_coerced_to_int(self):
        thresholds = DiscoveryThresholds().with_overrides({"min_checkins_for_gate": "7", "outlier_sigma": 2})
        assert thresholds.min_checkins_for_gate == 7
        assert isinstance(thresholds.min_checkins_for_gate, int)
        assert thresholds.outlier_sigma == 2.0


class TestLoadEventThresholds:
    @pytest.mark.asyncio
    async def test_defaults_without_row(self, test_db, live_event):
        thresholds = await load_event_thresholds(test_db, live_event.event_id, settings=config_module.Settings())
        assert thresholds == DiscoveryThresholds()

    @pytest.mark.asyncio
    async def test_columns_and_overrides_apply(self, test_db, live_event):
        test_db.add(
            AdaptiveThreshold(
                event_id=live_event.event_id,
                duplicate_distance_meters=15.0,
                min_checkins_for_gate=5,
                overrides={"orphan_every": 25, "temporal_window_seconds": 120},
            )
        )
        await test_db.commit()

        thresholds = await load_event_thresholds(test_db, live_event.event_id, settings=config_module.Settings())

        assert thresholds.duplicate_distance_meters == 15.0
        assert thresholds.min_checkins_for_gate == 5
        assert thresholds.orphan_every == 25
        assert thresholds.temporal_window_seconds == 120.0
        assert thresholds.promotion_sample_size == 100

    @pytest.mark.asyncio
    async def test_invalid_row_is_rejected(self, test_db, live_event):
        test_db.add(AdaptiveThreshold(event_id=live_event.event_id, confidence_threshold=1.4))
        await test_db.commit()

        with pytest.raises(ThresholdConfigError, match="confidence_threshold"):
            await load_event_thresholds(test_db, live_event.event_id, settings=config_module.Settings())
