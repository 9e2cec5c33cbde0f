"""
Tests for DetectionConfig parsing and validation.
"""

import pytest

from core.config import Settings
from variance.analyzer import ACCEPTANCE_CONFIDENCE_FLOOR, MATERIALITY_FLOOR
from variance.config import SETTINGS_KEY, DetectionConfig, get_default_config, load_detection_config
from variance.errors import ConfigurationError


class TestDefaultConfig:
    def test_default_values(self):
        config = get_default_config()
        assert config.thresholds == (0.1, 0.2, 0.3, 0.5)
        assert config.analysis_window_hours == 24
        assert config.minimum_sales_for_analysis == 0
        assert (config.pos_weight, config.rfid_weight, config.history_weight) == (0.4, 0.4, 0.2)
        assert config.enable_anomaly_detection is True
        assert config.anomaly_sensitivity == 0.5

    def test_default_is_a_fresh_equal_value(self):
        assert get_default_config() == get_default_config()

    def test_config_is_immutable(self):
        config = get_default_config()
        with pytest.raises(Exception):
            config.low_threshold = 0.05

    def test_settings_key(self):
        assert SETTINGS_KEY == "varianceDetection"

    def test_floors_live_in_settings(self):
        settings = Settings()
        assert settings.variance_acceptance_floor == ACCEPTANCE_CONFIDENCE_FLOOR == 0.6
        assert settings.variance_materiality_floor == MATERIALITY_FLOOR == 0.1
        assert "acceptanceFloor" not in get_default_config().to_settings()


class TestLoadDetectionConfig:
    def test_empty_blob_gives_defaults(self):
        assert load_detection_config(None) == get_default_config()
        assert load_detection_config({}) == get_default_config()

    def test_camel_case_keys(self):
        config = load_detection_config(
            {
                "lowThreshold": 0.05,
                "mediumThreshold": 0.15,
                "highThreshold": 0.25,
                "criticalThreshold": 0.4,
                "analysisWindowHours": 48,
                "posSalesWeight": 0.5,
                "rfidScanWeight": 0.3,
                "historicalPatternWeight": 0.2,
                "enableAnomalyDetection": False,
            }
        )
        assert config.thresholds == (0.05, 0.15, 0.25, 0.4)
        assert config.analysis_window_hours == 48
        assert config.pos_weight == 0.5
        assert config.enable_anomaly_detection is False

    def test_short_weight_aliases_and_snake_case(self):
        config = load_detection_config({"posWeight": 0.6, "rfid_weight": 0.3, "historyWeight": 0.1})
        assert (config.pos_weight, config.rfid_weight, config.history_weight) == (0.6, 0.3, 0.1)

    def test_missing_keys_take_defaults(self):
        config = load_detection_config({"analysisWindowHours": 12})
        assert config.analysis_window_hours == 12
        assert config.thresholds == (0.1, 0.2, 0.3, 0.5)

    def test_unknown_keys_ignored(self):
        config = load_detection_config({"legacyMode": True})
        assert config == get_default_config()

    def test_round_trips_through_stored_form(self):
        stored = get_default_config().to_settings()
        assert stored["criticalThreshold"] == 0.5
        assert stored["historicalPatternWeight"] == 0.2
        assert load_detection_config(stored) == get_default_config()


class TestConfigValidation:
    def test_non_ascending_thresholds_rejected(self):
        with pytest.raises(ConfigurationError, match="strictly increasing"):
            load_detection_config({"mediumThreshold": 0.4})

    def test_equal_thresholds_rejected(self):
        with pytest.raises(ConfigurationError):
            load_detection_config({"lowThreshold": 0.2, "mediumThreshold": 0.2})

    def test_negative_weight_rejected(self):
        with pytest.raises(ConfigurationError):
            load_detection_config({"rfidScanWeight": -0.1})

    def test_non_positive_window_rejected(self):
        with pytest.raises(ConfigurationError):
            load_detection_config({"analysisWindowHours": 0})

    def test_sensitivity_out_of_range_rejected(self):
        with pytest.raises(ConfigurationError):
            load_detection_config({"anomalySensitivity": 1.5})

    def test_non_mapping_rejected(self):
        with pytest.raises(ConfigurationError, match="mapping"):
            load_detection_config(["lowThreshold", 0.1])

    def test_weights_need_not_sum_to_one(self):
        config = DetectionConfig(pos_weight=1.0, rfid_weight=1.0, history_weight=1.0)
        assert config.pos_weight + config.rfid_weight + config.history_weight == 3.0

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            load_detection_config({"criticalThreshold": 0.01})
