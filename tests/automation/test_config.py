"""Tests for engine configuration."""

import pytest

from equipment_automation.automation import EngineConfig, ValidationError


class TestEngineConfig:
    def test_defaults(self):
        config = EngineConfig()
        assert config.timezone == "UTC"
        assert config.threshold_mode == "edge"
        assert config.disable_once_after_fire is True
        assert config.max_workers == 4

    def test_round_trip(self):
        config = EngineConfig(timezone="Europe/Berlin", threshold_mode="level", max_workers=0)
        assert EngineConfig.from_dict(config.to_dict()) == config

    def test_from_dict_ignores_unknown_keys(self):
        config = EngineConfig.from_dict({"tick_interval_seconds": "10", "color": "blue"})
        assert config.tick_interval_seconds == 10.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"threshold_mode": "sometimes"},
            {"tick_interval_seconds": 0},
            {"max_workers": -1},
            {"timezone": "Mars/Olympus_Mons"},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValidationError):
            EngineConfig(**kwargs)

    def test_tz(self):
        assert EngineConfig(timezone="Europe/Berlin").tz.key == "Europe/Berlin"
