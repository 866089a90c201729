"""
Unit tests for the regime table and erosion cap strategy.
"""

import copy

import pytest

from risk_engine.core.config_manager import DEFAULT_REGIME_SETTINGS, ConfigurationError
from risk_engine.models.position import Regime
from risk_engine.risk_management.regime import (
    RegimeProfile,
    RegimeTableErosionCap,
    build_regime_table,
    validate_monotonic_caps,
)


class TestRegimeTable:
    """Test cases for building the regime table."""

    def test_defaults_cover_every_regime(self):
        table = build_regime_table()

        assert {regime for regime, _ in table.items()} == set(Regime)
        assert table.profile(Regime.MODERATE).erosion_cap == 0.5

    def test_missing_regime_rejected(self):
        raw = copy.deepcopy(DEFAULT_REGIME_SETTINGS)
        del raw["strong"]

        with pytest.raises(ConfigurationError, match="strong"):
            build_regime_table(raw)

    def test_unknown_label_rejected(self):
        raw = copy.deepcopy(DEFAULT_REGIME_SETTINGS)
        raw["sideways"] = raw["choppy"]

        with pytest.raises(ConfigurationError, match="sideways"):
            build_regime_table(raw)

    def test_missing_setting_rejected(self):
        raw = copy.deepcopy(DEFAULT_REGIME_SETTINGS)
        del raw["weak"]["profit_target_pct"]

        with pytest.raises(ConfigurationError, match="profit_target_pct"):
            build_regime_table(raw)

    @pytest.mark.parametrize(
        "field_name,value",
        [
            ("erosion_cap", 0.0),
            ("erosion_cap", 1.5),
            ("profit_lock_fraction", 1.0),
            ("underwater_threshold_pct", 0.5),
            ("underwater_min_dwell_minutes", -1.0),
        ],
    )
    def test_profile_validation(self, field_name, value):
        settings = dict(DEFAULT_REGIME_SETTINGS["moderate"])
        settings[field_name] = value

        with pytest.raises(ConfigurationError):
            RegimeProfile(**settings)


class TestErosionCaps:
    def test_default_caps_are_monotonic(self):
        strategy = RegimeTableErosionCap(build_regime_table())

        validate_monotonic_caps(strategy)

        caps = [strategy.erosion_cap(r, 5.0) for r in (Regime.CHOPPY, Regime.WEAK, Regime.MODERATE, Regime.STRONG)]
        assert caps == sorted(caps)

    def test_inverted_caps_rejected(self):
        raw = copy.deepcopy(DEFAULT_REGIME_SETTINGS)
        raw["strong"]["erosion_cap"] = 0.2

        with pytest.raises(ConfigurationError, match="strong"):
            validate_monotonic_caps(RegimeTableErosionCap(build_regime_table(raw)))
