"""
Regime-keyed risk parameters.

Every ``Regime`` must have a profile; the table is checked exhaustively when it
is built so a missing regime fails at start-up rather than mid-scan.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from risk_engine.core.config_manager import DEFAULT_REGIME_SETTINGS, ConfigurationError
from risk_engine.models.position import Regime


@dataclass(frozen=True)
class RegimeProfile:
    """
    Risk parameters for one regime.

    Attributes:
        erosion_cap: Fraction of peak profit tolerated as giveback (0, 1]
        profit_target_pct: Net percent at which a profit-target exit is advised
        profit_lock_min_peak_pct: Peak needed before the profit lock engages
        profit_lock_fraction: Fraction of peak to keep once the lock engages
        underwater_threshold_pct: Loss percent (negative) for underwater exits
        underwater_min_dwell_minutes: Minimum age before an underwater exit
    """

    erosion_cap: float
    profit_target_pct: float
    profit_lock_min_peak_pct: float
    profit_lock_fraction: float
    underwater_threshold_pct: float
    underwater_min_dwell_minutes: float

    def __post_init__(self) -> None:
        if not 0 < self.erosion_cap <= 1:
            raise ConfigurationError(f"erosion_cap must be in (0, 1], got {self.erosion_cap}")
        if self.profit_target_pct <= 0:
            raise ConfigurationError("profit_target_pct must be positive")
        if self.profit_lock_min_peak_pct <= 0:
            raise ConfigurationError("profit_lock_min_peak_pct must be positive")
        if not 0 < self.profit_lock_fraction < 1:
            raise ConfigurationError("profit_lock_fraction must be in (0, 1)")
        if self.underwater_threshold_pct >= 0:
            raise ConfigurationError("underwater_threshold_pct must be negative")
        if self.underwater_min_dwell_minutes < 0:
            raise ConfigurationError("underwater_min_dwell_minutes cannot be negative")


class RegimeTable:
    """Immutable, exhaustive mapping of Regime to RegimeProfile."""

    def __init__(self, profiles: Mapping[Regime, RegimeProfile]) -> None:
        missing = [regime.value for regime in Regime if regime not in profiles]
        if missing:
            raise ConfigurationError(f"Regime table missing: {', '.join(missing)}")
        self._profiles: Dict[Regime, RegimeProfile] = dict(profiles)

    def profile(self, regime: Regime) -> RegimeProfile:
        return self._profiles[regime]

    def items(self):
        return self._profiles.items()


def build_regime_table(raw: Optional[Mapping[str, Mapping[str, Any]]] = None) -> RegimeTable:
    """
    Build a RegimeTable from label-keyed settings.

    Args:
        raw: Settings per regime label, as returned by
            ``ConfigManager.get_regime_config``; defaults when None

    Returns:
        RegimeTable: Validated table

    Raises:
        ConfigurationError: On unknown labels, missing regimes or bad values
    """
    source = raw if raw is not None else DEFAULT_REGIME_SETTINGS
    profiles: Dict[Regime, RegimeProfile] = {}
    for label, settings in source.items():
        try:
            regime = Regime.parse(label)
        except ValueError as e:
            raise ConfigurationError(f"Unknown regime label: {label}") from e
        try:
            profiles[regime] = RegimeProfile(
                erosion_cap=float(settings["erosion_cap"]),
                profit_target_pct=float(settings["profit_target_pct"]),
                profit_lock_min_peak_pct=float(settings["profit_lock_min_peak_pct"]),
                profit_lock_fraction=float(settings["profit_lock_fraction"]),
                underwater_threshold_pct=float(settings["underwater_threshold_pct"]),
                underwater_min_dwell_minutes=float(settings["underwater_min_dwell_minutes"]),
            )
        except KeyError as e:
            raise ConfigurationError(f"Regime {label} is missing setting {e}") from e
    return RegimeTable(profiles)


class IErosionCapStrategy(ABC):
    """Lookup of the tolerated giveback fraction for a regime and peak."""

    @abstractmethod
    def erosion_cap(self, regime: Regime, peak_pct: float) -> float:
        """
        Fraction of ``peak_pct`` a position may give back before a forced exit.

        Stronger regimes must tolerate at least as much giveback as weaker
        ones for the same peak.

        Returns:
            float: Fraction in (0, 1]
        """


class RegimeTableErosionCap(IErosionCapStrategy):
    """Flat per-regime cap read from the regime table."""

    def __init__(self, table: RegimeTable) -> None:
        self._table = table

    def erosion_cap(self, regime: Regime, peak_pct: float) -> float:
        return self._table.profile(regime).erosion_cap


def validate_monotonic_caps(
    strategy: IErosionCapStrategy, peak_pct: float = 1.0
) -> None:
    """
    Check that giveback tolerance never decreases from choppy to strong.

    Raises:
        ConfigurationError: If a stronger regime tolerates less than a weaker one
    """
    ordered = (Regime.CHOPPY, Regime.WEAK, Regime.MODERATE, Regime.STRONG)
    caps = [strategy.erosion_cap(regime, peak_pct) for regime in ordered]
    for weaker, stronger, low, high in zip(ordered, ordered[1:], caps, caps[1:]):
        if high < low:
            raise ConfigurationError(
                f"Erosion cap for {stronger.value} ({high}) is below {weaker.value} ({low})"
            )
