"""
Underwater policy for positions that never went green.

A threshold breach alone never forces an exit: the position must also have
been open for the minimum dwell time. Until then the breach is reported as
pending so dashboards can show it without acting on a single noisy tick.

Positions whose peak stayed below the profit-collapse minimum are governed
the same way and exit as ``underwater_small_peak_timeout``.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from risk_engine.core.logger import get_module_logger
from risk_engine.models.position import ExitReason, Position, utc_now
from risk_engine.risk_management.regime import RegimeTable


class UnderwaterState(Enum):
    """Outcome of an underwater evaluation."""

    NOT_APPLICABLE = "not_applicable"
    WITHIN_THRESHOLD = "within_threshold"
    PENDING = "pending"
    EXIT = "exit"


@dataclass(frozen=True)
class UnderwaterDecision:
    position_id: str
    state: UnderwaterState
    current_pct: float
    threshold_pct: float
    age_minutes: float
    min_dwell_minutes: float
    recommendation: Optional[ExitReason] = None

    @property
    def minutes_remaining(self) -> float:
        return max(0.0, self.min_dwell_minutes - self.age_minutes)


class UnderwaterPolicy:
    """Decides whether prolonged loss on a never-profitable position forces an exit."""

    def __init__(self, regime_table: RegimeTable) -> None:
        self._regime_table = regime_table
        self._logger = get_module_logger("underwater_policy")

    @staticmethod
    def applies_to(position: Position, small_peak_max_pct: float = 0.0) -> bool:
        """
        True for red positions that never went green.

        A peak below ``small_peak_max_pct`` counts as never green: it is
        market noise, not a profit worth protecting.
        """
        if position.current_profit_pct >= 0:
            return False
        return position.peak_profit_pct <= 0 or position.peak_profit_pct < small_peak_max_pct

    def thresholds_for(self, position: Position):
        """Per-position threshold and dwell, falling back to the regime profile."""
        profile = self._regime_table.profile(position.regime)
        threshold = position.underwater_threshold_pct
        dwell = position.underwater_min_dwell_minutes
        return (
            profile.underwater_threshold_pct if threshold is None else threshold,
            profile.underwater_min_dwell_minutes if dwell is None else dwell,
        )

    def evaluate(
        self,
        position: Position,
        now: Optional[datetime] = None,
        small_peak_max_pct: float = 0.0,
    ) -> UnderwaterDecision:
        """
        Evaluate a position against its underwater threshold and dwell time.

        Args:
            position: Position with an up-to-date ``current_profit_pct``
            now: Evaluation time
            small_peak_max_pct: Peaks below this are governed as never green

        Returns:
            UnderwaterDecision: State and optional exit recommendation
        """
        threshold, dwell = self.thresholds_for(position)
        current = position.current_profit_pct
        age = position.age_minutes(now or utc_now())

        def decision(state: UnderwaterState, reason: Optional[ExitReason] = None) -> UnderwaterDecision:
            return UnderwaterDecision(
                position_id=position.position_id,
                state=state,
                current_pct=current,
                threshold_pct=threshold,
                age_minutes=age,
                min_dwell_minutes=dwell,
                recommendation=reason,
            )

        if not self.applies_to(position, small_peak_max_pct):
            return decision(UnderwaterState.NOT_APPLICABLE)

        if current >= threshold:
            return decision(UnderwaterState.WITHIN_THRESHOLD)

        if age < 0:
            # Entry time in the future is a clock or data error; never let it
            # pin a losing position open.
            self._logger.warning(
                f"Position {position.position_id} has entry time in the future "
                f"({age:.1f} min); treating dwell time as satisfied"
            )
        elif age < dwell:
            self._logger.debug(
                f"Position {position.position_id} underwater at {current:.4f}% "
                f"(threshold {threshold}%), {dwell - age:.1f} min until exit"
            )
            return decision(UnderwaterState.PENDING)

        if position.peak_profit_pct > 0:
            reason = ExitReason.UNDERWATER_SMALL_PEAK_TIMEOUT
            history = f"peak only {position.peak_profit_pct:.4f}%"
        else:
            reason = ExitReason.UNDERWATER_NEVER_PROFITED
            history = "never profitable"
        self._logger.info(
            f"Underwater exit for {position.position_id} ({position.pair}): "
            f"{current:.4f}% < {threshold}% after {age:.1f} min, {history}"
        )
        return decision(UnderwaterState.EXIT, reason)
