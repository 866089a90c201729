"""
Position health evaluation.

Routes each position to exactly one policy: the peak/erosion tracker when it
has been meaningfully green, the underwater policy otherwise. A red position
whose peak stayed below the profit-collapse minimum goes to the underwater
policy.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from risk_engine.core.logger import get_module_logger
from risk_engine.models.position import ExitReason, Position, utc_now
from risk_engine.risk_management.peak_tracker import ErosionLevel, PeakErosionTracker
from risk_engine.risk_management.underwater_policy import (
    UnderwaterPolicy,
    UnderwaterState,
)


class HealthStatus(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    UNDERWATER = "underwater"


class GoverningPolicy(Enum):
    EROSION = "erosion"
    UNDERWATER = "underwater"


@dataclass(frozen=True)
class PositionHealth:
    """
    Health report for one position.

    Attributes:
        status: healthy, warning, critical or underwater
        erosion_ratio_pct: Erosion relative to the cap, 0 if not eroding
        recommendation: Forced-exit reason, if any
        policy: Which policy governed the evaluation
        underwater_state: Underwater sub-state when that policy governed
    """

    position_id: str
    status: HealthStatus
    erosion_ratio_pct: float
    current_pct: float
    peak_pct: float
    policy: GoverningPolicy
    recommendation: Optional[ExitReason] = None
    underwater_state: Optional[UnderwaterState] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "status": self.status.value,
            "erosion_ratio_pct": self.erosion_ratio_pct,
            "current_pct": self.current_pct,
            "peak_pct": self.peak_pct,
            "policy": self.policy.value,
            "recommendation": self.recommendation.value if self.recommendation else None,
            "underwater_state": self.underwater_state.value if self.underwater_state else None,
        }


class PositionEvaluator:
    """Produces ``PositionHealth`` for dashboards, alerting and the scanner."""

    def __init__(self, tracker: PeakErosionTracker, underwater_policy: UnderwaterPolicy) -> None:
        self._tracker = tracker
        self._underwater_policy = underwater_policy
        self._logger = get_module_logger("position_evaluator")

    def evaluate_position(
        self,
        position: Position,
        current_pct: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> PositionHealth:
        """
        Evaluate a position.

        Args:
            position: Open position
            current_pct: Fresh net profit percent; when given the peak is
                updated first, otherwise the stored figures are used
            now: Evaluation time

        Returns:
            PositionHealth: Status, erosion ratio and optional recommendation
        """
        evaluated_at = now or utc_now()
        observed = position.current_profit_pct if current_pct is None else current_pct
        # Idempotent; also repairs a stored peak that lags the observation.
        self._tracker.update_peak(position, observed, evaluated_at)

        small_peak_max = self._tracker.profit_collapse_min_peak_pct
        if position.peak_profit_pct > 0 and not self._underwater_policy.applies_to(
            position, small_peak_max
        ):
            return self._evaluate_erosion(position)
        return self._evaluate_underwater(position, evaluated_at, small_peak_max)

    def _evaluate_erosion(self, position: Position) -> PositionHealth:
        assessment = self._tracker.assess_erosion(position)

        if assessment.recommendation is not None or assessment.level == ErosionLevel.CRITICAL:
            status = HealthStatus.CRITICAL
        elif assessment.level == ErosionLevel.WARNING:
            status = HealthStatus.WARNING
        elif position.current_profit_pct < 0:
            status = HealthStatus.UNDERWATER
        else:
            status = HealthStatus.HEALTHY

        return PositionHealth(
            position_id=position.position_id,
            status=status,
            erosion_ratio_pct=assessment.ratio_pct,
            current_pct=position.current_profit_pct,
            peak_pct=assessment.peak_pct,
            policy=GoverningPolicy.EROSION,
            recommendation=assessment.recommendation,
        )

    def _evaluate_underwater(
        self, position: Position, now: datetime, small_peak_max_pct: float
    ) -> PositionHealth:
        decision = self._underwater_policy.evaluate(position, now, small_peak_max_pct)

        if decision.state == UnderwaterState.EXIT:
            status = HealthStatus.CRITICAL
        elif decision.state == UnderwaterState.NOT_APPLICABLE:
            status = HealthStatus.HEALTHY
        else:
            status = HealthStatus.UNDERWATER

        return PositionHealth(
            position_id=position.position_id,
            status=status,
            erosion_ratio_pct=0.0,
            current_pct=position.current_profit_pct,
            peak_pct=max(0.0, position.peak_profit_pct),
            policy=GoverningPolicy.UNDERWATER,
            recommendation=decision.recommendation,
            underwater_state=decision.state,
        )
