"""
Peak and erosion tracking for open positions.

The tracker keeps, per position, the highest net profit percent ever observed
and measures how much of that peak has been given back relative to the
regime's erosion cap. Positions that never went green are out of scope here
and belong to the underwater policy.

Recommendations are advisory. The exit guard re-validates net profitability
at execution time before acting on any of them.
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from risk_engine.core.event_hub import EventHub, EventType
from risk_engine.core.logger import get_module_logger
from risk_engine.models.position import ExitReason, Position, utc_now
from risk_engine.risk_management.regime import IErosionCapStrategy, RegimeTable


DEFAULT_WARNING_RATIO_PCT = 80.0
DEFAULT_CRITICAL_RATIO_PCT = 100.0
DEFAULT_PROFIT_COLLAPSE_MIN_PEAK_PCT = 0.5


class TrackerError(Exception):
    """Base exception for tracker errors."""


class ErosionLevel(Enum):
    """Alerting level derived from the erosion ratio."""

    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class PeakUpdate:
    """
    Result of feeding one observation to the tracker.

    Attributes:
        previous_peak: Best known peak before this observation
        new_peak: Peak after this observation
        current_pct: The observed net profit percent
        changed: True if the peak moved up
        healed: True if the stored record lagged the tracker and was repaired
    """

    position_id: str
    previous_peak: float
    new_peak: float
    current_pct: float
    changed: bool
    healed: bool


@dataclass(frozen=True)
class ErosionAssessment:
    """
    Erosion state of a position with a positive peak.

    Attributes:
        used_fraction: Share of the peak given back, 0 when current <= 0
        erosion_cap: Tolerated share for the position's regime and peak
        ratio_pct: used_fraction / erosion_cap * 100, never below 0
        level: Alerting level
        recommendation: Forced-exit reason, if any rule triggered
    """

    position_id: str
    peak_pct: float
    current_pct: float
    used_fraction: float
    erosion_cap: float
    ratio_pct: float
    level: ErosionLevel
    recommendation: Optional[ExitReason] = None

    @property
    def exceeded(self) -> bool:
        return self.used_fraction > self.erosion_cap


def next_peak(previous_peak: float, current_pct: float) -> float:
    """Peak only ratchets upward, and only on positive observations."""
    floor = max(0.0, previous_peak)
    if current_pct > 0:
        return max(floor, current_pct)
    return floor


def erosion_used_fraction(peak_pct: float, current_pct: float) -> float:
    """
    Share of the peak given back.

    Exactly 0 for underwater or flat positions and for positions at or above
    their peak.
    """
    if peak_pct <= 0 or current_pct <= 0 or current_pct >= peak_pct:
        return 0.0
    return (peak_pct - current_pct) / peak_pct


def erosion_ratio_pct(used_fraction: float, erosion_cap: float) -> float:
    if erosion_cap <= 0:
        raise TrackerError(f"Erosion cap must be positive, got {erosion_cap}")
    return max(0.0, used_fraction / erosion_cap * 100.0)


class PeakErosionTracker:
    """
    Maintains peaks and derives erosion assessments.

    The in-memory peak cache is authoritative against stale ledger reads: a
    record carrying a lower peak than the cache is repaired, never trusted.
    """

    def __init__(
        self,
        cap_strategy: IErosionCapStrategy,
        regime_table: RegimeTable,
        ledger: Optional[Any] = None,
        event_hub: Optional[EventHub] = None,
        warning_ratio_pct: float = DEFAULT_WARNING_RATIO_PCT,
        critical_ratio_pct: float = DEFAULT_CRITICAL_RATIO_PCT,
        profit_collapse_min_peak_pct: float = DEFAULT_PROFIT_COLLAPSE_MIN_PEAK_PCT,
    ) -> None:
        """
        Initialize the tracker.

        Args:
            cap_strategy: Erosion-cap lookup
            regime_table: Profit-lock and profit-target parameters per regime
            ledger: Optional trade ledger receiving peak writes
            event_hub: Optional hub for peak and erosion events
            warning_ratio_pct: Erosion ratio that raises a warning
            critical_ratio_pct: Erosion ratio that is reported critical
            profit_collapse_min_peak_pct: Peak that makes a drop below zero a
                profitable collapse rather than noise
        """
        if not 0 < warning_ratio_pct <= critical_ratio_pct:
            raise TrackerError("Require 0 < warning_ratio_pct <= critical_ratio_pct")

        self._cap_strategy = cap_strategy
        self._regime_table = regime_table
        self._ledger = ledger
        self._event_hub = event_hub
        self._warning_ratio_pct = warning_ratio_pct
        self._critical_ratio_pct = critical_ratio_pct
        self._collapse_min_peak = profit_collapse_min_peak_pct
        self._peaks: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._logger = get_module_logger("peak_tracker")

    def load_open_positions(self, positions: Iterable[Position]) -> int:
        """Warm the peak cache from ledger records. Returns positions loaded."""
        count = 0
        with self._lock:
            for position in positions:
                if position.peak_profit_pct > 0:
                    known = self._peaks.get(position.position_id, 0.0)
                    self._peaks[position.position_id] = max(known, position.peak_profit_pct)
                count += 1
        self._logger.info(f"Loaded peaks for {count} open positions")
        return count

    @property
    def profit_collapse_min_peak_pct(self) -> float:
        return self._collapse_min_peak

    def get_peak(self, position_id: str) -> float:
        with self._lock:
            return self._peaks.get(position_id, 0.0)

    def clear(self, position_id: str) -> None:
        """Forget a position's peak once it has closed."""
        with self._lock:
            self._peaks.pop(position_id, None)

    def update_peak(
        self, position: Position, current_pct: float, now: Optional[datetime] = None
    ) -> PeakUpdate:
        """
        Record an observation and ratchet the peak.

        Mutates ``position`` so that afterwards ``peak_profit_pct >=
        current_profit_pct`` whenever the peak is positive, and persists any
        change to the ledger.

        Args:
            position: Open position record
            current_pct: Current net profit percent
            now: Observation time

        Returns:
            PeakUpdate: What changed
        """
        observed_at = now or utc_now()
        with self._lock:
            cached = self._peaks.get(position.position_id, 0.0)
            stored = max(0.0, position.peak_profit_pct)
            previous = max(cached, stored)
            new_peak = next_peak(previous, current_pct)
            if new_peak > 0:
                self._peaks[position.position_id] = new_peak

        changed = new_peak > previous
        healed = stored < new_peak and not changed
        position.current_profit_pct = current_pct

        if changed or healed:
            position.peak_profit_pct = new_peak
            if changed:
                position.peak_recorded_at = observed_at
            self._persist_peak(position, new_peak, observed_at)

        if healed:
            self._logger.warning(
                f"Stale peak for {position.position_id}: stored {stored:.4f}% "
                f"below tracked {new_peak:.4f}%, repaired"
            )
            self._publish(EventType.PEAK_HEALED, position, peak_pct=new_peak, stale_peak_pct=stored)
        elif changed:
            self._logger.debug(
                f"New peak for {position.position_id}: {previous:.4f}% -> {new_peak:.4f}%"
            )
            self._publish(EventType.PEAK_UPDATED, position, peak_pct=new_peak)

        return PeakUpdate(
            position_id=position.position_id,
            previous_peak=previous,
            new_peak=new_peak,
            current_pct=current_pct,
            changed=changed,
            healed=healed,
        )

    def assess_erosion(self, position: Position) -> ErosionAssessment:
        """
        Assess erosion and recommend an exit when a rule triggers.

        Rules, first match wins: profitable collapse below zero, erosion cap
        exceeded, regime profit lock, regime profit target.

        Args:
            position: Position whose peak fields are current

        Returns:
            ErosionAssessment: Erosion figures and optional recommendation
        """
        peak = max(0.0, position.peak_profit_pct)
        current = position.current_profit_pct
        cap = self._cap_for(position, peak)

        used = erosion_used_fraction(peak, current)
        ratio = erosion_ratio_pct(used, cap)

        if ratio >= self._critical_ratio_pct:
            level = ErosionLevel.CRITICAL
        elif ratio >= self._warning_ratio_pct:
            level = ErosionLevel.WARNING
        else:
            level = ErosionLevel.NONE

        recommendation = self._recommend(position, peak, current, used, cap)

        assessment = ErosionAssessment(
            position_id=position.position_id,
            peak_pct=peak,
            current_pct=current,
            used_fraction=used,
            erosion_cap=cap,
            ratio_pct=ratio,
            level=level,
            recommendation=recommendation,
        )

        if recommendation is not None:
            self._logger.info(
                f"Exit recommended for {position.position_id} ({position.pair}): "
                f"{recommendation.value} peak={peak:.4f}% current={current:.4f}% "
                f"used={used:.3f} cap={cap:.3f}"
            )
            self._publish(
                EventType.EXIT_RECOMMENDED,
                position,
                reason=recommendation.value,
                erosion_ratio_pct=ratio,
            )
        elif level != ErosionLevel.NONE:
            self._publish(EventType.EROSION_WARNING, position, erosion_ratio_pct=ratio)

        return assessment

    def evaluate(
        self, position: Position, current_pct: float, now: Optional[datetime] = None
    ) -> ErosionAssessment:
        """Update the peak with ``current_pct`` and return the fresh assessment."""
        self.update_peak(position, current_pct, now)
        return self.assess_erosion(position)

    def _recommend(
        self,
        position: Position,
        peak: float,
        current: float,
        used: float,
        cap: float,
    ) -> Optional[ExitReason]:
        if peak <= 0:
            return None

        if current < 0:
            if peak >= self._collapse_min_peak:
                return ExitReason.UNDERWATER_PROFITABLE_COLLAPSE
            return None

        if used > cap:
            return ExitReason.EROSION_CAP_EXCEEDED

        profile = self._regime_table.profile(position.regime)
        if peak >= profile.profit_lock_min_peak_pct and current <= peak * profile.profit_lock_fraction:
            return ExitReason.PROFIT_LOCK_REGIME

        if current >= profile.profit_target_pct:
            return ExitReason.PROFIT_TARGET

        return None

    def _cap_for(self, position: Position, peak: float) -> float:
        cap = self._cap_strategy.erosion_cap(position.regime, peak)
        if not 0 < cap <= 1:
            raise TrackerError(
                f"Erosion cap strategy returned {cap} for {position.regime.value}; "
                "expected a fraction in (0, 1]"
            )
        return cap

    def _persist_peak(self, position: Position, peak: float, recorded_at: datetime) -> None:
        if self._ledger is None:
            return
        try:
            self._ledger.update_peak(position.position_id, peak, recorded_at)
        except Exception as e:
            self._logger.error(f"Failed to persist peak for {position.position_id}: {e}")

    def _publish(self, event_type: str, position: Position, **data: Any) -> None:
        if self._event_hub is None:
            return
        payload = {
            "position_id": position.position_id,
            "bot_id": position.bot_id,
            "pair": position.pair,
            "regime": position.regime.value,
            "current_pct": position.current_profit_pct,
        }
        payload.update(data)
        self._event_hub.publish(event_type, payload)
