"""
Dynamic position sizing with a damped, confidence-scaled Kelly fraction.

The per-account statistics live in an immutable ``SizerState`` snapshot that
is replaced as a whole through compare-and-swap, so a sizing call never sees a
half-updated balance. Whatever the inputs, the final risk fraction stays
inside [min_risk_fraction, max_risk_fraction] of the current balance.
"""

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from risk_engine.core.event_hub import EventHub, EventType
from risk_engine.core.logger import get_module_logger
from risk_engine.core.retry import RetryExecutor, create_exchange_retry_policy
from risk_engine.models.position import utc_now


DEFAULT_AVG_WIN = 0.025
DEFAULT_AVG_LOSS = 0.015


class PositionSizingError(Exception):
    """Base exception for position sizing related errors."""


class InvalidPositionSizingConfigError(PositionSizingError):
    """Exception raised for invalid position sizing configuration."""


class PositionSizingCalculationError(PositionSizingError):
    """Exception raised for invalid sizing inputs."""


class ExposureLimitExceededError(PositionSizingError):
    """Raised when a new position would breach the concurrent-risk cap."""


class BalanceSyncError(PositionSizingError):
    """Raised when the exchange balance could not be read."""


@dataclass(frozen=True)
class DynamicSizingConfig:
    """Configuration for the dynamic sizer.

    Fractions are of balance (0.05 = 5%); confidence is on the 0-100 scale.
    """

    kelly_damping: float = 0.25
    kelly_min_trades: int = 10
    default_risk_fraction: float = 0.05
    min_risk_fraction: float = 0.01
    max_risk_fraction: float = 0.10
    min_confidence: float = 50.0
    max_confidence: float = 95.0
    max_concurrent_risk_fraction: float = 0.05
    capital_mode: str = "fixed"

    def __post_init__(self) -> None:
        if not 0.0 < self.kelly_damping <= 1.0:
            raise InvalidPositionSizingConfigError("Kelly damping must be in (0, 1]")
        if self.kelly_min_trades < 1:
            raise InvalidPositionSizingConfigError("Kelly minimum trades must be at least 1")
        if not 0.0 < self.min_risk_fraction <= self.max_risk_fraction < 1.0:
            raise InvalidPositionSizingConfigError(
                "Require 0 < min_risk_fraction <= max_risk_fraction < 1"
            )
        if self.default_risk_fraction <= 0:
            raise InvalidPositionSizingConfigError("Default risk fraction must be positive")
        if not 0.0 <= self.min_confidence < self.max_confidence <= 100.0:
            raise InvalidPositionSizingConfigError(
                "Require 0 <= min_confidence < max_confidence <= 100"
            )
        if not 0.0 < self.max_concurrent_risk_fraction <= 1.0:
            raise InvalidPositionSizingConfigError(
                "Max concurrent risk fraction must be in (0, 1]"
            )
        if self.capital_mode not in ("fixed", "unlimited"):
            raise InvalidPositionSizingConfigError(
                f"Unsupported capital mode: {self.capital_mode}"
            )


@dataclass(frozen=True)
class SizerState:
    """Per-account statistics snapshot.

    Attributes:
        balance: Current account balance in quote currency
        total_trades: Closed trades counted
        winning_trades: Closed trades with positive net P&L
        losing_trades: Closed trades with negative net P&L
        avg_win_pct: Mean winning return as a fraction (0.025 = 2.5%)
        avg_loss_pct: Mean losing return as a positive fraction
        version: Incremented on every replacement
    """

    balance: float
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    avg_win_pct: float = DEFAULT_AVG_WIN
    avg_loss_pct: float = DEFAULT_AVG_LOSS
    version: int = 0
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if self.balance < 0:
            raise PositionSizingCalculationError("Balance cannot be negative")
        if self.winning_trades + self.losing_trades > self.total_trades:
            raise PositionSizingCalculationError("Win/loss counts exceed total trades")

    @property
    def win_rate(self) -> float:
        if self.total_trades == 0:
            return 0.5
        return self.winning_trades / self.total_trades


@dataclass(frozen=True)
class RiskFractionBreakdown:
    raw_kelly: Optional[float]
    base_fraction: float
    confidence: float
    confidence_multiplier: float
    final_fraction: float
    used_default: bool


@dataclass(frozen=True)
class SizingResult:
    """Output of ``size_position``.

    Attributes:
        size_quote: Position size in quote currency
        size_asset: Position size in asset units
        risk_quote: Amount at risk in quote currency
        risk_fraction: Final risk fraction of balance
        balance: Balance the size was computed against
        state_version: SizerState version used
    """

    size_quote: float
    size_asset: float
    risk_quote: float
    risk_fraction: float
    balance: float
    state_version: int
    breakdown: RiskFractionBreakdown


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class DynamicPositionSizer:
    """
    Sizes new positions from balance, trade history and signal confidence.

    State updates are single-writer via compare-and-swap; reads return the
    current immutable snapshot.
    """

    def __init__(
        self,
        config: DynamicSizingConfig,
        initial_state: SizerState,
        event_hub: Optional[EventHub] = None,
    ) -> None:
        self._config = config
        self._state = initial_state
        self._state_lock = threading.Lock()
        self._event_hub = event_hub
        self._logger = get_module_logger("position_sizer")
        self._logger.info(
            f"DynamicPositionSizer initialized: balance=${initial_state.balance:.2f}, "
            f"mode={config.capital_mode}"
        )

    @property
    def config(self) -> DynamicSizingConfig:
        return self._config

    @property
    def state(self) -> SizerState:
        with self._state_lock:
            return self._state

    def compare_and_swap(self, expected_version: int, new_state: SizerState) -> bool:
        """
        Replace the state if it is still at ``expected_version``.

        The stored state always gets version ``expected_version + 1``.

        Returns:
            bool: False if another writer got there first
        """
        with self._state_lock:
            if self._state.version != expected_version:
                return False
            self._state = replace(new_state, version=expected_version + 1, updated_at=utc_now())
            return True

    def _apply(self, transform: Callable[[SizerState], SizerState]) -> SizerState:
        while True:
            current = self.state
            if self.compare_and_swap(current.version, transform(current)):
                return self.state

    def update_balance(self, new_balance: float, source: str = "manual") -> SizerState:
        """
        Set the balance used by subsequent sizing calls.

        Raises:
            PositionSizingCalculationError: If the balance is negative
        """
        if new_balance < 0:
            raise PositionSizingCalculationError("Balance cannot be negative")

        previous = self.state.balance
        state = self._apply(lambda s: replace(s, balance=float(new_balance)))
        if previous != new_balance:
            change = (new_balance / previous - 1) * 100 if previous > 0 else 0.0
            self._logger.info(
                f"Account balance updated ({source}): ${previous:.2f} -> "
                f"${new_balance:.2f} ({change:+.2f}%)"
            )
            self._publish(
                EventType.BALANCE_UPDATED,
                {"previous": previous, "balance": float(new_balance), "source": source},
            )
        return state

    def record_trade_result(self, net_pnl: float, net_pnl_percent: float) -> SizerState:
        """
        Fold a closed trade into the running statistics.

        In fixed-capital mode the net P&L is also applied to the balance;
        in unlimited mode the balance comes from the exchange instead.

        Args:
            net_pnl: Net profit in quote currency
            net_pnl_percent: Net profit percent (2.5 = 2.5%)
        """
        fraction = float(net_pnl_percent) / 100.0
        apply_pnl = self._config.capital_mode == "fixed"

        def transform(s: SizerState) -> SizerState:
            wins, losses = s.winning_trades, s.losing_trades
            avg_win, avg_loss = s.avg_win_pct, s.avg_loss_pct
            if fraction > 0:
                avg_win = fraction if wins == 0 else (avg_win * wins + fraction) / (wins + 1)
                wins += 1
            elif fraction < 0:
                loss = -fraction
                avg_loss = loss if losses == 0 else (avg_loss * losses + loss) / (losses + 1)
                losses += 1
            balance = max(0.0, s.balance + float(net_pnl)) if apply_pnl else s.balance
            return replace(
                s,
                balance=balance,
                total_trades=s.total_trades + 1,
                winning_trades=wins,
                losing_trades=losses,
                avg_win_pct=avg_win,
                avg_loss_pct=avg_loss,
            )

        state = self._apply(transform)
        self._logger.debug(
            f"Trade recorded: {net_pnl_percent:+.2f}% -> {state.total_trades} trades, "
            f"win rate {state.win_rate:.1%}, avg win {state.avg_win_pct:.2%}, "
            f"avg loss {state.avg_loss_pct:.2%}"
        )
        return state

    def reset_state(self, balance: float, operator: str) -> SizerState:
        """Explicit operator reset of all statistics."""
        if not operator:
            raise PositionSizingError("Operator must be named for a state reset")
        state = self._apply(lambda s: SizerState(balance=float(balance), version=s.version))
        self._logger.warning(f"Sizer state reset by {operator}: balance=${balance:.2f}")
        return state

    def calculate_kelly_fraction(self, state: Optional[SizerState] = None) -> Optional[float]:
        """
        Raw Kelly fraction, or None while history is too short.

        ``(p * W - (1 - p) * L) / W`` with p the win rate, W and L the
        average win and loss fractions.
        """
        s = state or self.state
        if s.total_trades < self._config.kelly_min_trades or s.avg_win_pct <= 0:
            return None
        p = s.win_rate
        return (p * s.avg_win_pct - (1 - p) * s.avg_loss_pct) / s.avg_win_pct

    def confidence_multiplier(self, confidence: float) -> float:
        """Map confidence linearly onto [0.5, 2.0] between the configured bounds."""
        low, high = self._config.min_confidence, self._config.max_confidence
        clamped = _clamp(float(confidence), low, high)
        return 0.5 + (clamped - low) / (high - low) * 1.5

    def calculate_risk_fraction(
        self, confidence: float, state: Optional[SizerState] = None
    ) -> RiskFractionBreakdown:
        """
        Final risk fraction for a confidence score.

        Kelly (or the default below the history threshold) is damped, clamped,
        scaled by confidence and clamped again.
        """
        s = state or self.state
        cfg = self._config
        raw = self.calculate_kelly_fraction(s)

        if raw is None:
            base = _clamp(cfg.default_risk_fraction, cfg.min_risk_fraction, cfg.max_risk_fraction)
        else:
            base = _clamp(raw * cfg.kelly_damping, cfg.min_risk_fraction, cfg.max_risk_fraction)

        multiplier = self.confidence_multiplier(confidence)
        final = _clamp(base * multiplier, cfg.min_risk_fraction, cfg.max_risk_fraction)

        return RiskFractionBreakdown(
            raw_kelly=raw,
            base_fraction=base,
            confidence=float(confidence),
            confidence_multiplier=multiplier,
            final_fraction=final,
            used_default=raw is None,
        )

    def size_position(
        self,
        confidence: float,
        price: float,
        stop_loss_pct: float,
        open_risk_quote: Optional[float] = None,
    ) -> SizingResult:
        """
        Compute a position size.

        Args:
            confidence: Upstream signal confidence, 0-100
            price: Current asset price
            stop_loss_pct: Stop-loss distance as a fraction (0.02 = 2%)
            open_risk_quote: Risk already open; when given, the exposure cap
                is enforced

        Returns:
            SizingResult: Quote size, asset size and risk amount

        Raises:
            PositionSizingCalculationError: For invalid inputs
            ExposureLimitExceededError: If the exposure cap would be breached
        """
        if price <= 0:
            raise PositionSizingCalculationError("Price must be positive")
        if not 0.0 < stop_loss_pct < 1.0:
            raise PositionSizingCalculationError("Stop loss must be a fraction in (0, 1)")
        if not 0.0 <= confidence <= 100.0:
            raise PositionSizingCalculationError("Confidence must be between 0 and 100")

        state = self.state
        if state.balance <= 0:
            raise PositionSizingCalculationError("Balance must be positive to size a position")

        breakdown = self.calculate_risk_fraction(confidence, state)
        risk_quote = state.balance * breakdown.final_fraction
        size_quote = risk_quote / stop_loss_pct
        size_asset = size_quote / price

        if open_risk_quote is not None and not self.can_add_position(
            open_risk_quote, risk_quote, state
        ):
            raise ExposureLimitExceededError(
                f"Open risk ${open_risk_quote:.2f} + new ${risk_quote:.2f} exceeds "
                f"{self._config.max_concurrent_risk_fraction:.0%} of ${state.balance:.2f}"
            )

        result = SizingResult(
            size_quote=size_quote,
            size_asset=size_asset,
            risk_quote=risk_quote,
            risk_fraction=breakdown.final_fraction,
            balance=state.balance,
            state_version=state.version,
            breakdown=breakdown,
        )

        self._logger.debug(
            f"Position sized: balance=${state.balance:.2f} risk=${risk_quote:.2f} "
            f"({breakdown.final_fraction:.2%}) size=${size_quote:.2f} "
            f"asset={size_asset:.8f} confidence={confidence}"
        )
        self._publish(
            EventType.POSITION_SIZED,
            {
                "size_quote": size_quote,
                "size_asset": size_asset,
                "risk_quote": risk_quote,
                "risk_fraction": breakdown.final_fraction,
                "confidence": confidence,
            },
        )
        return result

    def can_add_position(
        self,
        open_risk_quote: float,
        new_risk_quote: float,
        state: Optional[SizerState] = None,
    ) -> bool:
        """True if open plus new risk stays within the concurrent-risk cap."""
        balance = (state or self.state).balance
        total = open_risk_quote + new_risk_quote
        limit = balance * self._config.max_concurrent_risk_fraction
        if total > limit:
            self._logger.warning(
                f"Max concurrent risk exceeded: open ${open_risk_quote:.2f} + "
                f"new ${new_risk_quote:.2f} = ${total:.2f} > ${limit:.2f}"
            )
            self._publish(
                EventType.EXPOSURE_LIMIT_EXCEEDED,
                {"open_risk": open_risk_quote, "new_risk": new_risk_quote, "limit": limit},
            )
            return False
        return True

    def on_position_closed(self, event: Dict[str, Any]) -> None:
        """EventHub subscriber feeding closed trades into the statistics."""
        self.record_trade_result(float(event["net_pnl"]), float(event["net_pnl_percent"]))

    def attach(self, event_hub: EventHub) -> None:
        """Subscribe to closed-trade events."""
        self._event_hub = event_hub
        event_hub.subscribe(EventType.POSITION_CLOSED, self.on_position_closed)

    def get_summary(self) -> Dict[str, Any]:
        state = self.state
        kelly = self.calculate_kelly_fraction(state)
        return {
            "balance": state.balance,
            "win_rate": state.win_rate,
            "total_trades": state.total_trades,
            "winning_trades": state.winning_trades,
            "losing_trades": state.losing_trades,
            "avg_win_pct": state.avg_win_pct,
            "avg_loss_pct": state.avg_loss_pct,
            "kelly_fraction": kelly,
            "version": state.version,
            "capital_mode": self._config.capital_mode,
        }

    def _publish(self, event_type: str, data: Dict[str, Any]) -> None:
        if self._event_hub is not None:
            self._event_hub.publish(event_type, data)


class BalanceSynchronizer:
    """Pulls the live free quote balance into the sizer (unlimited capital mode)."""

    def __init__(
        self,
        sizer: DynamicPositionSizer,
        exchange_client: Any,
        quote_asset: str = "USDT",
        retry_executor: Optional[RetryExecutor] = None,
    ) -> None:
        self._sizer = sizer
        self._exchange_client = exchange_client
        self._quote_asset = quote_asset
        self._executor = retry_executor or RetryExecutor(create_exchange_retry_policy())
        self._logger = get_module_logger("balance_sync")

    def sync(self) -> float:
        """
        Read the exchange balance and publish it to the sizer.

        Returns:
            float: The balance now used for sizing

        Raises:
            BalanceSyncError: If the balance could not be read
        """
        outcome = self._executor.execute_sync(
            self._exchange_client.get_free_balance, self._quote_asset
        )
        if not outcome.succeeded:
            self._logger.error(f"Balance sync failed after {outcome.attempts} attempts: {outcome.error}")
            raise BalanceSyncError(f"Could not read {self._quote_asset} balance: {outcome.error}")

        balance = float(outcome.value)
        self._sizer.update_balance(balance, source="exchange")
        return balance


def create_position_sizer(
    sizer_config: Dict[str, Any],
    capital_mode: str = "fixed",
    event_hub: Optional[EventHub] = None,
) -> DynamicPositionSizer:
    """
    Factory building the sizer from ``ConfigManager.get_sizer_config()``.

    Raises:
        InvalidPositionSizingConfigError: If the configuration is invalid
    """
    config = DynamicSizingConfig(
        kelly_damping=float(sizer_config["kelly_damping"]),
        kelly_min_trades=int(sizer_config["kelly_min_trades"]),
        default_risk_fraction=float(sizer_config["default_risk_fraction"]),
        min_risk_fraction=float(sizer_config["min_risk_fraction"]),
        max_risk_fraction=float(sizer_config["max_risk_fraction"]),
        min_confidence=float(sizer_config["min_confidence"]),
        max_confidence=float(sizer_config["max_confidence"]),
        max_concurrent_risk_fraction=float(sizer_config["max_concurrent_risk_fraction"]),
        capital_mode=capital_mode,
    )
    state = SizerState(balance=float(sizer_config["initial_balance"]))
    return DynamicPositionSizer(config, state, event_hub)
