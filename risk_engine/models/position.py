"""
Position and closed-trade records.

Monetary amounts are ``Decimal`` in quote currency. Profit figures are floats
in percent units, so 2.5 means 2.5%.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Union


Numeric = Union[Decimal, int, float, str]


class PositionError(Exception):
    """Base exception for position-related errors."""


class InvalidPositionError(PositionError):
    """Exception raised when position data is invalid."""


def to_decimal(value: Numeric, name: str = "value") -> Decimal:
    """
    Convert a numeric input to Decimal.

    Floats go through ``str`` so 0.1 becomes Decimal("0.1") rather than its
    binary expansion.

    Raises:
        InvalidPositionError: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise InvalidPositionError(f"{name} must be numeric, got bool")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise InvalidPositionError(f"{name} must be numeric, got {value!r}") from e
    if not result.is_finite():
        raise InvalidPositionError(f"{name} must be finite, got {value!r}")
    return result


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Regime(Enum):
    """Market regime label fixed on a position at entry."""

    CHOPPY = "choppy"
    WEAK = "weak"
    MODERATE = "moderate"
    STRONG = "strong"

    @classmethod
    def parse(cls, label: Union[str, "Regime"]) -> "Regime":
        """Parse a label case-insensitively. Unknown labels raise ValueError."""
        if isinstance(label, Regime):
            return label
        return cls(str(label).strip().lower())


class PositionStatus(Enum):
    """Position status enumeration."""

    OPEN = "open"
    CLOSED = "closed"


class ExitTrigger(Enum):
    """Who asked for the exit."""

    MANUAL = "manual"
    AUTOMATIC = "automatic"
    PROTECTIVE = "protective"


class ExitReason(Enum):
    """Enumerated exit reasons stored on a closed trade."""

    EROSION_CAP_EXCEEDED = "erosion_cap_exceeded"
    EROSION_CAP_PROTECTED = "erosion_cap_protected"
    EROSION_CAP = "erosion_cap"
    EROSION_FULL_GIVEBACK = "erosion_full_giveback"
    GREEN_TO_RED = "green_to_red"
    PROFIT_TARGET = "profit_target"
    PROFIT_LOCK_REGIME = "profit_lock_regime"
    BREAKEVEN_PROTECTION = "breakeven_protection"
    UNDERWATER_NEVER_PROFITED = "underwater_never_profited"
    UNDERWATER_PROFITABLE_COLLAPSE = "underwater_profitable_collapse"
    UNDERWATER_SMALL_PEAK_TIMEOUT = "underwater_small_peak_timeout"
    STOP_LOSS = "stop_loss"
    MANUAL_CLOSE = "manual_close"
    EMERGENCY_CLOSE = "emergency_close"

    @classmethod
    def parse(cls, reason: Union[str, "ExitReason"]) -> "ExitReason":
        """
        Parse a reason string, folding the legacy profit-lock alias.

        Raises:
            ValueError: If the reason is unknown
        """
        if isinstance(reason, ExitReason):
            return reason
        label = str(reason).strip().lower()
        return cls(LEGACY_REASON_ALIASES.get(label, label))

    @property
    def is_profit_protection(self) -> bool:
        """Profit-protection exits are only valid at a net non-negative result."""
        return self in PROFIT_PROTECTION_REASONS


LEGACY_REASON_ALIASES: Dict[str, str] = {
    "erosion_cap_profit_lock": ExitReason.EROSION_CAP_PROTECTED.value,
}

PROFIT_PROTECTION_REASONS: FrozenSet[ExitReason] = frozenset(
    {
        ExitReason.EROSION_CAP_EXCEEDED,
        ExitReason.EROSION_CAP_PROTECTED,
        ExitReason.EROSION_CAP,
        ExitReason.EROSION_FULL_GIVEBACK,
        ExitReason.GREEN_TO_RED,
        ExitReason.PROFIT_TARGET,
        ExitReason.PROFIT_LOCK_REGIME,
        ExitReason.BREAKEVEN_PROTECTION,
    }
)


@dataclass
class Position:
    """Open trade owned by one bot instance.

    Only the peak tracker mutates the peak fields and only the exit guard
    closes the record.

    Attributes:
        position_id: Unique identifier
        bot_id: Owning bot instance
        pair: Trading pair symbol (e.g. 'BTCUSDT')
        entry_price: Fill price at entry
        quantity: Base-asset quantity held
        entry_fee: Entry fee in quote currency
        entry_time: Entry timestamp (timezone-aware UTC)
        regime: Market regime at entry, fixed for the position's lifetime
        status: Open or closed
        current_profit_pct: Last observed net profit percent
        peak_profit_pct: Highest positive profit percent seen, 0 if never green
        peak_recorded_at: When the peak was recorded
        underwater_threshold_pct: Loss threshold for the underwater policy
        underwater_min_dwell_minutes: Minimum age before an underwater exit
    """

    position_id: str
    bot_id: str
    pair: str
    entry_price: Decimal
    quantity: Decimal
    entry_fee: Decimal = Decimal("0")
    entry_time: datetime = field(default_factory=utc_now)
    regime: Regime = Regime.MODERATE
    status: PositionStatus = PositionStatus.OPEN
    current_profit_pct: float = 0.0
    peak_profit_pct: float = 0.0
    peak_recorded_at: Optional[datetime] = None
    underwater_threshold_pct: Optional[float] = None
    underwater_min_dwell_minutes: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.position_id:
            raise InvalidPositionError("Position id cannot be empty")
        if not self.bot_id:
            raise InvalidPositionError("Bot id cannot be empty")
        if not self.pair:
            raise InvalidPositionError("Pair cannot be empty")

        self.entry_price = to_decimal(self.entry_price, "entry_price")
        self.quantity = to_decimal(self.quantity, "quantity")
        self.entry_fee = to_decimal(self.entry_fee, "entry_fee")
        if self.entry_price <= 0:
            raise InvalidPositionError("Entry price must be positive")
        if self.quantity <= 0:
            raise InvalidPositionError("Quantity must be positive")
        if self.entry_fee < 0:
            raise InvalidPositionError("Entry fee cannot be negative")

        self.regime = Regime.parse(self.regime)
        if self.entry_time.tzinfo is None:
            self.entry_time = self.entry_time.replace(tzinfo=timezone.utc)
        if self.peak_profit_pct < 0:
            self.peak_profit_pct = 0.0
        if self.underwater_threshold_pct is not None and self.underwater_threshold_pct >= 0:
            raise InvalidPositionError("Underwater threshold must be negative")

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    @property
    def cost_basis(self) -> Decimal:
        return self.entry_price * self.quantity

    def age_minutes(self, now: Optional[datetime] = None) -> float:
        """Minutes since entry. Negative when entry_time lies in the future."""
        reference = now or utc_now()
        return (reference - self.entry_time).total_seconds() / 60.0

    def copy(self) -> "Position":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "bot_id": self.bot_id,
            "pair": self.pair,
            "entry_price": str(self.entry_price),
            "quantity": str(self.quantity),
            "entry_fee": str(self.entry_fee),
            "entry_time": self.entry_time.isoformat(),
            "regime": self.regime.value,
            "status": self.status.value,
            "current_profit_pct": self.current_profit_pct,
            "peak_profit_pct": self.peak_profit_pct,
            "peak_recorded_at": (
                self.peak_recorded_at.isoformat() if self.peak_recorded_at else None
            ),
        }


@dataclass(frozen=True)
class ClosedTrade:
    """Immutable record of a finished position.

    Written once per position. The ``archived`` flag is the only field ever
    changed afterwards, by replacing the record.
    """

    position_id: str
    bot_id: str
    pair: str
    entry_price: Decimal
    exit_price: Decimal
    quantity: Decimal
    entry_fee: Decimal
    exit_fee: Decimal
    net_pnl: Decimal
    net_pnl_percent: Decimal
    exit_reason: ExitReason
    exit_trigger: ExitTrigger = ExitTrigger.MANUAL
    exit_time: datetime = field(default_factory=utc_now)
    needs_reconciliation: bool = False
    archived: bool = False

    @property
    def total_fees(self) -> Decimal:
        return self.entry_fee + self.exit_fee

    @property
    def gross_pnl(self) -> Decimal:
        return (self.exit_price - self.entry_price) * self.quantity

    def archive(self) -> "ClosedTrade":
        return replace(self, archived=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "bot_id": self.bot_id,
            "pair": self.pair,
            "entry_price": str(self.entry_price),
            "exit_price": str(self.exit_price),
            "quantity": str(self.quantity),
            "entry_fee": str(self.entry_fee),
            "exit_fee": str(self.exit_fee),
            "total_fees": str(self.total_fees),
            "net_pnl": str(self.net_pnl),
            "net_pnl_percent": str(self.net_pnl_percent),
            "exit_reason": self.exit_reason.value,
            "exit_trigger": self.exit_trigger.value,
            "exit_time": self.exit_time.isoformat(),
            "needs_reconciliation": self.needs_reconciliation,
            "archived": self.archived,
        }
