"""
Fee-aware P&L arithmetic.

Every function here is pure and validates its inputs before computing
anything. Net figures always deduct both the entry and the exit fee exactly
once.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from risk_engine.models.position import InvalidPositionError, Numeric, to_decimal


HUNDRED = Decimal("100")
DEFAULT_EXIT_BUFFER_PCT = Decimal("0.001")


class AccountingError(Exception):
    """Base exception for accounting errors."""


class InvalidTradeInputError(AccountingError):
    """Raised for non-positive prices or quantities, or negative fees."""


class UnsupportedFeeAssetError(AccountingError):
    """Raised when a fee is charged in an asset that cannot be priced."""


@dataclass(frozen=True)
class PnLBreakdown:
    """Gross and net result of one round trip."""

    gross_pnl: Decimal
    total_fees: Decimal
    net_pnl: Decimal
    net_pnl_percent: Decimal

    @property
    def is_net_negative(self) -> bool:
        return self.net_pnl_percent < 0


def _positive(value: Numeric, name: str) -> Decimal:
    result = _decimal(value, name)
    if result <= 0:
        raise InvalidTradeInputError(f"{name} must be positive, got {value}")
    return result


def _non_negative(value: Numeric, name: str) -> Decimal:
    result = _decimal(value, name)
    if result < 0:
        raise InvalidTradeInputError(f"{name} cannot be negative, got {value}")
    return result


def _decimal(value: Numeric, name: str) -> Decimal:
    try:
        return to_decimal(value, name)
    except InvalidPositionError as e:
        raise InvalidTradeInputError(str(e)) from e


def _taker_rate(rate: Numeric) -> Decimal:
    result = _decimal(rate, "taker_rate")
    if result < 0 or result >= 1:
        raise InvalidTradeInputError(f"taker_rate must be in [0, 1), got {rate}")
    return result


def calculate_net_pnl(
    entry_price: Numeric,
    exit_price: Numeric,
    quantity: Numeric,
    entry_fee: Numeric,
    exit_fee: Numeric,
) -> Decimal:
    """
    Net profit in quote currency.

    Args:
        entry_price: Entry fill price
        exit_price: Exit fill price
        quantity: Base-asset quantity
        entry_fee: Entry fee in quote currency
        exit_fee: Exit fee in quote currency

    Returns:
        Decimal: ``(exit - entry) * qty - (entry_fee + exit_fee)``

    Raises:
        InvalidTradeInputError: On non-positive price/quantity or negative fee
    """
    entry = _positive(entry_price, "entry_price")
    exit_ = _positive(exit_price, "exit_price")
    qty = _positive(quantity, "quantity")
    fees = _non_negative(entry_fee, "entry_fee") + _non_negative(exit_fee, "exit_fee")
    return (exit_ - entry) * qty - fees


def calculate_net_pnl_percent(
    net_pnl: Numeric, entry_price: Numeric, quantity: Numeric
) -> Decimal:
    """
    Net profit as a percent of the cost basis.

    Raises:
        InvalidTradeInputError: On non-positive price or quantity
    """
    net = _decimal(net_pnl, "net_pnl")
    cost_basis = _positive(entry_price, "entry_price") * _positive(quantity, "quantity")
    return net / cost_basis * HUNDRED


def calculate_trade_pnl(
    entry_price: Numeric,
    exit_price: Numeric,
    quantity: Numeric,
    entry_fee: Numeric,
    exit_fee: Numeric,
) -> PnLBreakdown:
    """Gross, fee total, net and net percent for one round trip."""
    net = calculate_net_pnl(entry_price, exit_price, quantity, entry_fee, exit_fee)
    entry = _decimal(entry_price, "entry_price")
    qty = _decimal(quantity, "quantity")
    total_fees = _decimal(entry_fee, "entry_fee") + _decimal(exit_fee, "exit_fee")
    return PnLBreakdown(
        gross_pnl=(_decimal(exit_price, "exit_price") - entry) * qty,
        total_fees=total_fees,
        net_pnl=net,
        net_pnl_percent=calculate_net_pnl_percent(net, entry, qty),
    )


def project_exit_fee(
    exit_price: Numeric, quantity: Numeric, taker_rate: Numeric
) -> Decimal:
    """Taker fee in quote currency for selling ``quantity`` at ``exit_price``."""
    return (
        _positive(exit_price, "exit_price")
        * _positive(quantity, "quantity")
        * _taker_rate(taker_rate)
    )


def compute_min_exit_price(
    entry_price: Numeric,
    entry_fee: Numeric,
    quantity: Numeric,
    taker_rate: Numeric,
    buffer_pct: Numeric = DEFAULT_EXIT_BUFFER_PCT,
) -> Decimal:
    """
    Lowest sell price whose net result after both fees is non-negative.

    Solves ``P * q * (1 - t) >= E * q + entry_fee`` for P, then widens the
    result by ``buffer_pct`` to absorb rounding on the exchange side.

    Args:
        entry_price: Entry fill price
        entry_fee: Entry fee in quote currency
        quantity: Base-asset quantity
        taker_rate: Taker fee rate as a fraction (0.001 = 0.1%)
        buffer_pct: Extra margin as a fraction of the break-even price

    Returns:
        Decimal: The IOC floor price
    """
    entry = _positive(entry_price, "entry_price")
    qty = _positive(quantity, "quantity")
    fee = _non_negative(entry_fee, "entry_fee")
    rate = _taker_rate(taker_rate)
    buffer = _non_negative(buffer_pct, "buffer_pct")

    break_even = (entry * qty + fee) / (qty * (Decimal("1") - rate))
    return break_even * (Decimal("1") + buffer)


def normalize_fee_to_quote(
    fee: Numeric,
    fee_asset: Optional[str],
    base_asset: str,
    quote_asset: str,
    fill_price: Numeric,
) -> Decimal:
    """
    Express an exchange-reported fee in quote currency.

    A fee without an asset is taken to be in quote currency already.

    Raises:
        InvalidTradeInputError: On a negative fee or non-positive fill price
        UnsupportedFeeAssetError: If the fee asset is neither base nor quote
    """
    amount = _non_negative(fee, "fee")
    if not fee_asset or fee_asset.upper() == quote_asset.upper():
        return amount
    if fee_asset.upper() == base_asset.upper():
        return amount * _positive(fill_price, "fill_price")
    raise UnsupportedFeeAssetError(
        f"Fee charged in {fee_asset} cannot be priced against {base_asset}/{quote_asset}"
    )


def calculate_mark_to_market_pct(
    entry_price: Numeric,
    mark_price: Numeric,
    quantity: Numeric,
    entry_fee: Numeric,
    taker_rate: Numeric,
) -> float:
    """
    Current net profit percent if the position were sold at ``mark_price``.

    Deducts the entry fee and the projected taker exit fee, so this is the
    figure the peak tracker and underwater policy work from.
    """
    exit_fee = project_exit_fee(mark_price, quantity, taker_rate)
    net = calculate_net_pnl(entry_price, mark_price, quantity, entry_fee, exit_fee)
    return float(calculate_net_pnl_percent(net, entry_price, quantity))
