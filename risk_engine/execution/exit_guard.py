"""
Exit execution guard: the single write path that ends a position.

One close attempt per position at a time, serialized by an advisory lease.
Sells go out as immediate-or-cancel orders at no less than the net-positive
floor, every close is recomputed from the actual fill, and a profit-protection
exit that turns out net negative is rejected instead of being booked.
Deferred and rejected attempts leave the position open.

Order price and quantity are aligned to the symbol's tick and lot step
before sending. Each close uses one client order id across retries; a retry
after a timeout first asks the exchange whether the earlier send landed.
"""

import asyncio
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Union

from risk_engine.accounting.fee_schedule import FeeSchedule
from risk_engine.accounting.pnl_calculator import (
    AccountingError,
    PnLBreakdown,
    UnsupportedFeeAssetError,
    calculate_trade_pnl,
    compute_min_exit_price,
    normalize_fee_to_quote,
    project_exit_fee,
)
from risk_engine.core.event_hub import EventHub, EventType
from risk_engine.core.locks import LockLease, PositionLockRegistry
from risk_engine.core.logger import get_module_logger, get_position_logger
from risk_engine.core.retry import RetryExecutor, RetryStatus
from risk_engine.execution.exchange_client import (
    ExchangeError,
    ExchangeFatalError,
    ExchangeOrderRejectedError,
    ExchangeTransientError,
    ExchangeUnavailableError,
    IExchangeClient,
    OrderFill,
    SymbolFilters,
)
from risk_engine.market_data.price_feed import IPriceFeed, PriceFeedError
from risk_engine.models.position import (
    ClosedTrade,
    ExitReason,
    ExitTrigger,
    InvalidPositionError,
    Numeric,
    Position,
    to_decimal,
    utc_now,
)
from risk_engine.storage.trade_ledger import ITradeLedger


# Exits that exist to realize a loss; the net-positive floor would block them.
LOSS_ACCEPTING_REASONS: FrozenSet[ExitReason] = frozenset(
    {
        ExitReason.UNDERWATER_NEVER_PROFITED,
        ExitReason.UNDERWATER_PROFITABLE_COLLAPSE,
        ExitReason.UNDERWATER_SMALL_PEAK_TIMEOUT,
        ExitReason.STOP_LOSS,
        ExitReason.EMERGENCY_CLOSE,
    }
)


class CloseOutcome(Enum):
    CLOSED = "closed"
    DEFERRED = "deferred"
    REJECTED = "rejected"


class ErrorCategory(Enum):
    """Failure classes of a close attempt."""

    VALIDATION = "validation"
    STALENESS = "staleness"
    RACE_ABORT = "race_abort"
    EXCHANGE_TRANSIENT = "exchange_transient"
    EXCHANGE_FATAL = "exchange_fatal"
    EXCHANGE_UNAVAILABLE = "exchange_unavailable"
    EXHAUSTION = "exhaustion"


class CloseReason(Enum):
    """Why a close attempt did not complete."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    LOCK_CONTENDED = "lock_contended"
    LOCK_LOST = "lock_lost"
    STALE_PRICE = "stale_price"
    PRICE_UNAVAILABLE = "price_unavailable"
    NO_FILL = "no_fill"
    RETRY_EXHAUSTED = "retry_exhausted"
    PROFIT_PROTECTION_NEGATIVE = "profit_protection_negative"
    ORDER_REJECTED = "order_rejected"
    ORDER_FAILED = "order_failed"
    SYMBOL_RULES_UNAVAILABLE = "symbol_rules_unavailable"


@dataclass
class ExitIntent:
    """
    Request to close a position.

    Attributes:
        bot_id: Bot instance asking for the close; must own the position
        reason: Exit reason (enum or its string value)
        trigger: Manual, automatic or protective
        requested_price: Price the decision was made at; the live quote is
            used when omitted
    """

    bot_id: str
    reason: Union[ExitReason, str]
    trigger: ExitTrigger = ExitTrigger.MANUAL
    requested_price: Optional[Numeric] = None


@dataclass(frozen=True)
class CloseResult:
    """
    Typed result of ``close_position``.

    ``success`` is True only for CLOSED; deferred and rejected results carry a
    reason and an error category instead of P&L.
    """

    outcome: CloseOutcome
    position_id: str
    reason: Optional[CloseReason] = None
    category: Optional[ErrorCategory] = None
    message: str = ""
    net_pnl: Optional[Decimal] = None
    net_pnl_percent: Optional[Decimal] = None
    exit_price: Optional[Decimal] = None
    exit_fee: Optional[Decimal] = None
    closed_trade: Optional[ClosedTrade] = None
    needs_reconciliation: bool = False

    @property
    def success(self) -> bool:
        return self.outcome == CloseOutcome.CLOSED

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"outcome": self.outcome.value, "position_id": self.position_id}
        if self.success:
            result.update(
                success=True,
                net_pnl=str(self.net_pnl),
                net_pnl_percent=str(self.net_pnl_percent),
                needs_reconciliation=self.needs_reconciliation,
            )
        else:
            result.update(
                success=False,
                reason=self.reason.value if self.reason else None,
                category=self.category.value if self.category else None,
                message=self.message,
            )
        return result


@dataclass(frozen=True)
class ExitGuardConfig:
    """Guard tunables.

    Attributes:
        price_max_age_seconds: Oldest quote the floor may be computed from
        lock_ttl_seconds: Lease lifetime
        lock_wait_seconds: How long to wait for a contended lease
        exit_floor_buffer_pct: Margin added on top of the break-even floor
        quote_asset: Quote currency used to normalize exchange fees
    """

    price_max_age_seconds: float = 30.0
    lock_ttl_seconds: float = 30.0
    lock_wait_seconds: float = 2.0
    exit_floor_buffer_pct: float = 0.001
    quote_asset: str = "USDT"

    def __post_init__(self) -> None:
        if self.price_max_age_seconds <= 0:
            raise ValueError("price_max_age_seconds must be positive")
        if self.lock_ttl_seconds <= 0:
            raise ValueError("lock_ttl_seconds must be positive")
        if self.lock_wait_seconds < 0:
            raise ValueError("lock_wait_seconds cannot be negative")
        if self.exit_floor_buffer_pct < 0:
            raise ValueError("exit_floor_buffer_pct cannot be negative")


@dataclass(frozen=True)
class _Execution:
    exit_price: Decimal
    exit_fee: Decimal
    needs_reconciliation: bool
    order_id: Optional[str] = None


class _OrderSubmission:
    """
    One IOC sell under a fixed client order id.

    After a transient failure the order may or may not have reached the
    exchange, so the next attempt looks it up first and only sends again
    once the exchange reports it unknown.
    """

    def __init__(
        self, exchange: IExchangeClient, pair: str, quantity: Decimal, price: Decimal
    ) -> None:
        self._exchange = exchange
        self.pair = pair
        self.quantity = quantity
        self.price = price
        self.client_order_id = f"exit-{uuid.uuid4().hex[:24]}"
        self.sends = 0
        self.in_doubt = False

    def __call__(self) -> OrderFill:
        if self.in_doubt:
            existing = self._exchange.get_order(self.pair, self.client_order_id)
            if existing is not None:
                self.in_doubt = False
                return existing

        self.sends += 1
        try:
            fill = self._exchange.place_order(
                self.pair,
                "SELL",
                self.quantity,
                self.price,
                "IOC",
                client_order_id=self.client_order_id,
            )
        except (ExchangeTransientError, TimeoutError):
            self.in_doubt = True
            raise
        self.in_doubt = False
        return fill


class ExitExecutionGuard:
    """Orchestrates guarded closes against the exchange and the ledger."""

    def __init__(
        self,
        ledger: ITradeLedger,
        exchange_client: IExchangeClient,
        price_feed: IPriceFeed,
        fee_schedule: FeeSchedule,
        lock_registry: PositionLockRegistry,
        retry_executor: RetryExecutor,
        tracker: Optional[Any] = None,
        event_hub: Optional[EventHub] = None,
        config: Optional[ExitGuardConfig] = None,
    ) -> None:
        """
        Initialize the guard.

        Args:
            ledger: Trade ledger with conditional close
            exchange_client: Order interface
            price_feed: Live quotes with timestamps
            fee_schedule: Taker fee resolution
            lock_registry: Per-position leases
            retry_executor: Executor carrying the exchange retry policy
            tracker: Peak tracker whose cache is cleared on close
            event_hub: Hub for close events
            config: Guard tunables
        """
        self._ledger = ledger
        self._exchange = exchange_client
        self._price_feed = price_feed
        self._fee_schedule = fee_schedule
        self._locks = lock_registry
        self._executor = retry_executor
        self._tracker = tracker
        self._event_hub = event_hub
        self._config = config or ExitGuardConfig()
        self._symbol_filters: Dict[str, SymbolFilters] = {}
        self._logger = get_module_logger("exit_guard")

    async def close_position(self, position_id: str, intent: ExitIntent) -> CloseResult:
        """
        Close a position under its lease.

        Args:
            position_id: Position to close
            intent: Who is closing, why, and at what price

        Returns:
            CloseResult: CLOSED with net figures, DEFERRED, or REJECTED
        """
        try:
            reason = ExitReason.parse(intent.reason)
            requested = self._requested_price(intent.requested_price)
            if not intent.bot_id:
                raise ValueError("bot_id is required")
        except (ValueError, InvalidPositionError) as e:
            return self._rejected(
                position_id, CloseReason.VALIDATION, ErrorCategory.VALIDATION, f"Invalid exit intent: {e}"
            )

        lease = await self._locks.acquire(
            position_id,
            ttl=self._config.lock_ttl_seconds,
            timeout=self._config.lock_wait_seconds,
        )
        if lease is None:
            return self._rejected(
                position_id,
                CloseReason.LOCK_CONTENDED,
                ErrorCategory.RACE_ABORT,
                "Another exit decision is in flight for this position",
            )

        try:
            return await self._close_locked(position_id, intent, reason, requested, lease)
        finally:
            self._locks.release(lease)

    async def _close_locked(
        self,
        position_id: str,
        intent: ExitIntent,
        reason: ExitReason,
        requested: Optional[Decimal],
        lease: LockLease,
    ) -> CloseResult:
        position = await asyncio.to_thread(self._ledger.get_position, position_id)
        if position is None or not position.is_open or position.bot_id != intent.bot_id:
            return self._rejected(
                position_id,
                CloseReason.NOT_FOUND,
                ErrorCategory.VALIDATION,
                "Open position not found for this bot",
            )

        log = get_position_logger("exit_guard", position_id, position.pair)

        try:
            quote = await asyncio.to_thread(self._price_feed.get_price, position.pair)
        except PriceFeedError as e:
            return self._deferred(position, CloseReason.PRICE_UNAVAILABLE, ErrorCategory.STALENESS, str(e))

        if quote.is_stale(self._config.price_max_age_seconds):
            return self._deferred(
                position,
                CloseReason.STALE_PRICE,
                ErrorCategory.STALENESS,
                f"Quote is {quote.age_seconds():.1f}s old "
                f"(limit {self._config.price_max_age_seconds}s)",
            )

        requested_price = requested if requested is not None else quote.price
        taker = await asyncio.to_thread(self._fee_schedule.get_taker_rate, position.pair)

        try:
            filters = await asyncio.to_thread(self._filters_for, position.pair)
        except ExchangeOrderRejectedError as e:
            return self._rejected(
                position_id, CloseReason.ORDER_REJECTED, ErrorCategory.VALIDATION, str(e), pair=position.pair
            )
        except ExchangeError as e:
            return self._deferred(
                position,
                CloseReason.SYMBOL_RULES_UNAVAILABLE,
                ErrorCategory.EXCHANGE_UNAVAILABLE,
                f"Trading rules for {position.pair} unavailable: {e}",
            )

        if reason in LOSS_ACCEPTING_REASONS:
            order_price = filters.price_down(requested_price)
        else:
            floor = compute_min_exit_price(
                position.entry_price,
                position.entry_fee,
                position.quantity,
                taker.rate,
                Decimal(str(self._config.exit_floor_buffer_pct)),
            )
            # Rounding up keeps the tick-aligned price on or above the floor.
            order_price = filters.price_up(max(requested_price, floor))
            log.debug(f"Exit floor {floor} ({taker.source.value} taker {taker.rate}), order at {order_price}")

        order_qty = filters.quantity_down(position.quantity)
        if order_qty != position.quantity:
            log.warning(f"Quantity {position.quantity} trimmed to lot step: selling {order_qty}")
        try:
            filters.check_order(order_qty, order_price)
        except ExchangeOrderRejectedError as e:
            return self._rejected(
                position_id, CloseReason.ORDER_REJECTED, ErrorCategory.VALIDATION, str(e), pair=position.pair
            )

        submission = _OrderSubmission(self._exchange, position.pair, order_qty, order_price)
        outcome = await self._executor.execute_async(submission)

        if outcome.status == RetryStatus.SUCCEEDED:
            fill: OrderFill = outcome.value
            if not fill.filled or fill.avg_price is None:
                log.warning(f"IOC sell at {order_price} not filled (status {fill.status}); close deferred")
                return self._deferred(
                    position,
                    CloseReason.NO_FILL,
                    ErrorCategory.EXCHANGE_TRANSIENT,
                    f"Best bid below exit price {order_price}; close deferred",
                )
            execution = self._execution_from_fill(position, fill, order_qty, taker.rate, log)
        elif outcome.status == RetryStatus.EXHAUSTED:
            if submission.in_doubt:
                log.error(
                    f"Order {submission.client_order_id} state unknown after "
                    f"{outcome.attempts} attempts; flagging for reconciliation"
                )
                self._publish(
                    EventType.RECONCILIATION_REQUIRED,
                    {
                        "position_id": position_id,
                        "pair": position.pair,
                        "client_order_id": submission.client_order_id,
                        "reason": "order_state_unknown",
                    },
                )
            return self._deferred(
                position,
                CloseReason.RETRY_EXHAUSTED,
                ErrorCategory.EXHAUSTION,
                f"Exchange retries exhausted after {outcome.attempts} attempts: {outcome.error}",
                needs_reconciliation=submission.in_doubt,
            )
        elif isinstance(outcome.error, ExchangeOrderRejectedError):
            return self._rejected(
                position_id,
                CloseReason.ORDER_REJECTED,
                ErrorCategory.VALIDATION,
                f"Exchange refused the order: {outcome.error}",
                pair=position.pair,
            )
        elif isinstance(outcome.error, (ExchangeFatalError, ExchangeUnavailableError)):
            # Fatal rejection or outage: book the close with the requested
            # numbers and flag it for manual reconciliation.
            category = (
                ErrorCategory.EXCHANGE_UNAVAILABLE
                if isinstance(outcome.error, ExchangeUnavailableError)
                else ErrorCategory.EXCHANGE_FATAL
            )
            log.error(
                f"Exchange order failed ({category.value}): {outcome.error}; "
                "finalizing close for reconciliation"
            )
            execution = _Execution(
                exit_price=requested_price,
                exit_fee=project_exit_fee(requested_price, position.quantity, taker.rate),
                needs_reconciliation=True,
            )
        else:
            log.error(
                f"Unclassified failure placing order {submission.client_order_id}: "
                f"{outcome.error!r}; position stays open"
            )
            self._publish(
                EventType.RECONCILIATION_REQUIRED,
                {
                    "position_id": position_id,
                    "pair": position.pair,
                    "client_order_id": submission.client_order_id,
                    "reason": "order_failed",
                },
            )
            return self._rejected(
                position_id,
                CloseReason.ORDER_FAILED,
                ErrorCategory.EXCHANGE_FATAL,
                f"Order placement failed: {outcome.error!r}",
                pair=position.pair,
            )

        pnl = calculate_trade_pnl(
            position.entry_price,
            execution.exit_price,
            position.quantity,
            position.entry_fee,
            execution.exit_fee,
        )

        if reason.is_profit_protection and pnl.net_pnl_percent < 0:
            log.error(
                f"{reason.value} exit recomputed at {pnl.net_pnl_percent:.4f}% net "
                f"(fill {execution.exit_price}); rejecting, position stays open"
            )
            self._flag_filled_but_open(position, execution, reason, "profit_protection_negative")
            return self._rejected(
                position_id,
                CloseReason.PROFIT_PROTECTION_NEGATIVE,
                ErrorCategory.RACE_ABORT,
                f"{reason.value} only applies to net non-negative results; "
                f"recomputed {pnl.net_pnl_percent:.4f}%",
                pair=position.pair,
            )

        if not self._locks.is_held(lease):
            log.error("Lease lost before ledger close; abandoning")
            self._flag_filled_but_open(position, execution, reason, "lock_lost")
            return self._rejected(
                position_id,
                CloseReason.LOCK_LOST,
                ErrorCategory.RACE_ABORT,
                "Position lease expired before the close could be committed",
                pair=position.pair,
            )

        closed_trade = ClosedTrade(
            position_id=position_id,
            bot_id=position.bot_id,
            pair=position.pair,
            entry_price=position.entry_price,
            exit_price=execution.exit_price,
            quantity=position.quantity,
            entry_fee=position.entry_fee,
            exit_fee=execution.exit_fee,
            net_pnl=pnl.net_pnl,
            net_pnl_percent=pnl.net_pnl_percent,
            exit_reason=reason,
            exit_trigger=intent.trigger,
            exit_time=utc_now(),
            needs_reconciliation=execution.needs_reconciliation,
        )

        closed = await asyncio.to_thread(
            self._ledger.close_position, position_id, position.bot_id, closed_trade
        )
        if not closed:
            log.warning("Conditional close matched no open row; another close won")
            return self._rejected(
                position_id,
                CloseReason.NOT_FOUND,
                ErrorCategory.RACE_ABORT,
                "Position was closed concurrently",
                pair=position.pair,
            )

        if self._tracker is not None:
            self._tracker.clear(position_id)

        log.info(
            f"Closed ({reason.value}/{intent.trigger.value}) at {execution.exit_price}: "
            f"net {pnl.net_pnl:.4f} ({pnl.net_pnl_percent:.4f}%), fees {pnl.total_fees:.4f}"
            + (" [needs reconciliation]" if execution.needs_reconciliation else "")
        )
        self._publish_closed(closed_trade, pnl)
        if execution.needs_reconciliation:
            self._publish(
                EventType.RECONCILIATION_REQUIRED,
                {"position_id": position_id, "pair": position.pair, "reason": "exchange_failure"},
            )

        return CloseResult(
            outcome=CloseOutcome.CLOSED,
            position_id=position_id,
            net_pnl=pnl.net_pnl,
            net_pnl_percent=pnl.net_pnl_percent,
            exit_price=execution.exit_price,
            exit_fee=execution.exit_fee,
            closed_trade=closed_trade,
            needs_reconciliation=execution.needs_reconciliation,
        )

    def _filters_for(self, pair: str) -> SymbolFilters:
        filters = self._symbol_filters.get(pair)
        if filters is None:
            filters = self._exchange.get_symbol_filters(pair)
            self._symbol_filters[pair] = filters
        return filters

    def _execution_from_fill(
        self,
        position: Position,
        fill: OrderFill,
        order_qty: Decimal,
        taker_rate: Decimal,
        log: Any,
    ) -> _Execution:
        exit_price = fill.avg_price
        needs_reconciliation = fill.executed_qty < order_qty
        if needs_reconciliation:
            log.warning(
                f"Partial fill {fill.executed_qty}/{order_qty}; booking full close "
                "and flagging for reconciliation"
            )

        exit_fee: Optional[Decimal] = None
        if fill.fee > 0:
            base_asset = self._base_asset(position.pair)
            try:
                exit_fee = normalize_fee_to_quote(
                    fill.fee, fill.fee_asset, base_asset, self._config.quote_asset, exit_price
                )
            except UnsupportedFeeAssetError as e:
                log.warning(f"{e}; using projected taker fee")
            except AccountingError as e:
                log.warning(f"Unusable exchange fee {fill.fee}: {e}; using projected taker fee")
        if exit_fee is None:
            exit_fee = project_exit_fee(exit_price, position.quantity, taker_rate)

        return _Execution(
            exit_price=exit_price,
            exit_fee=exit_fee,
            needs_reconciliation=needs_reconciliation,
            order_id=fill.order_id,
        )

    def _base_asset(self, pair: str) -> str:
        quote = self._config.quote_asset.upper()
        symbol = pair.upper().replace("/", "")
        return symbol[: -len(quote)] if symbol.endswith(quote) else symbol

    def _flag_filled_but_open(
        self, position: Position, execution: _Execution, reason: ExitReason, cause: str
    ) -> None:
        if execution.order_id is None:
            return
        self._publish(
            EventType.RECONCILIATION_REQUIRED,
            {
                "position_id": position.position_id,
                "pair": position.pair,
                "order_id": execution.order_id,
                "exit_price": str(execution.exit_price),
                "exit_reason": reason.value,
                "reason": cause,
            },
        )

    @staticmethod
    def _requested_price(value: Optional[Numeric]) -> Optional[Decimal]:
        if value is None:
            return None
        price = to_decimal(value, "requested_price")
        if price <= 0:
            raise ValueError(f"requested_price must be positive, got {value}")
        return price

    def _deferred(
        self,
        position: Position,
        reason: CloseReason,
        category: ErrorCategory,
        message: str,
        needs_reconciliation: bool = False,
    ) -> CloseResult:
        self._logger.info(f"Close of {position.position_id} deferred ({reason.value}): {message}")
        self._publish(
            EventType.CLOSE_DEFERRED,
            {"position_id": position.position_id, "pair": position.pair, "reason": reason.value},
        )
        return CloseResult(
            outcome=CloseOutcome.DEFERRED,
            position_id=position.position_id,
            reason=reason,
            category=category,
            message=message,
            needs_reconciliation=needs_reconciliation,
        )

    def _rejected(
        self,
        position_id: str,
        reason: CloseReason,
        category: ErrorCategory,
        message: str,
        pair: Optional[str] = None,
    ) -> CloseResult:
        self._logger.warning(f"Close of {position_id} rejected ({reason.value}): {message}")
        self._publish(
            EventType.CLOSE_REJECTED,
            {"position_id": position_id, "pair": pair, "reason": reason.value, "category": category.value},
        )
        return CloseResult(
            outcome=CloseOutcome.REJECTED,
            position_id=position_id,
            reason=reason,
            category=category,
            message=message,
        )

    def _publish_closed(self, trade: ClosedTrade, pnl: PnLBreakdown) -> None:
        self._publish(
            EventType.POSITION_CLOSED,
            {
                "position_id": trade.position_id,
                "bot_id": trade.bot_id,
                "pair": trade.pair,
                "exit_reason": trade.exit_reason.value,
                "exit_price": float(trade.exit_price),
                "net_pnl": float(pnl.net_pnl),
                "net_pnl_percent": float(pnl.net_pnl_percent),
                "total_fees": float(pnl.total_fees),
                "needs_reconciliation": trade.needs_reconciliation,
            },
        )

    def _publish(self, event_type: str, data: Dict[str, Any]) -> None:
        if self._event_hub is not None:
            self._event_hub.publish(event_type, data)


def create_exit_guard(
    guard_config: Dict[str, Any],
    ledger: ITradeLedger,
    exchange_client: IExchangeClient,
    price_feed: IPriceFeed,
    tracker: Optional[Any] = None,
    event_hub: Optional[EventHub] = None,
    quote_asset: str = "USDT",
) -> ExitExecutionGuard:
    """
    Factory wiring a guard from ``ConfigManager.get_guard_config()``.
    """
    from risk_engine.core.retry import create_exchange_retry_policy
    from risk_engine.execution.exchange_client import is_retryable_exchange_error

    policy = create_exchange_retry_policy(
        max_retries=int(guard_config["exchange_max_retries"]),
        base_delay=float(guard_config["exchange_retry_base_delay"]),
        max_delay=float(guard_config["exchange_retry_max_delay"]),
        is_retryable=is_retryable_exchange_error,
    )
    return ExitExecutionGuard(
        ledger=ledger,
        exchange_client=exchange_client,
        price_feed=price_feed,
        fee_schedule=FeeSchedule(
            exchange_client,
            default_rate=guard_config["default_taker_fee"],
            cache_ttl_seconds=float(guard_config["fee_cache_ttl_seconds"]),
        ),
        lock_registry=PositionLockRegistry(default_ttl=float(guard_config["lock_ttl_seconds"])),
        retry_executor=RetryExecutor(policy),
        tracker=tracker,
        event_hub=event_hub,
        config=ExitGuardConfig(
            price_max_age_seconds=float(guard_config["price_max_age_seconds"]),
            lock_ttl_seconds=float(guard_config["lock_ttl_seconds"]),
            lock_wait_seconds=float(guard_config["lock_wait_seconds"]),
            exit_floor_buffer_pct=float(guard_config["exit_floor_buffer_pct"]),
            quote_asset=quote_asset,
        ),
    )
