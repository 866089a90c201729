"""
Exchange order interface and its Binance implementation.

Wraps the python-binance Client and maps its failures onto the classes the
exit guard can act on: transient (retry within budget), order rejected (the
request itself was refused, nothing reached the book), fatal (never retry)
and unavailable (exchange unreachable or down). Anything the mapping does not
recognise stays a plain ``ExchangeError``.

Orders carry a client order id so a retried placement can first ask the
exchange whether the earlier attempt already landed.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_CEILING, ROUND_DOWN, ROUND_FLOOR, Decimal
from typing import Any, Dict, List, Optional

import requests
from binance.client import Client
from binance.exceptions import BinanceAPIException, BinanceRequestException

from risk_engine.core.config_manager import ConfigManager
from risk_engine.core.logger import get_module_logger
from risk_engine.market_data.price_feed import IPriceFeed
from risk_engine.models.position import Numeric, to_decimal


# Rate limits and request timeouts from the exchange.
TRANSIENT_ERROR_CODES = frozenset({-1003, -1007, -1015})
# Exchange-side internal errors; treated as an outage.
UNAVAILABLE_ERROR_CODES = frozenset({-1001, -1016})
# Malformed or filter-violating requests (-1013 filter failure, -1111 precision).
ORDER_REJECTION_CODES = frozenset({-1013, -1100, -1101, -1102, -1104, -1106, -1111, -1121})
UNKNOWN_ORDER_CODE = -2013

DEFAULT_REQUEST_TIMEOUT = 10.0
MIXED_FEE_ASSET = "MIXED"
ORDER_SIDES = ("BUY", "SELL")
TIME_IN_FORCE = ("GTC", "IOC", "FOK")


class ExchangeError(Exception):
    """Base exception for exchange errors."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class ExchangeTransientError(ExchangeError):
    """Network hiccup or rate limit; safe to retry."""


class ExchangeFatalError(ExchangeError):
    """Validation, balance or auth rejection; retrying will not help."""


class ExchangeOrderRejectedError(ExchangeFatalError):
    """The order request itself was refused; nothing reached the book."""


class ExchangeUnavailableError(ExchangeError):
    """Exchange unreachable or reporting an internal outage."""


def is_retryable_exchange_error(error: Exception) -> bool:
    """Retry predicate for exchange calls: only transient errors qualify."""
    return isinstance(error, (ExchangeTransientError, TimeoutError))


def round_to_increment(value: Decimal, increment: Optional[Decimal], rounding: str) -> Decimal:
    """
    Round ``value`` to a multiple of ``increment``.

    The result carries no more decimal places than the increment, so it is
    accepted by precision checks. A missing or zero increment leaves the
    value untouched.
    """
    if increment is None or increment <= 0:
        return value
    steps = (value / increment).to_integral_value(rounding=rounding)
    places = min(increment.normalize().as_tuple().exponent, 0)
    return (steps * increment).quantize(Decimal(1).scaleb(places))


@dataclass(frozen=True)
class SymbolFilters:
    """
    Trading rules of one symbol.

    Attributes:
        tick_size: PRICE_FILTER price increment
        step_size: LOT_SIZE quantity increment
        min_qty: LOT_SIZE minimum quantity
        min_notional: Minimum price * quantity
    """

    tick_size: Optional[Decimal] = None
    step_size: Optional[Decimal] = None
    min_qty: Optional[Decimal] = None
    min_notional: Optional[Decimal] = None

    def price_up(self, price: Decimal) -> Decimal:
        return round_to_increment(price, self.tick_size, ROUND_CEILING)

    def price_down(self, price: Decimal) -> Decimal:
        return round_to_increment(price, self.tick_size, ROUND_FLOOR)

    def quantity_down(self, quantity: Decimal) -> Decimal:
        return round_to_increment(quantity, self.step_size, ROUND_DOWN)

    def check_order(self, quantity: Decimal, price: Decimal) -> None:
        """
        Raises:
            ExchangeOrderRejectedError: If the order would violate a filter
        """
        if quantity <= 0:
            raise ExchangeOrderRejectedError(f"Quantity {quantity} rounds to zero")
        if self.min_qty is not None and quantity < self.min_qty:
            raise ExchangeOrderRejectedError(
                f"Quantity {quantity} below minimum {self.min_qty}"
            )
        if self.min_notional is not None and quantity * price < self.min_notional:
            raise ExchangeOrderRejectedError(
                f"Notional {quantity * price} below minimum {self.min_notional}"
            )


def parse_symbol_filters(symbol_info: Dict[str, Any]) -> SymbolFilters:
    """Build SymbolFilters from a Binance ``get_symbol_info`` payload."""

    def positive(entry: Dict[str, Any], key: str) -> Optional[Decimal]:
        if entry.get(key) is None:
            return None
        value = to_decimal(entry[key], key)
        return value if value > 0 else None

    values: Dict[str, Optional[Decimal]] = {}
    for entry in symbol_info.get("filters") or []:
        kind = entry.get("filterType")
        if kind == "PRICE_FILTER":
            values["tick_size"] = positive(entry, "tickSize")
        elif kind == "LOT_SIZE":
            values["step_size"] = positive(entry, "stepSize")
            values["min_qty"] = positive(entry, "minQty")
        elif kind in ("MIN_NOTIONAL", "NOTIONAL"):
            values["min_notional"] = positive(entry, "minNotional")
    return SymbolFilters(**values)


@dataclass(frozen=True)
class OrderFill:
    """
    Result of an order placement.

    Attributes:
        order_id: Exchange order id
        status: Exchange order status (FILLED, EXPIRED, ...)
        filled: True if any quantity executed
        executed_qty: Executed base quantity
        avg_price: Volume-weighted fill price, None if nothing filled
        fee: Total commission reported
        fee_asset: Asset the commission was charged in
        client_order_id: Client order id the order was placed with
    """

    order_id: str
    status: str
    filled: bool
    executed_qty: Decimal
    avg_price: Optional[Decimal]
    fee: Decimal = Decimal("0")
    fee_asset: Optional[str] = None
    client_order_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


class IExchangeClient(ABC):
    """Interface for exchange clients used by the risk engine."""

    @abstractmethod
    def place_order(
        self,
        pair: str,
        side: str,
        amount: Numeric,
        price: Numeric,
        time_in_force: str = "IOC",
        client_order_id: Optional[str] = None,
    ) -> OrderFill:
        """
        Place a limit order.

        Args:
            pair: Trading pair symbol (e.g. 'BTCUSDT')
            side: 'BUY' or 'SELL'
            amount: Base quantity
            price: Limit price
            time_in_force: 'IOC', 'GTC' or 'FOK'
            client_order_id: Caller-chosen id used to look the order up later

        Returns:
            OrderFill: Parsed execution result

        Raises:
            ExchangeTransientError: For retryable failures
            ExchangeOrderRejectedError: When the request itself is refused
            ExchangeFatalError: For rejected orders
            ExchangeUnavailableError: When the exchange cannot be reached
        """

    @abstractmethod
    def get_order(self, pair: str, client_order_id: str) -> Optional[OrderFill]:
        """Look an order up by client order id; None if the exchange never saw it."""

    @abstractmethod
    def get_symbol_filters(self, pair: str) -> SymbolFilters:
        """Price and quantity rules of ``pair``."""

    @abstractmethod
    def get_symbol_taker_rate(self, pair: str) -> Optional[Decimal]:
        """Symbol-specific taker fee rate, None if unknown."""

    @abstractmethod
    def get_account_taker_rate(self) -> Optional[Decimal]:
        """Account-level taker fee rate, None if unknown."""

    @abstractmethod
    def get_free_balance(self, asset: str) -> Decimal:
        """Free (unlocked) balance of ``asset``."""

    @abstractmethod
    def get_symbol_ticker(self, pair: str) -> Dict[str, Any]:
        """Ticker mapping with at least a ``price`` entry."""

    @abstractmethod
    def is_connected(self) -> bool:
        """True once the client is initialized."""


def validate_order_params(
    pair: str, side: str, amount: Numeric, price: Numeric, time_in_force: str
) -> None:
    """
    Validate order parameters before anything is sent.

    Raises:
        ValueError: If any parameter is invalid
    """
    if not pair or not isinstance(pair, str):
        raise ValueError("Pair must be a non-empty string")
    if side not in ORDER_SIDES:
        raise ValueError("Side must be 'BUY' or 'SELL'")
    if time_in_force not in TIME_IN_FORCE:
        raise ValueError(f"Unsupported time in force: {time_in_force}")
    if to_decimal(amount, "amount") <= 0:
        raise ValueError("Amount must be positive")
    if to_decimal(price, "price") <= 0:
        raise ValueError("Price must be positive")


def parse_order_response(response: Dict[str, Any]) -> OrderFill:
    """
    Build an OrderFill from a Binance order response.

    The average price is ``cummulativeQuoteQty / executedQty``; commissions
    are summed across fills.
    """
    executed = to_decimal(response.get("executedQty", "0"), "executedQty")
    quote_qty = to_decimal(response.get("cummulativeQuoteQty", "0"), "cummulativeQuoteQty")

    fills: List[Dict[str, Any]] = response.get("fills") or []
    fee = sum(
        (to_decimal(fill.get("commission", "0"), "commission") for fill in fills),
        Decimal("0"),
    )
    fee_assets = {fill.get("commissionAsset") for fill in fills if fill.get("commissionAsset")}
    if len(fee_assets) > 1:
        fee_asset: Optional[str] = MIXED_FEE_ASSET
    else:
        fee_asset = next(iter(fee_assets)) if fee_assets else None

    avg_price: Optional[Decimal] = None
    if executed > 0:
        avg_price = quote_qty / executed if quote_qty > 0 else None
        if avg_price is None and fills:
            avg_price = to_decimal(fills[0].get("price", "0"), "price")

    return OrderFill(
        order_id=str(response.get("orderId", "")),
        status=str(response.get("status", "UNKNOWN")),
        filled=executed > 0,
        executed_qty=executed,
        avg_price=avg_price,
        fee=fee,
        fee_asset=fee_asset,
        client_order_id=response.get("clientOrderId"),
        raw=response,
    )


class BinanceExchangeClient(IExchangeClient):
    """
    Binance exchange client wrapper.

    Wraps the python-binance Client with error classification, logging and
    configuration management.
    """

    def __init__(
        self, config_manager: ConfigManager, request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    ) -> None:
        if request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        self._config_manager = config_manager
        self._request_timeout = request_timeout
        self._client: Optional[Client] = None
        self._logger = get_module_logger("exchange_client")
        self._is_testnet = True
        self._is_connected = False

    def initialize(self) -> None:
        """
        Initialize Binance client with API credentials.

        Raises:
            ExchangeFatalError: If credentials are rejected
            ExchangeUnavailableError: If the exchange cannot be reached
        """
        credentials = self._config_manager.get_api_credentials()
        self._is_testnet = credentials["network"] == "testnet"

        try:
            self._client = Client(
                api_key=credentials["api_key"],
                api_secret=credentials["secret_key"],
                testnet=self._is_testnet,
                requests_params={"timeout": self._request_timeout},
            )
            self._client.ping()
        except Exception as e:
            raise self._classify(e, "initialize client") from e

        self._is_connected = True
        mode = "testnet" if self._is_testnet else "mainnet"
        self._logger.info(f"Binance client initialized in {mode} mode")

    def is_connected(self) -> bool:
        return self._is_connected and self._client is not None

    def place_order(
        self,
        pair: str,
        side: str,
        amount: Numeric,
        price: Numeric,
        time_in_force: str = "IOC",
        client_order_id: Optional[str] = None,
    ) -> OrderFill:
        try:
            validate_order_params(pair, side, amount, price, time_in_force)
        except ValueError as e:
            raise ExchangeOrderRejectedError(f"Invalid order: {e}") from e
        self._ensure_connected()

        params: Dict[str, Any] = {
            "symbol": pair,
            "side": side,
            "type": "LIMIT",
            "timeInForce": time_in_force,
            "quantity": str(amount),
            "price": str(price),
        }
        if client_order_id:
            params["newClientOrderId"] = client_order_id

        try:
            response = self._client.create_order(**params)
        except Exception as e:
            raise self._classify(e, f"{time_in_force} {side} {amount} {pair} @ {price}") from e

        fill = parse_order_response(response)
        self._logger.info(
            f"Order {fill.order_id} {side} {amount} {pair} @ {price} "
            f"({time_in_force}): status={fill.status} executed={fill.executed_qty}"
        )
        return fill

    def get_order(self, pair: str, client_order_id: str) -> Optional[OrderFill]:
        self._ensure_connected()
        try:
            response = self._client.get_order(symbol=pair, origClientOrderId=client_order_id)
        except BinanceAPIException as e:
            if e.code == UNKNOWN_ORDER_CODE:
                self._logger.info(f"Order {client_order_id} on {pair} unknown to the exchange")
                return None
            raise self._classify(e, f"get order {client_order_id}") from e
        except Exception as e:
            raise self._classify(e, f"get order {client_order_id}") from e

        fill = parse_order_response(response)
        self._logger.info(
            f"Order {client_order_id} on {pair} found: status={fill.status} "
            f"executed={fill.executed_qty}"
        )
        return fill

    def get_symbol_filters(self, pair: str) -> SymbolFilters:
        self._ensure_connected()
        try:
            symbol_info = self._client.get_symbol_info(pair)
        except Exception as e:
            raise self._classify(e, f"get symbol info for {pair}") from e

        if not symbol_info:
            raise ExchangeOrderRejectedError(f"Unknown symbol {pair}")
        return parse_symbol_filters(symbol_info)

    def get_symbol_taker_rate(self, pair: str) -> Optional[Decimal]:
        self._ensure_connected()
        try:
            fees = self._client.get_trade_fee(symbol=pair)
        except Exception as e:
            raise self._classify(e, f"get trade fee for {pair}") from e

        for entry in fees or []:
            if entry.get("symbol") == pair and entry.get("takerCommission") is not None:
                return to_decimal(entry["takerCommission"], "takerCommission")
        return None

    def get_account_taker_rate(self) -> Optional[Decimal]:
        self._ensure_connected()
        try:
            account = self._client.get_account()
        except Exception as e:
            raise self._classify(e, "get account info") from e

        rates = account.get("commissionRates") or {}
        if rates.get("taker") is not None:
            return to_decimal(rates["taker"], "taker")
        # Legacy field, expressed in hundredths of a basis point.
        if account.get("takerCommission") is not None:
            return to_decimal(account["takerCommission"], "takerCommission") / Decimal(
                "10000"
            )
        return None

    def get_free_balance(self, asset: str) -> Decimal:
        self._ensure_connected()
        try:
            balance = self._client.get_asset_balance(asset=asset)
        except Exception as e:
            raise self._classify(e, f"get {asset} balance") from e

        if not balance:
            return Decimal("0")
        return to_decimal(balance.get("free", "0"), "free")

    def get_symbol_ticker(self, pair: str) -> Dict[str, Any]:
        self._ensure_connected()
        try:
            return self._client.get_symbol_ticker(symbol=pair)
        except Exception as e:
            raise self._classify(e, f"get ticker for {pair}") from e

    def _ensure_connected(self) -> None:
        if not self.is_connected():
            raise ExchangeUnavailableError(
                "Client not connected. Call initialize() first."
            )

    def _classify(self, error: Exception, operation: str) -> ExchangeError:
        """Map a raw client failure onto the engine's exchange error classes."""
        if isinstance(error, ExchangeError):
            return error

        if isinstance(error, BinanceAPIException):
            code = error.code
            status = getattr(error, "status_code", 0) or 0
            message = f"API error during {operation}: [{code}] {error.message}"
            if code in TRANSIENT_ERROR_CODES or status == 429:
                self._logger.warning(message)
                return ExchangeTransientError(message, code)
            if code in UNAVAILABLE_ERROR_CODES or status >= 500:
                self._logger.error(message)
                return ExchangeUnavailableError(message, code)
            self._logger.error(message)
            if code in ORDER_REJECTION_CODES:
                return ExchangeOrderRejectedError(message, code)
            return ExchangeFatalError(message, code)

        if isinstance(error, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
            self._logger.warning(f"Network error during {operation}: {error}")
            return ExchangeTransientError(f"Network error during {operation}: {error}")

        if isinstance(error, BinanceRequestException):
            self._logger.error(f"Invalid exchange response during {operation}: {error}")
            return ExchangeUnavailableError(f"Invalid response during {operation}: {error}")

        self._logger.error(f"Unclassified error during {operation}: {error!r}")
        return ExchangeError(f"Unclassified error during {operation}: {error!r}")


class PaperExchangeClient(IExchangeClient):
    """
    Simulated exchange for paper trading.

    IOC/FOK sells fill in full when the feed price is at or above the limit;
    otherwise they expire. Fees are charged in quote currency at the taker rate.
    Orders are remembered by client order id so lookups behave like the live
    exchange.
    """

    def __init__(
        self,
        price_feed: IPriceFeed,
        taker_rate: Numeric = Decimal("0.001"),
        quote_balance: Numeric = Decimal("10000"),
        quote_asset: str = "USDT",
        symbol_filters: Optional[Dict[str, SymbolFilters]] = None,
    ) -> None:
        self._price_feed = price_feed
        self._taker_rate = to_decimal(taker_rate, "taker_rate")
        self._quote_asset = quote_asset
        self._balances: Dict[str, Decimal] = {
            quote_asset: to_decimal(quote_balance, "quote_balance")
        }
        self._symbol_filters = dict(symbol_filters or {})
        self._orders: Dict[str, OrderFill] = {}
        self._order_seq = 0
        self._lock = threading.Lock()
        self._logger = get_module_logger("paper_exchange")

    def place_order(
        self,
        pair: str,
        side: str,
        amount: Numeric,
        price: Numeric,
        time_in_force: str = "IOC",
        client_order_id: Optional[str] = None,
    ) -> OrderFill:
        try:
            validate_order_params(pair, side, amount, price, time_in_force)
        except ValueError as e:
            raise ExchangeOrderRejectedError(f"Invalid order: {e}") from e

        qty = to_decimal(amount, "amount")
        limit = to_decimal(price, "price")
        filters = self.get_symbol_filters(pair)
        if filters.price_down(limit) != limit or filters.quantity_down(qty) != qty:
            raise ExchangeOrderRejectedError(
                f"Precision is over the maximum defined for {pair}: {qty} @ {limit}", -1111
            )
        filters.check_order(qty, limit)
        market = self._price_feed.get_price(pair).price

        crosses = market >= limit if side == "SELL" else market <= limit
        with self._lock:
            self._order_seq += 1
            order_id = f"paper-{self._order_seq}"
            if not crosses:
                self._logger.info(
                    f"Paper {side} {qty} {pair} @ {limit} expired (market {market})"
                )
                fill = OrderFill(
                    order_id=order_id,
                    status="EXPIRED",
                    filled=False,
                    executed_qty=Decimal("0"),
                    avg_price=None,
                    client_order_id=client_order_id,
                )
            else:
                fee = limit * qty * self._taker_rate
                delta = limit * qty - fee if side == "SELL" else -(limit * qty + fee)
                self._balances[self._quote_asset] = self._balances.get(
                    self._quote_asset, Decimal("0")
                ) + delta
                self._logger.info(f"Paper {side} {qty} {pair} filled @ {limit}, fee {fee}")
                fill = OrderFill(
                    order_id=order_id,
                    status="FILLED",
                    filled=True,
                    executed_qty=qty,
                    avg_price=limit,
                    fee=fee,
                    fee_asset=self._quote_asset,
                    client_order_id=client_order_id,
                )
            if client_order_id:
                self._orders[client_order_id] = fill
        return fill

    def get_order(self, pair: str, client_order_id: str) -> Optional[OrderFill]:
        with self._lock:
            return self._orders.get(client_order_id)

    def get_symbol_filters(self, pair: str) -> SymbolFilters:
        return self._symbol_filters.get(pair, SymbolFilters())

    def get_symbol_taker_rate(self, pair: str) -> Optional[Decimal]:
        return self._taker_rate

    def get_account_taker_rate(self) -> Optional[Decimal]:
        return self._taker_rate

    def get_free_balance(self, asset: str) -> Decimal:
        with self._lock:
            return self._balances.get(asset, Decimal("0"))

    def get_symbol_ticker(self, pair: str) -> Dict[str, Any]:
        quote = self._price_feed.get_price(pair)
        return {"symbol": pair, "price": str(quote.price)}

    def is_connected(self) -> bool:
        return True


def create_exchange_client(
    config_manager: ConfigManager, price_feed: Optional[IPriceFeed] = None
) -> IExchangeClient:
    """
    Factory selecting the live or paper client from the trading mode.

    Args:
        config_manager: Loaded configuration
        price_feed: Feed used by the paper client

    Returns:
        IExchangeClient: Initialized client

    Raises:
        ValueError: If paper mode is selected without a price feed
    """
    engine = config_manager.get_engine_config()
    guard = config_manager.get_guard_config()
    if engine["trading_mode"] == "live":
        client = BinanceExchangeClient(
            config_manager,
            request_timeout=float(
                guard.get("exchange_request_timeout", DEFAULT_REQUEST_TIMEOUT)
            ),
        )
        client.initialize()
        return client

    if price_feed is None:
        raise ValueError("Paper trading requires a price feed")
    sizer = config_manager.get_sizer_config()
    return PaperExchangeClient(
        price_feed,
        taker_rate=guard["default_taker_fee"],
        quote_balance=sizer["initial_balance"],
        quote_asset=engine["quote_asset"],
    )
