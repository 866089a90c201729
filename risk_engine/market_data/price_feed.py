"""
Live price feed interface with an explicit staleness bound.

The engine only consumes prices; ingestion and fan-out live elsewhere.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from risk_engine.core.logger import get_module_logger
from risk_engine.models.position import Numeric, to_decimal, utc_now


class PriceFeedError(Exception):
    """Base exception for price feed errors."""


class PriceUnavailableError(PriceFeedError):
    """Raised when no price is known for a pair."""


@dataclass(frozen=True)
class PriceQuote:
    """Last traded price for a pair and when it was observed."""

    pair: str
    price: Decimal
    timestamp: datetime

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utc_now()) - self.timestamp).total_seconds()

    def is_stale(self, max_age_seconds: float, now: Optional[datetime] = None) -> bool:
        """True when the quote is older than ``max_age_seconds``."""
        return self.age_seconds(now) > max_age_seconds


class IPriceFeed(ABC):
    """Interface for price sources."""

    @abstractmethod
    def get_price(self, pair: str) -> PriceQuote:
        """
        Get the latest quote for a pair.

        Args:
            pair: Trading pair symbol

        Returns:
            PriceQuote: Price with observation timestamp

        Raises:
            PriceUnavailableError: If the pair has no price
        """


class InMemoryPriceFeed(IPriceFeed):
    """Thread-safe feed updated by an external ingestion process."""

    def __init__(self) -> None:
        self._quotes: Dict[str, PriceQuote] = {}
        self._lock = threading.Lock()

    def set_price(
        self, pair: str, price: Numeric, timestamp: Optional[datetime] = None
    ) -> PriceQuote:
        value = to_decimal(price, "price")
        if value <= 0:
            raise PriceFeedError(f"Price for {pair} must be positive, got {price}")
        observed = timestamp or utc_now()
        if observed.tzinfo is None:
            observed = observed.replace(tzinfo=timezone.utc)
        quote = PriceQuote(pair=pair, price=value, timestamp=observed)
        with self._lock:
            self._quotes[pair] = quote
        return quote

    def get_price(self, pair: str) -> PriceQuote:
        with self._lock:
            quote = self._quotes.get(pair)
        if quote is None:
            raise PriceUnavailableError(f"No price available for {pair}")
        return quote


class ExchangeTickerPriceFeed(IPriceFeed):
    """
    Feed that polls the exchange ticker on every read.

    The exchange client must provide ``get_symbol_ticker(pair)`` returning a
    mapping with a ``price`` entry. Calls block on the network.
    """

    def __init__(self, exchange_client: Any) -> None:
        self._exchange_client = exchange_client
        self._logger = get_module_logger("price_feed")

    def get_price(self, pair: str) -> PriceQuote:
        try:
            ticker = self._exchange_client.get_symbol_ticker(pair)
        except Exception as e:
            self._logger.warning(f"Ticker lookup failed for {pair}: {e}")
            raise PriceUnavailableError(f"Ticker unavailable for {pair}: {e}") from e

        price = to_decimal(ticker.get("price", "0"), "price")
        if price <= 0:
            raise PriceUnavailableError(f"Exchange returned no price for {pair}")
        return PriceQuote(pair=pair, price=price, timestamp=utc_now())
