"""
Taker fee resolution with a time-bounded cache.

The best available rate is the symbol-specific one, then the account-level
one, then a static default. Lookup failures never block an exit; they fall
through to the next tier.
"""

import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from risk_engine.core.logger import get_module_logger
from risk_engine.models.position import Numeric, to_decimal


DEFAULT_TAKER_RATE = Decimal("0.001")
DEFAULT_CACHE_TTL_SECONDS = 24 * 60 * 60.0


class FeeSource(Enum):
    """Which tier produced a rate."""

    SYMBOL = "symbol"
    ACCOUNT = "account"
    DEFAULT = "default"


@dataclass(frozen=True)
class TakerRate:
    rate: Decimal
    source: FeeSource


class FeeSchedule:
    """
    Resolves taker fee rates from an exchange client.

    Args:
        exchange_client: Object exposing ``get_symbol_taker_rate(pair)`` and
            ``get_account_taker_rate()``; may be None to always use the default
        default_rate: Static fallback rate
        cache_ttl_seconds: How long a resolved rate is reused
    """

    def __init__(
        self,
        exchange_client: Optional[Any] = None,
        default_rate: Numeric = DEFAULT_TAKER_RATE,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._exchange_client = exchange_client
        self._default_rate = self._validated(to_decimal(default_rate, "default_rate"))
        if self._default_rate is None:
            raise ValueError(f"Default taker rate must be in [0, 1), got {default_rate}")
        self._cache_ttl = cache_ttl_seconds
        self._clock = clock
        self._cache: Dict[str, Tuple[TakerRate, float]] = {}
        self._lock = threading.Lock()
        self._logger = get_module_logger("fee_schedule")

    @property
    def default_rate(self) -> Decimal:
        return self._default_rate

    def get_taker_rate(self, pair: str) -> TakerRate:
        """
        Best available taker rate for ``pair``.

        Returns:
            TakerRate: Rate with the tier it came from
        """
        now = self._clock()
        with self._lock:
            cached = self._cache.get(pair)
            if cached is not None and cached[1] > now:
                return cached[0]

        resolved = self._resolve(pair)
        if resolved.source != FeeSource.DEFAULT:
            with self._lock:
                self._cache[pair] = (resolved, now + self._cache_ttl)
        return resolved

    def invalidate(self, pair: Optional[str] = None) -> None:
        with self._lock:
            if pair is None:
                self._cache.clear()
            else:
                self._cache.pop(pair, None)

    def _resolve(self, pair: str) -> TakerRate:
        if self._exchange_client is None:
            return TakerRate(self._default_rate, FeeSource.DEFAULT)

        try:
            rate = self._validated(self._exchange_client.get_symbol_taker_rate(pair))
            if rate is not None:
                return TakerRate(rate, FeeSource.SYMBOL)
        except Exception as e:
            self._logger.warning(f"Symbol fee lookup failed for {pair}: {e}")

        try:
            rate = self._validated(self._exchange_client.get_account_taker_rate())
            if rate is not None:
                return TakerRate(rate, FeeSource.ACCOUNT)
        except Exception as e:
            self._logger.warning(f"Account fee lookup failed: {e}")

        self._logger.info(f"Using default taker rate {self._default_rate} for {pair}")
        return TakerRate(self._default_rate, FeeSource.DEFAULT)

    @staticmethod
    def _validated(value: Optional[Numeric]) -> Optional[Decimal]:
        if value is None:
            return None
        rate = to_decimal(value, "taker_rate")
        if rate < 0 or rate >= 1:
            return None
        return rate
