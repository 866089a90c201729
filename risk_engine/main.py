"""
Main application entry point for the risk engine.

Builds the components in dependency order and runs the position scan loop
until SIGINT or SIGTERM.
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from risk_engine.accounting.fee_schedule import FeeSchedule
from risk_engine.core.config_manager import (
    ConfigManager,
    ConfigurationError,
    create_config_manager,
)
from risk_engine.core.event_hub import EventHub, EventType
from risk_engine.core.logger import create_engine_logger
from risk_engine.execution.exchange_client import (
    ExchangeError,
    IExchangeClient,
    create_exchange_client,
)
from risk_engine.execution.exit_guard import ExitExecutionGuard, create_exit_guard
from risk_engine.market_data.price_feed import (
    ExchangeTickerPriceFeed,
    InMemoryPriceFeed,
    IPriceFeed,
)
from risk_engine.monitor.position_scanner import PositionScanner
from risk_engine.risk_management.peak_tracker import PeakErosionTracker
from risk_engine.risk_management.position_evaluator import PositionEvaluator
from risk_engine.risk_management.position_sizer import (
    BalanceSynchronizer,
    DynamicPositionSizer,
    create_position_sizer,
)
from risk_engine.risk_management.regime import (
    RegimeTableErosionCap,
    build_regime_table,
    validate_monotonic_caps,
)
from risk_engine.risk_management.underwater_policy import UnderwaterPolicy
from risk_engine.storage.trade_ledger import ITradeLedger, create_trade_ledger


class ComponentInitializationError(Exception):
    """Custom exception for component initialization failures."""


class RiskEngineApplication:
    """
    Owns the lifecycle of every engine component.

    Components are initialized in this order:
    1. ConfigManager
    2. Logger
    3. EventHub
    4. Trade ledger, price feed, exchange client
    5. Regime table, tracker, underwater policy, evaluator
    6. Position sizer, exit guard, scanner
    """

    def __init__(self, config_manager: Optional[ConfigManager] = None) -> None:
        self._config_manager = config_manager
        self._logger: Optional[logging.Logger] = None
        self._event_hub: Optional[EventHub] = None
        self._ledger: Optional[ITradeLedger] = None
        self._price_feed: Optional[IPriceFeed] = None
        self._exchange_client: Optional[IExchangeClient] = None
        self._tracker: Optional[PeakErosionTracker] = None
        self._evaluator: Optional[PositionEvaluator] = None
        self._sizer: Optional[DynamicPositionSizer] = None
        self._balance_sync: Optional[BalanceSynchronizer] = None
        self._guard: Optional[ExitExecutionGuard] = None
        self._scanner: Optional[PositionScanner] = None
        self._is_initialized = False
        self._shutdown_event: Optional[asyncio.Event] = None

    def initialize(self) -> None:
        """
        Initialize all components.

        Raises:
            ComponentInitializationError: If any component fails to initialize
        """
        try:
            if self._config_manager is None:
                self._config_manager = create_config_manager()
            self._config_manager.load_configuration()

            engine = self._config_manager.get_engine_config()
            self._logger = create_engine_logger(
                log_level=engine["log_level"], log_dir=engine["log_dir"] or None
            )
            self._event_hub = EventHub()

            self._ledger = create_trade_ledger(engine["ledger_path"])
            self._initialize_exchange(engine["trading_mode"])

            regime_table = build_regime_table(self._config_manager.get_regime_config())
            cap_strategy = RegimeTableErosionCap(regime_table)
            validate_monotonic_caps(cap_strategy)

            scanner_config = self._config_manager.get_scanner_config()
            self._tracker = PeakErosionTracker(
                cap_strategy,
                regime_table,
                ledger=self._ledger,
                event_hub=self._event_hub,
                warning_ratio_pct=float(scanner_config["erosion_warning_pct"]),
                critical_ratio_pct=float(scanner_config["erosion_critical_pct"]),
                profit_collapse_min_peak_pct=float(scanner_config["profit_collapse_min_peak_pct"]),
            )
            self._tracker.load_open_positions(self._ledger.list_open_positions(engine["bot_id"]))
            self._evaluator = PositionEvaluator(self._tracker, UnderwaterPolicy(regime_table))

            self._sizer = create_position_sizer(
                self._config_manager.get_sizer_config(),
                capital_mode=engine["capital_mode"],
            )
            self._sizer.attach(self._event_hub)
            if engine["capital_mode"] == "unlimited":
                self._balance_sync = BalanceSynchronizer(
                    self._sizer, self._exchange_client, quote_asset=engine["quote_asset"]
                )

            guard_config = self._config_manager.get_guard_config()
            self._guard = create_exit_guard(
                guard_config,
                ledger=self._ledger,
                exchange_client=self._exchange_client,
                price_feed=self._price_feed,
                tracker=self._tracker,
                event_hub=self._event_hub,
                quote_asset=engine["quote_asset"],
            )
            self._scanner = PositionScanner(
                ledger=self._ledger,
                price_feed=self._price_feed,
                fee_schedule=FeeSchedule(
                    self._exchange_client,
                    default_rate=guard_config["default_taker_fee"],
                    cache_ttl_seconds=float(guard_config["fee_cache_ttl_seconds"]),
                ),
                evaluator=self._evaluator,
                guard=self._guard,
                bot_id=engine["bot_id"],
                max_concurrency=int(scanner_config["max_concurrency"]),
                auto_close=bool(scanner_config["auto_close"]),
                price_max_age_seconds=float(guard_config["price_max_age_seconds"]),
                scan_interval_seconds=float(scanner_config["scan_interval_seconds"]),
                event_hub=self._event_hub,
            )

            self._is_initialized = True
            self._logger.info(
                f"Risk engine initialized: bot={engine['bot_id']} "
                f"mode={engine['trading_mode']} capital={engine['capital_mode']}"
            )
            self._event_hub.publish(
                EventType.SYSTEM_STARTUP,
                {"bot_id": engine["bot_id"], "trading_mode": engine["trading_mode"]},
            )

        except (ConfigurationError, ExchangeError, ValueError) as e:
            raise ComponentInitializationError(f"Initialization failed: {e}") from e

    def _initialize_exchange(self, trading_mode: str) -> None:
        if trading_mode == "live":
            self._exchange_client = create_exchange_client(self._config_manager)
            self._price_feed = ExchangeTickerPriceFeed(self._exchange_client)
        else:
            # Paper mode: prices are pushed into the feed by the market-data side.
            self._price_feed = InMemoryPriceFeed()
            self._exchange_client = create_exchange_client(self._config_manager, self._price_feed)
        self._logger.info(f"Exchange client ready ({trading_mode})")

    def is_initialized(self) -> bool:
        return self._is_initialized

    def get_event_hub(self) -> Optional[EventHub]:
        return self._event_hub

    def get_guard(self) -> Optional[ExitExecutionGuard]:
        return self._guard

    def get_sizer(self) -> Optional[DynamicPositionSizer]:
        return self._sizer

    def get_price_feed(self) -> Optional[IPriceFeed]:
        return self._price_feed

    def get_ledger(self) -> Optional[ITradeLedger]:
        return self._ledger

    def get_scanner(self) -> Optional[PositionScanner]:
        return self._scanner

    async def run_async(self) -> None:
        """
        Run the scan loop until a shutdown signal arrives.

        Raises:
            RuntimeError: If components are not initialized
        """
        if not self._is_initialized:
            raise RuntimeError("Call initialize() before run_async()")

        self._shutdown_event = asyncio.Event()
        self._setup_signal_handlers()
        self._logger.info("=== Risk engine scan loop starting ===")
        try:
            await self._scanner.run_forever(self._shutdown_event, self._balance_sync)
        finally:
            self.shutdown()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                # Windows event loops do not support signal handlers.
                signal.signal(sig, lambda signum, frame: self.request_shutdown())

    def shutdown(self) -> None:
        """Release resources. Safe to call more than once."""
        if not self._is_initialized:
            return
        self._is_initialized = False

        if self._event_hub:
            self._event_hub.publish(EventType.SYSTEM_SHUTDOWN, {"reason": "shutdown"})
        if self._ledger:
            try:
                self._ledger.close()
            except Exception as e:
                self._logger.warning(f"Ledger shutdown warning: {e}")
        if self._event_hub:
            self._event_hub.clear_subscribers()
        self._logger.info("=== Risk engine shutdown complete ===")


async def async_main() -> int:
    """
    Async entry point.

    Returns:
        int: Exit code (0 for success, 1 for failure)
    """
    app = RiskEngineApplication()
    try:
        app.initialize()
        await app.run_async()
        return 0
    except ComponentInitializationError as e:
        print(f"FATAL: Component initialization failed: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nShutdown requested via keyboard interrupt", file=sys.stderr)
        return 0
    finally:
        app.shutdown()


def main() -> int:
    return asyncio.run(async_main())


if __name__ == "__main__":
    sys.exit(main())
