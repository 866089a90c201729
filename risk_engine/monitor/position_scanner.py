"""
Periodic scan over open positions.

Each cycle marks every open position to market, ratchets its peak, asks the
evaluator for a verdict and, when auto-close is on, hands recommendations to
the exit guard. Positions are processed concurrently up to a fixed limit; each
task holds at most one position lease at a time (the guard's).
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from risk_engine.accounting.fee_schedule import FeeSchedule
from risk_engine.accounting.pnl_calculator import (
    AccountingError,
    calculate_mark_to_market_pct,
)
from risk_engine.core.event_hub import EventHub, EventType
from risk_engine.core.logger import get_module_logger
from risk_engine.execution.exit_guard import (
    CloseResult,
    ExitExecutionGuard,
    ExitIntent,
)
from risk_engine.market_data.price_feed import IPriceFeed, PriceFeedError
from risk_engine.models.position import ExitReason, ExitTrigger, Position, utc_now
from risk_engine.risk_management.position_evaluator import (
    PositionEvaluator,
    PositionHealth,
)
from risk_engine.risk_management.position_sizer import BalanceSyncError
from risk_engine.storage.trade_ledger import ITradeLedger


PROTECTIVE_REASONS = frozenset(
    {
        ExitReason.UNDERWATER_NEVER_PROFITED,
        ExitReason.UNDERWATER_PROFITABLE_COLLAPSE,
        ExitReason.UNDERWATER_SMALL_PEAK_TIMEOUT,
    }
)


@dataclass
class ScanReport:
    """Summary of one scan cycle."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    evaluated: int = 0
    skipped_stale: int = 0
    errors: int = 0
    health: List[PositionHealth] = field(default_factory=list)
    close_results: List[CloseResult] = field(default_factory=list)

    @property
    def recommendations(self) -> Dict[str, ExitReason]:
        return {h.position_id: h.recommendation for h in self.health if h.recommendation}

    @property
    def closed(self) -> int:
        return sum(1 for r in self.close_results if r.success)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "evaluated": self.evaluated,
            "skipped_stale": self.skipped_stale,
            "errors": self.errors,
            "recommendations": {k: v.value for k, v in self.recommendations.items()},
            "closed": self.closed,
        }


class PositionScanner:
    """
    Scans open positions and drives automatic exits.

    Args:
        ledger: Source of open positions
        price_feed: Live quotes
        fee_schedule: Taker rate for mark-to-market exit fees
        evaluator: Health evaluation (updates peaks as a side effect)
        guard: Exit guard for automatic closes
        bot_id: Bot whose positions are scanned
        max_concurrency: Positions evaluated at once
        auto_close: Submit recommended exits to the guard
        price_max_age_seconds: Quotes older than this are skipped
        scan_interval_seconds: Pause between cycles in ``run_forever``
        event_hub: Hub for ``SCAN_COMPLETED``
    """

    def __init__(
        self,
        ledger: ITradeLedger,
        price_feed: IPriceFeed,
        fee_schedule: FeeSchedule,
        evaluator: PositionEvaluator,
        guard: Optional[ExitExecutionGuard],
        bot_id: str,
        max_concurrency: int = 8,
        auto_close: bool = True,
        price_max_age_seconds: float = 30.0,
        scan_interval_seconds: float = 60.0,
        event_hub: Optional[EventHub] = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if scan_interval_seconds <= 0:
            raise ValueError("scan_interval_seconds must be positive")
        if auto_close and guard is None:
            raise ValueError("auto_close requires an exit guard")

        self._ledger = ledger
        self._price_feed = price_feed
        self._fee_schedule = fee_schedule
        self._evaluator = evaluator
        self._guard = guard
        self._bot_id = bot_id
        self._max_concurrency = max_concurrency
        self._auto_close = auto_close
        self._price_max_age = price_max_age_seconds
        self._scan_interval = scan_interval_seconds
        self._event_hub = event_hub
        self._logger = get_module_logger("position_scanner")

    async def scan_once(self, now: Optional[datetime] = None) -> ScanReport:
        """
        Run one scan cycle.

        Args:
            now: Evaluation time, defaults to the current UTC time

        Returns:
            ScanReport: Counts, health reports and close results
        """
        report = ScanReport(started_at=now or utc_now())
        positions = await asyncio.to_thread(self._ledger.list_open_positions, self._bot_id)
        semaphore = asyncio.Semaphore(self._max_concurrency)
        start = time.monotonic()

        async def run(position: Position) -> None:
            async with semaphore:
                await self._scan_position(position, report, now)

        await asyncio.gather(*(run(p) for p in positions))

        report.finished_at = utc_now()
        self._logger.info(
            f"Scan of {len(positions)} positions in {time.monotonic() - start:.2f}s: "
            f"{report.evaluated} evaluated, {report.skipped_stale} stale, "
            f"{len(report.recommendations)} exit signals, {report.closed} closed, "
            f"{report.errors} errors"
        )
        if self._event_hub is not None:
            self._event_hub.publish(EventType.SCAN_COMPLETED, report.to_dict())
        return report

    async def _scan_position(
        self, position: Position, report: ScanReport, now: Optional[datetime]
    ) -> None:
        try:
            quote = await asyncio.to_thread(self._price_feed.get_price, position.pair)
            if quote.is_stale(self._price_max_age, now):
                self._logger.debug(
                    f"Skipping {position.position_id}: {position.pair} quote is stale"
                )
                report.skipped_stale += 1
                return

            taker = await asyncio.to_thread(self._fee_schedule.get_taker_rate, position.pair)
            current_pct = calculate_mark_to_market_pct(
                position.entry_price,
                quote.price,
                position.quantity,
                position.entry_fee,
                taker.rate,
            )
            # Peak updates write through to the ledger.
            health = await asyncio.to_thread(
                self._evaluator.evaluate_position, position, current_pct, now
            )
            report.evaluated += 1
            report.health.append(health)

            if health.recommendation is None or not self._auto_close:
                return

            trigger = (
                ExitTrigger.PROTECTIVE
                if health.recommendation in PROTECTIVE_REASONS
                else ExitTrigger.AUTOMATIC
            )
            result = await self._guard.close_position(
                position.position_id,
                ExitIntent(
                    bot_id=position.bot_id,
                    reason=health.recommendation,
                    trigger=trigger,
                    requested_price=quote.price,
                ),
            )
            report.close_results.append(result)

        except PriceFeedError as e:
            self._logger.warning(f"No price for {position.pair}: {e}")
            report.skipped_stale += 1
        except AccountingError as e:
            self._logger.error(f"Cannot mark {position.position_id} to market: {e}")
            report.errors += 1
        except Exception as e:
            self._logger.error(f"Error scanning {position.position_id}: {e}", exc_info=True)
            report.errors += 1
            if self._event_hub is not None:
                self._event_hub.publish(
                    EventType.ERROR_OCCURRED,
                    {"position_id": position.position_id, "pair": position.pair, "error": str(e)},
                )

    async def run_forever(
        self, stop_event: asyncio.Event, balance_sync: Optional[Any] = None
    ) -> None:
        """
        Scan every ``scan_interval_seconds`` until ``stop_event`` is set.

        Args:
            stop_event: Set to end the loop
            balance_sync: Optional ``BalanceSynchronizer`` run before each scan
        """
        self._logger.info(
            f"Position scanner started for bot {self._bot_id} "
            f"({self._scan_interval}s interval, auto_close={self._auto_close})"
        )
        while not stop_event.is_set():
            if balance_sync is not None:
                try:
                    await asyncio.to_thread(balance_sync.sync)
                except BalanceSyncError as e:
                    self._logger.warning(f"Balance sync skipped this cycle: {e}")

            try:
                await self.scan_once()
            except Exception as e:
                self._logger.error(f"Scan cycle failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._scan_interval)
            except asyncio.TimeoutError:
                continue

        self._logger.info("Position scanner stopped")
