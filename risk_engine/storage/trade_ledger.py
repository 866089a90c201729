"""
Trade ledger: persisted Position and ClosedTrade records.

Both backends give the two conditional writes the engine depends on:
a peak update that only applies to an open position and only moves the peak
up, and a close that only succeeds for an open position owned by the
requesting bot. Neither ever overwrites a concurrent writer's result.
"""

import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

from risk_engine.core.logger import get_module_logger
from risk_engine.models.position import (
    ClosedTrade,
    ExitReason,
    ExitTrigger,
    Position,
    PositionStatus,
    Regime,
)


class LedgerError(Exception):
    """Base exception for ledger errors."""


class DuplicatePositionError(LedgerError):
    """Raised when adding a position id that already exists."""


class ITradeLedger(ABC):
    """Interface for trade ledger backends."""

    @abstractmethod
    def add_position(self, position: Position) -> None:
        """Store a new open position."""

    @abstractmethod
    def get_position(self, position_id: str) -> Optional[Position]:
        """Return a copy of the position, or None."""

    @abstractmethod
    def list_open_positions(self, bot_id: Optional[str] = None) -> List[Position]:
        """Copies of all open positions, optionally for one bot."""

    @abstractmethod
    def update_peak(self, position_id: str, peak_pct: float, recorded_at: datetime) -> bool:
        """
        Raise the stored peak if the position is open and the peak is higher.

        Returns:
            bool: True if a row changed
        """

    @abstractmethod
    def close_position(self, position_id: str, bot_id: str, closed_trade: ClosedTrade) -> bool:
        """
        Close an open position owned by ``bot_id`` and store its ClosedTrade.

        Returns:
            bool: False if no open position matched (already closed or not owned)
        """

    @abstractmethod
    def get_closed_trade(self, position_id: str) -> Optional[ClosedTrade]:
        """Return the ClosedTrade for a position, or None."""

    @abstractmethod
    def list_closed_trades(
        self, bot_id: Optional[str] = None, include_archived: bool = False
    ) -> List[ClosedTrade]:
        """Closed trades, hiding archived ones unless asked."""

    @abstractmethod
    def archive_closed_trade(self, position_id: str, bot_id: str) -> bool:
        """Set the archival flag. Returns False if no matching trade exists."""

    def close(self) -> None:
        """Release backend resources."""


class InMemoryTradeLedger(ITradeLedger):
    """Lock-protected arena keyed by position id. Hands out copies only."""

    def __init__(self) -> None:
        self._positions: Dict[str, Position] = {}
        self._closed: Dict[str, ClosedTrade] = {}
        self._lock = threading.Lock()

    def add_position(self, position: Position) -> None:
        with self._lock:
            if position.position_id in self._positions:
                raise DuplicatePositionError(f"Position {position.position_id} already exists")
            self._positions[position.position_id] = position.copy()

    def get_position(self, position_id: str) -> Optional[Position]:
        with self._lock:
            stored = self._positions.get(position_id)
            return stored.copy() if stored else None

    def list_open_positions(self, bot_id: Optional[str] = None) -> List[Position]:
        with self._lock:
            return [
                p.copy()
                for p in self._positions.values()
                if p.is_open and (bot_id is None or p.bot_id == bot_id)
            ]

    def update_peak(self, position_id: str, peak_pct: float, recorded_at: datetime) -> bool:
        with self._lock:
            stored = self._positions.get(position_id)
            if stored is None or not stored.is_open or peak_pct <= stored.peak_profit_pct:
                return False
            stored.peak_profit_pct = peak_pct
            stored.peak_recorded_at = recorded_at
            return True

    def close_position(self, position_id: str, bot_id: str, closed_trade: ClosedTrade) -> bool:
        with self._lock:
            stored = self._positions.get(position_id)
            if stored is None or not stored.is_open or stored.bot_id != bot_id:
                return False
            stored.status = PositionStatus.CLOSED
            self._closed[position_id] = closed_trade
            return True

    def get_closed_trade(self, position_id: str) -> Optional[ClosedTrade]:
        with self._lock:
            return self._closed.get(position_id)

    def list_closed_trades(
        self, bot_id: Optional[str] = None, include_archived: bool = False
    ) -> List[ClosedTrade]:
        with self._lock:
            return [
                t
                for t in self._closed.values()
                if (bot_id is None or t.bot_id == bot_id) and (include_archived or not t.archived)
            ]

    def archive_closed_trade(self, position_id: str, bot_id: str) -> bool:
        with self._lock:
            trade = self._closed.get(position_id)
            if trade is None or trade.bot_id != bot_id:
                return False
            self._closed[position_id] = trade.archive()
            return True


class SqliteTradeLedger(ITradeLedger):
    """SQLite-backed ledger. Conditional writes are single UPDATE statements."""

    def __init__(self, db_path: str) -> None:
        """
        Initialize SQLite storage.

        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = db_path
        self._lock = threading.Lock()
        self._logger = get_module_logger("trade_ledger")

        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_database(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS positions (
                    id TEXT PRIMARY KEY,
                    bot_id TEXT NOT NULL,
                    pair TEXT NOT NULL,
                    entry_price TEXT NOT NULL,
                    quantity TEXT NOT NULL,
                    entry_fee TEXT NOT NULL,
                    entry_time TEXT NOT NULL,
                    regime TEXT NOT NULL,
                    status TEXT NOT NULL,
                    current_profit_pct REAL NOT NULL,
                    peak_profit_pct REAL NOT NULL,
                    peak_recorded_at TEXT,
                    underwater_threshold_pct REAL,
                    underwater_min_dwell_minutes REAL
                )
            """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS closed_trades (
                    position_id TEXT PRIMARY KEY REFERENCES positions(id),
                    bot_id TEXT NOT NULL,
                    pair TEXT NOT NULL,
                    entry_price TEXT NOT NULL,
                    exit_price TEXT NOT NULL,
                    quantity TEXT NOT NULL,
                    entry_fee TEXT NOT NULL,
                    exit_fee TEXT NOT NULL,
                    net_pnl TEXT NOT NULL,
                    net_pnl_percent TEXT NOT NULL,
                    exit_reason TEXT NOT NULL,
                    exit_trigger TEXT NOT NULL,
                    exit_time TEXT NOT NULL,
                    needs_reconciliation INTEGER NOT NULL,
                    archived INTEGER NOT NULL DEFAULT 0
                )
            """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_positions_bot_status
                ON positions(bot_id, status)
            """
            )

    def add_position(self, position: Position) -> None:
        with self._lock:
            try:
                with self._connect() as conn:
                    conn.execute(
                        """
                        INSERT INTO positions (
                            id, bot_id, pair, entry_price, quantity, entry_fee,
                            entry_time, regime, status, current_profit_pct,
                            peak_profit_pct, peak_recorded_at,
                            underwater_threshold_pct, underwater_min_dwell_minutes
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                        (
                            position.position_id,
                            position.bot_id,
                            position.pair,
                            str(position.entry_price),
                            str(position.quantity),
                            str(position.entry_fee),
                            position.entry_time.isoformat(),
                            position.regime.value,
                            position.status.value,
                            position.current_profit_pct,
                            position.peak_profit_pct,
                            position.peak_recorded_at.isoformat()
                            if position.peak_recorded_at
                            else None,
                            position.underwater_threshold_pct,
                            position.underwater_min_dwell_minutes,
                        ),
                    )
            except sqlite3.IntegrityError as e:
                raise DuplicatePositionError(
                    f"Position {position.position_id} already exists"
                ) from e
            except sqlite3.Error as e:
                self._logger.error(f"Failed to add position {position.position_id}: {e}")
                raise LedgerError(str(e)) from e

    def get_position(self, position_id: str) -> Optional[Position]:
        rows = self._query("SELECT * FROM positions WHERE id = ?", (position_id,))
        return self._row_to_position(rows[0]) if rows else None

    def list_open_positions(self, bot_id: Optional[str] = None) -> List[Position]:
        if bot_id is None:
            rows = self._query("SELECT * FROM positions WHERE status = 'open'", ())
        else:
            rows = self._query(
                "SELECT * FROM positions WHERE status = 'open' AND bot_id = ?", (bot_id,)
            )
        return [self._row_to_position(row) for row in rows]

    def update_peak(self, position_id: str, peak_pct: float, recorded_at: datetime) -> bool:
        return self._execute(
            """
            UPDATE positions SET peak_profit_pct = ?, peak_recorded_at = ?
            WHERE id = ? AND status = 'open' AND peak_profit_pct < ?
        """,
            (peak_pct, recorded_at.isoformat(), position_id, peak_pct),
        ) > 0

    def close_position(self, position_id: str, bot_id: str, closed_trade: ClosedTrade) -> bool:
        with self._lock:
            try:
                with self._connect() as conn:
                    cursor = conn.execute(
                        """
                        UPDATE positions SET status = 'closed'
                        WHERE id = ? AND bot_id = ? AND status = 'open'
                    """,
                        (position_id, bot_id),
                    )
                    if cursor.rowcount == 0:
                        return False
                    conn.execute(
                        """
                        INSERT INTO closed_trades (
                            position_id, bot_id, pair, entry_price, exit_price,
                            quantity, entry_fee, exit_fee, net_pnl, net_pnl_percent,
                            exit_reason, exit_trigger, exit_time,
                            needs_reconciliation, archived
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                        (
                            position_id,
                            closed_trade.bot_id,
                            closed_trade.pair,
                            str(closed_trade.entry_price),
                            str(closed_trade.exit_price),
                            str(closed_trade.quantity),
                            str(closed_trade.entry_fee),
                            str(closed_trade.exit_fee),
                            str(closed_trade.net_pnl),
                            str(closed_trade.net_pnl_percent),
                            closed_trade.exit_reason.value,
                            closed_trade.exit_trigger.value,
                            closed_trade.exit_time.isoformat(),
                            int(closed_trade.needs_reconciliation),
                            int(closed_trade.archived),
                        ),
                    )
                    return True
            except sqlite3.Error as e:
                self._logger.error(f"Failed to close position {position_id}: {e}")
                raise LedgerError(str(e)) from e

    def get_closed_trade(self, position_id: str) -> Optional[ClosedTrade]:
        rows = self._query("SELECT * FROM closed_trades WHERE position_id = ?", (position_id,))
        return self._row_to_closed_trade(rows[0]) if rows else None

    def list_closed_trades(
        self, bot_id: Optional[str] = None, include_archived: bool = False
    ) -> List[ClosedTrade]:
        sql = "SELECT * FROM closed_trades WHERE 1 = 1"
        params: List[object] = []
        if bot_id is not None:
            sql += " AND bot_id = ?"
            params.append(bot_id)
        if not include_archived:
            sql += " AND archived = 0"
        return [self._row_to_closed_trade(row) for row in self._query(sql, tuple(params))]

    def archive_closed_trade(self, position_id: str, bot_id: str) -> bool:
        return self._execute(
            "UPDATE closed_trades SET archived = 1 WHERE position_id = ? AND bot_id = ?",
            (position_id, bot_id),
        ) > 0

    def _query(self, sql: str, params: tuple) -> List[sqlite3.Row]:
        with self._lock:
            try:
                with self._connect() as conn:
                    return conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                self._logger.error(f"Ledger query failed: {e}")
                raise LedgerError(str(e)) from e

    def _execute(self, sql: str, params: tuple) -> int:
        with self._lock:
            try:
                with self._connect() as conn:
                    return conn.execute(sql, params).rowcount
            except sqlite3.Error as e:
                self._logger.error(f"Ledger update failed: {e}")
                raise LedgerError(str(e)) from e

    @staticmethod
    def _row_to_position(row: sqlite3.Row) -> Position:
        return Position(
            position_id=row["id"],
            bot_id=row["bot_id"],
            pair=row["pair"],
            entry_price=Decimal(row["entry_price"]),
            quantity=Decimal(row["quantity"]),
            entry_fee=Decimal(row["entry_fee"]),
            entry_time=datetime.fromisoformat(row["entry_time"]),
            regime=Regime(row["regime"]),
            status=PositionStatus(row["status"]),
            current_profit_pct=row["current_profit_pct"],
            peak_profit_pct=row["peak_profit_pct"],
            peak_recorded_at=(
                datetime.fromisoformat(row["peak_recorded_at"])
                if row["peak_recorded_at"]
                else None
            ),
            underwater_threshold_pct=row["underwater_threshold_pct"],
            underwater_min_dwell_minutes=row["underwater_min_dwell_minutes"],
        )

    @staticmethod
    def _row_to_closed_trade(row: sqlite3.Row) -> ClosedTrade:
        return ClosedTrade(
            position_id=row["position_id"],
            bot_id=row["bot_id"],
            pair=row["pair"],
            entry_price=Decimal(row["entry_price"]),
            exit_price=Decimal(row["exit_price"]),
            quantity=Decimal(row["quantity"]),
            entry_fee=Decimal(row["entry_fee"]),
            exit_fee=Decimal(row["exit_fee"]),
            net_pnl=Decimal(row["net_pnl"]),
            net_pnl_percent=Decimal(row["net_pnl_percent"]),
            exit_reason=ExitReason(row["exit_reason"]),
            exit_trigger=ExitTrigger(row["exit_trigger"]),
            exit_time=datetime.fromisoformat(row["exit_time"]),
            needs_reconciliation=bool(row["needs_reconciliation"]),
            archived=bool(row["archived"]),
        )


def create_trade_ledger(ledger_path: str = "") -> ITradeLedger:
    """SQLite ledger when a path is configured, in-memory otherwise."""
    if ledger_path:
        return SqliteTradeLedger(ledger_path)
    return InMemoryTradeLedger()
