"""
Domain models shared by the risk engine components.
"""

from .position import (
    ClosedTrade,
    ExitReason,
    ExitTrigger,
    InvalidPositionError,
    Position,
    PositionStatus,
    Regime,
)

__all__ = [
    "ClosedTrade",
    "ExitReason",
    "ExitTrigger",
    "InvalidPositionError",
    "Position",
    "PositionStatus",
    "Regime",
]
