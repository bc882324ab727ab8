"""Database models."""

from trailstop.models.trailing_stop import (
    MONITORED_STATUSES,
    TERMINAL_STATUSES,
    PositionSide,
    PositionStatus,
    TrailingStop,
)
from trailstop.models.tick_log import TickLog

__all__ = [
    "TrailingStop",
    "TickLog",
    "PositionSide",
    "PositionStatus",
    "MONITORED_STATUSES",
    "TERMINAL_STATUSES",
]
