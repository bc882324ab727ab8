"""TickLog model: audit entries for ticks that changed something or failed."""

from datetime import datetime, timezone

from sqlmodel import SQLModel, Field


class TickLog(SQLModel, table=True):
    __tablename__ = "tick_log"

    id: int | None = Field(default=None, primary_key=True)
    state_key: str = Field(index=True)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: str  # position status after the tick
    action: str | None = None  # "activated", "adjusted", "triggered", "error", "stale", "cancelled"
    price: float | None = None
    scheduler: str | None = None  # "queue" or "poller"
    message: str | None = None
