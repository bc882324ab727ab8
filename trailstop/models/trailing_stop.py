"""TrailingStop model: one row per monitored position, kept for audit after it closes."""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, Enum as SAEnum
from sqlmodel import SQLModel, Field


class PositionSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class PositionStatus(str, Enum):
    PENDING_ACTIVATION = "pending_activation"
    ACTIVE = "active"
    TRIGGERED = "triggered"
    ERROR = "error"
    CANCELLED = "cancelled"


MONITORED_STATUSES = frozenset({PositionStatus.PENDING_ACTIVATION, PositionStatus.ACTIVE})
TERMINAL_STATUSES = frozenset(
    {PositionStatus.TRIGGERED, PositionStatus.ERROR, PositionStatus.CANCELLED}
)


def _enum_column(enum_cls: type[Enum], **kwargs) -> Column:
    # Store the lowercase values ("active"), not the member names
    return Column(
        SAEnum(
            enum_cls,
            values_callable=lambda members: [m.value for m in members],
            native_enum=False,
            length=32,
        ),
        nullable=False,
        **kwargs,
    )


class TrailingStop(SQLModel, table=True):
    __tablename__ = "trailing_stop"

    state_key: str = Field(primary_key=True)
    symbol: str = Field(index=True)  # e.g. "BTC/USDT"
    side: PositionSide = Field(default=PositionSide.SELL, sa_column=_enum_column(PositionSide))
    entry_price: float
    quantity: float
    trailing_percent: float  # 5.0 == 5%
    activation_price: float | None = None

    # Trailing state, written only by the position engine
    highest_price: float  # lowest price seen for buy positions
    trigger_price: float
    status: PositionStatus = Field(
        default=PositionStatus.ACTIVE,
        sa_column=_enum_column(PositionStatus, index=True),
    )
    strategy: str | None = "percentage"
    activated_at: datetime | None = None
    triggered_at: datetime | None = None
    error_message: str | None = None

    # Set by the order-execution side, never by the engine
    order_id: str | None = None
    sell_order_id: str | None = None

    # Audit
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return PositionStatus(self.status) in TERMINAL_STATUSES
