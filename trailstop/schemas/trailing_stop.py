"""Pydantic schemas for the positions API."""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from trailstop.models.trailing_stop import PositionSide, PositionStatus


class TrailingStopCreate(BaseModel):
    symbol: str = Field(min_length=1, max_length=32)
    side: PositionSide = PositionSide.SELL
    entry_price: float = Field(gt=0)
    quantity: float = Field(gt=0)
    trailing_percent: float = Field(gt=0, lt=100)
    activation_price: float | None = Field(default=None, gt=0)
    strategy: str | None = Field(default="percentage", max_length=32)
    order_id: str | None = Field(default=None, max_length=128)

    @field_validator("symbol")
    @classmethod
    def _normalize_symbol(cls, value: str) -> str:
        text = value.strip().upper()
        if not text:
            raise ValueError("must not be empty")
        return text


class TrailingStopRead(BaseModel):
    state_key: str
    symbol: str
    side: PositionSide
    entry_price: float
    quantity: float
    trailing_percent: float
    activation_price: float | None
    highest_price: float
    trigger_price: float
    status: PositionStatus
    strategy: str | None
    activated_at: datetime | None
    triggered_at: datetime | None
    error_message: str | None
    order_id: str | None
    sell_order_id: str | None
    created_at: datetime
    updated_at: datetime
    version: int

    model_config = {"from_attributes": True}


class CreatedResponse(BaseModel):
    state_key: str
    status: PositionStatus
