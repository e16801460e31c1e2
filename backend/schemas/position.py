"""Pydantic schemas for Position, rating and notification API."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator, model_validator

from backend.utils.constants import DIRECTIONS


class PositionOpen(BaseModel):
    symbol: str = Field(min_length=1, max_length=16)
    direction: str
    amount: Decimal = Field(gt=0, max_digits=18, decimal_places=8)
    multiplier: int = Field(default=1, ge=1)
    take_profit: Decimal | None = Field(default=None, gt=0)
    stop_loss: Decimal | None = Field(default=None, gt=0)

    @field_validator("symbol")
    @classmethod
    def _normalize_symbol(cls, value: str) -> str:
        text = value.strip().upper()
        if not text:
            raise ValueError("must not be empty")
        return text

    @field_validator("direction")
    @classmethod
    def _validate_direction(cls, value: str) -> str:
        direction = value.strip().lower()
        if direction not in DIRECTIONS:
            raise ValueError(f"must be one of: {', '.join(DIRECTIONS)}")
        return direction


class RiskParametersUpdate(BaseModel):
    """Omitted fields stay unchanged; explicit null clears the value."""
    take_profit: Decimal | None = Field(default=None, gt=0)
    stop_loss: Decimal | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _require_one(self):
        if not self.model_fields_set & {"take_profit", "stop_loss"}:
            raise ValueError("provide take_profit and/or stop_loss")
        return self


class PositionRead(BaseModel):
    id: int
    owner_id: int
    symbol: str
    direction: str
    amount: Decimal
    multiplier: int
    open_price: Decimal
    opened_at: datetime
    take_profit: Decimal | None
    stop_loss: Decimal | None
    status: str
    close_price: Decimal | None
    closed_at: datetime | None
    profit: Decimal | None
    commission: Decimal | None
    close_reason: str | None

    model_config = {"from_attributes": True}


class SettlementResultRead(BaseModel):
    id: int
    close_price: Decimal
    profit: Decimal
    commission: Decimal
    closed_at: datetime
    reason: str | None
    already_closed: bool

    model_config = {"from_attributes": True}


class OwnerStatsRead(BaseModel):
    id: int
    username: str
    balance: Decimal
    trades_count: int
    total_trades_volume: Decimal
    profitable_trades_count: int
    win_rate: Decimal
    max_profit: Decimal
    max_loss: Decimal
    average_trade_amount: Decimal
    total_pnl: Decimal
    rating_score: int
    rating_rank: int | None

    model_config = {"from_attributes": True}


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: int
    username: str
    rating_score: int
    total_pnl: Decimal
    win_rate: Decimal
    trades_count: int


class NotificationRead(BaseModel):
    id: int
    type: str
    title: str
    message: str | None
    is_read: bool
    created_at: datetime

    model_config = {"from_attributes": True}
