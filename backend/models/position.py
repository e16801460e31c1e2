"""Position model: one leveraged deal, open or closed."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlmodel import SQLModel, Field


class Position(SQLModel, table=True):
    __tablename__ = "position"

    id: int | None = Field(default=None, primary_key=True)
    owner_id: int = Field(foreign_key="user.id", index=True)
    symbol: str = Field(index=True, max_length=16)  # e.g. "BTCUSDT"
    direction: str = Field(max_length=8)  # "long" or "short"

    # Immutable after insert
    amount: Decimal = Field(max_digits=18, decimal_places=8)
    multiplier: int
    open_price: Decimal = Field(max_digits=18, decimal_places=8)
    opened_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)

    # Risk parameters, editable while open
    take_profit: Decimal | None = Field(default=None, max_digits=18, decimal_places=8)
    stop_loss: Decimal | None = Field(default=None, max_digits=18, decimal_places=8)

    status: str = Field(default="open", index=True, max_length=16)

    # Exit fields, written together by the close transition
    close_price: Decimal | None = Field(default=None, max_digits=18, decimal_places=8)
    closed_at: datetime | None = None
    profit: Decimal | None = Field(default=None, max_digits=18, decimal_places=8)
    commission: Decimal | None = Field(default=None, max_digits=18, decimal_places=8)
    close_reason: str | None = Field(default=None, max_length=16)  # "take_profit", "stop_loss", "expired", "manual"
