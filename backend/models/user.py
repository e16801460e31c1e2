"""User model: account balance plus derived trading statistics."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlmodel import SQLModel, Field


class User(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    username: str = Field(unique=True, index=True)
    is_active: bool = Field(default=True)
    is_admin: bool = Field(default=False)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    balance: Decimal = Field(default=Decimal("10000.00"), max_digits=18, decimal_places=8)

    # Closed-trade counter, incremented in the settlement transaction
    trades_count: int = 0

    # Derived by RatingEngine from closed positions
    total_trades_volume: Decimal = Field(default=Decimal("0"), max_digits=18, decimal_places=8)
    profitable_trades_count: int = 0
    win_rate: Decimal = Field(default=Decimal("0"), max_digits=5, decimal_places=2)
    max_profit: Decimal = Field(default=Decimal("0"), max_digits=18, decimal_places=8)
    max_loss: Decimal = Field(default=Decimal("0"), max_digits=18, decimal_places=8)
    average_trade_amount: Decimal = Field(default=Decimal("0"), max_digits=18, decimal_places=8)
    total_pnl: Decimal = Field(default=Decimal("0"), max_digits=18, decimal_places=8)
    rating_score: int = Field(default=0, index=True)
    rating_rank: int | None = None
