"""Notification model: user-facing messages about automatic closes."""

from datetime import datetime, timezone

from sqlmodel import SQLModel, Field


class Notification(SQLModel, table=True):
    __tablename__ = "notification"

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    type: str = "auto_close_trade"
    title: str
    message: str | None = None
    is_read: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
