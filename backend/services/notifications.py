"""Close notifications.

Every automatic close leaves a Notification row for the owner and is fanned
out to the operator Telegram chats when the bot is running. Nothing in here is
allowed to fail a settlement: errors are logged and dropped.
"""

import asyncio
import logging
from decimal import Decimal

from sqlmodel import Session

from backend.database import engine as default_engine
from backend.models.notification import Notification
from backend.services.settlement import to_decimal
from backend.utils.constants import (
    NOTIFICATION_AUTO_CLOSE,
    REASON_EXPIRED,
    REASON_STOP_LOSS,
    REASON_TAKE_PROFIT,
)

logger = logging.getLogger(__name__)

TITLES = {
    REASON_TAKE_PROFIT: "Take Profit Achieved!",
    REASON_STOP_LOSS: "Stop Loss Triggered",
    REASON_EXPIRED: "Position Expired",
}


def build_close_message(position, reason: str | None) -> tuple[str, str]:
    """Return (title, message) for a closed position."""
    title = TITLES.get(reason, "Position Closed")
    amount = to_decimal(position.amount)
    profit = to_decimal(position.profit or 0)
    pct = profit / amount * 100 if amount else Decimal("0")
    sign = "+" if profit >= 0 else "-"
    message = (
        f"{position.symbol} {position.direction.upper()} x{position.multiplier} closed at "
        f"{to_decimal(position.close_price).normalize():f}. "
        f"Amount: ${amount:.2f}, P&L: {sign}${abs(profit):.2f} ({pct:+.2f}%)"
    )
    return title, message


def record_notification(position, reason: str | None, db_engine=None) -> Notification:
    title, message = build_close_message(position, reason)
    with Session(db_engine or default_engine) as session:
        notification = Notification(
            user_id=position.owner_id,
            type=NOTIFICATION_AUTO_CLOSE,
            title=title,
            message=message,
        )
        session.add(notification)
        session.commit()
        session.refresh(notification)
        return notification


def send_telegram(message: str):
    """Send a Telegram notification (fire-and-forget)."""
    from backend.services.telegram_bot import get_bot

    bot = get_bot()
    if bot and bot._loop:
        asyncio.run_coroutine_threadsafe(bot.send_notification(message), bot._loop)


async def notify_position_closed(position, reason: str | None, db_engine=None):
    """Persist the owner notification and ping operators."""
    try:
        loop = asyncio.get_running_loop()
        notification = await loop.run_in_executor(None, record_notification, position, reason, db_engine)
        send_telegram(f"[user {position.owner_id}] {notification.title} {notification.message}")
    except Exception as e:
        logger.warning(f"Close notification for position {position.id} failed: {e}")
