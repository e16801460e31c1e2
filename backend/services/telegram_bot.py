"""Operator Telegram bot: close alerts plus a few remote controls.

Commands (whitelisted chats only):
    /status       scheduler, price stream, open positions, closure counters
    /leaderboard  top 10 by rating score
    /expiring     open positions that expire within the next hour
    /sweep        run the expiry sweep now (asks for confirmation)
"""

import asyncio
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from telegram import Update, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.ext import (
    Application,
    CommandHandler,
    CallbackQueryHandler,
    ContextTypes,
)
from sqlmodel import Session, func, select

from backend.config import settings
from backend.utils.constants import STATUS_OPEN

logger = logging.getLogger(__name__)

SWEEP_CONFIRM = "sweep:yes"
SWEEP_CANCEL = "sweep:no"

_bot_instance: Optional["TelegramBot"] = None


def format_leaderboard(users) -> str:
    if not users:
        return "No users yet."
    return "\n".join(
        f"{i}. {u.username}: score {u.rating_score} | PnL {u.total_pnl:.2f} | win {u.win_rate}%"
        for i, u in enumerate(users, start=1)
    )


def format_expiring(positions, now: datetime, max_age: timedelta) -> str:
    if not positions:
        return "Nothing expires within the hour."
    lines = []
    for p in positions:
        opened = p.opened_at if p.opened_at.tzinfo else p.opened_at.replace(tzinfo=timezone.utc)
        left = max(timedelta(0), opened + max_age - now)
        lines.append(
            f"#{p.id} {p.symbol} {p.direction.upper()} x{p.multiplier} "
            f"(user {p.owner_id}): {int(left.total_seconds() // 60)} min left"
        )
    return "\n".join(lines)


class TelegramBot:
    """Runs polling in a background thread with its own event loop.

    Sweeps requested from chat are submitted to ``main_loop``, the service
    loop that owns the evaluator and executor.
    """

    def __init__(self, token: str, chat_ids: list[int], main_loop: asyncio.AbstractEventLoop | None = None):
        self.token = token
        self.chat_ids = set(chat_ids)
        self.main_loop = main_loop
        self._app: Optional[Application] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _is_authorized(self, user_id: int) -> bool:
        return user_id in self.chat_ids

    async def _reply(self, update: Update, text: str, **kwargs) -> bool:
        """Reply to an authorized sender; returns False (after refusing) otherwise."""
        if not update.effective_user or not self._is_authorized(update.effective_user.id):
            if update.message:
                await update.message.reply_text("Unauthorized.")
            return False
        await update.message.reply_text(text, **kwargs)
        return True

    # -- commands ---------------------------------------------------------

    async def _cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        from backend.database import engine
        from backend.engine.price_listener import get_listener
        from backend.engine.scheduler import get_scheduler_status
        from backend.engine.settlement_executor import get_executor
        from backend.models.position import Position

        scheduler = get_scheduler_status()
        stream = get_listener().status()
        closures = get_executor().stats.to_dict()
        with Session(engine) as session:
            open_count = session.exec(
                select(func.count()).select_from(Position).where(Position.status == STATUS_OPEN)
            ).one()

        await self._reply(update, (
            f"Scheduler: {'running' if scheduler['running'] else 'stopped'} ({scheduler['job_count']} jobs)\n"
            f"Price stream: {'connected' if stream['connected'] else 'disconnected'}, "
            f"{len(stream['symbols'])} symbols, {stream['ticks_received']} ticks\n"
            f"Open positions: {open_count}\n"
            f"Closed since start: {closures['total_closed']} | failures: {closures['failures']}"
        ))

    async def _cmd_leaderboard(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        from backend.engine.rating import rating_engine

        await self._reply(update, format_leaderboard(rating_engine.leaderboard(limit=10)))

    async def _cmd_expiring(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        from backend.engine.position_store import PositionStore

        max_age = timedelta(hours=settings.max_position_age_hours)
        now = datetime.now(timezone.utc)
        # Positions older than max_age - 1h expire within the hour
        positions = PositionStore().list_open_positions_older_than(max_age - timedelta(hours=1), now)
        await self._reply(update, format_expiring(positions[:20], now, max_age))

    async def _cmd_sweep(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        keyboard = InlineKeyboardMarkup([[
            InlineKeyboardButton("Run sweep", callback_data=SWEEP_CONFIRM),
            InlineKeyboardButton("Cancel", callback_data=SWEEP_CANCEL),
        ]])
        await self._reply(update, "Close all expired positions at market price now?", reply_markup=keyboard)

    async def _on_sweep_choice(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        query = update.callback_query
        if not query or not query.from_user or not self._is_authorized(query.from_user.id):
            return
        await query.answer()

        if query.data != SWEEP_CONFIRM:
            await query.edit_message_text("Cancelled.")
            return
        if self.main_loop is None:
            await query.edit_message_text("Service loop unavailable.")
            return

        from backend.engine.auto_closer import get_evaluator

        await query.edit_message_text("Expiry sweep in progress...")
        future = asyncio.run_coroutine_threadsafe(get_evaluator().run_expiry_sweep(), self.main_loop)
        report = await asyncio.wrap_future(future)
        await query.edit_message_text(f"Sweep {report.status}: {report.summary()}")

    # -- outbound ---------------------------------------------------------

    async def send_notification(self, message: str):
        """Send a message to all whitelisted chat IDs."""
        if not self._app or not self._app.bot:
            return
        for chat_id in self.chat_ids:
            try:
                await self._app.bot.send_message(chat_id=chat_id, text=message)
            except Exception as e:
                logger.warning(f"Failed to send Telegram notification to {chat_id}: {e}")

    # -- lifecycle --------------------------------------------------------

    def _build_app(self) -> Application:
        app = Application.builder().token(self.token).build()
        commands = {
            "status": self._cmd_status,
            "leaderboard": self._cmd_leaderboard,
            "expiring": self._cmd_expiring,
            "sweep": self._cmd_sweep,
        }
        for name, handler in commands.items():
            app.add_handler(CommandHandler(name, handler))
        app.add_handler(CallbackQueryHandler(self._on_sweep_choice, pattern=r"^sweep:"))
        return app

    def _run_bot(self):
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._app = self._build_app()

        logger.info(f"Telegram bot polling for {len(self.chat_ids)} operator chats")
        self._loop.run_until_complete(self._app.initialize())
        self._loop.run_until_complete(self._app.start())
        self._loop.run_until_complete(self._app.updater.start_polling())
        self._loop.run_forever()

    def start(self):
        self._thread = threading.Thread(target=self._run_bot, name="telegram-bot", daemon=True)
        self._thread.start()

    def stop(self):
        if not (self._loop and self._app):
            return

        async def _shutdown():
            await self._app.updater.stop()
            await self._app.stop()
            await self._app.shutdown()

        asyncio.run_coroutine_threadsafe(_shutdown(), self._loop).result(timeout=10)
        self._loop.call_soon_threadsafe(self._loop.stop)


def init_bot(main_loop: asyncio.AbstractEventLoop | None = None) -> TelegramBot:
    global _bot_instance
    _bot_instance = TelegramBot(
        token=settings.telegram_bot_token,
        chat_ids=settings.telegram_chat_ids,
        main_loop=main_loop,
    )
    return _bot_instance


def get_bot() -> Optional[TelegramBot]:
    """The running bot, or None when Telegram is not configured."""
    return _bot_instance
