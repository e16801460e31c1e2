"""Owner-facing position operations used by the API and the CLI."""

import asyncio
import functools
import logging
from decimal import Decimal

from sqlmodel import Session, select

from backend.config import settings
from backend.database import engine as default_engine
from backend.engine.position_store import UNSET, PositionStore
from backend.engine.rating import RatingEngine
from backend.engine.settlement_executor import SettlementExecutor, SettlementResult
from backend.exceptions import InsufficientBalance, InvalidOrder, PositionNotFound, PriceFeedUnavailable
from backend.models.position import Position
from backend.models.user import User
from backend.services.settlement import (
    commission,
    net_profit,
    to_decimal,
    unrealized_pnl,
    validate_risk_parameters,
)
from backend.utils.constants import DIRECTIONS, STATUS_OPEN

logger = logging.getLogger(__name__)


class PositionService:
    def __init__(
        self,
        store: PositionStore | None = None,
        executor: SettlementExecutor | None = None,
        rating: RatingEngine | None = None,
        price_feed=None,
        listener=None,
        db_engine=None,
    ):
        if price_feed is None:
            from backend.services.price_feed import price_feed as default_feed
            price_feed = default_feed
        self._engine = db_engine or default_engine
        self._store = store or PositionStore(self._engine)
        self._rating = rating or RatingEngine(self._engine)
        self._price_feed = price_feed
        self._executor = executor or SettlementExecutor(
            store=self._store, rating=self._rating, price_feed=price_feed
        )
        self._listener = listener

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def open_position(
        self,
        owner_id: int,
        symbol: str,
        direction: str,
        amount,
        multiplier: int,
        take_profit=None,
        stop_loss=None,
    ) -> Position:
        """Open a deal at the current market price.

        The staked amount is not debited; the balance moves only at settlement.
        """
        symbol = symbol.upper()
        amount = to_decimal(amount)
        if not self._price_feed.is_supported(symbol):
            raise InvalidOrder(f"Unsupported symbol: {symbol}")
        if direction not in DIRECTIONS:
            raise InvalidOrder(f"Unknown direction: {direction}")
        if amount <= 0:
            raise InvalidOrder("amount must be positive")
        if not 1 <= multiplier <= settings.max_multiplier:
            raise InvalidOrder(f"multiplier must be between 1 and {settings.max_multiplier}")

        user = await self._run(self._get_user, owner_id)
        if to_decimal(user.balance) < amount:
            raise InsufficientBalance(f"Balance {user.balance} is below amount {amount}")

        tick = await self._price_feed.get_current_price(symbol)
        tp = to_decimal(take_profit) if take_profit is not None else None
        sl = to_decimal(stop_loss) if stop_loss is not None else None
        validate_risk_parameters(direction, tick.price, take_profit=tp, stop_loss=sl)

        position = await self._run(
            self._store.create_position,
            owner_id=owner_id,
            symbol=symbol,
            direction=direction,
            amount=amount,
            multiplier=multiplier,
            open_price=tick.price,
            take_profit=tp,
            stop_loss=sl,
        )
        logger.info(
            f"User {owner_id} opened {direction} {symbol} x{multiplier} "
            f"amount={amount} at {tick.price} (position {position.id})"
        )

        if self._listener is not None and symbol not in self._listener.symbols:
            await self._listener.refresh_subscriptions()
        return position

    async def close_position(self, owner_id: int, position_id: int) -> SettlementResult:
        return await self._executor.close_manually(owner_id, position_id)

    async def update_risk_parameters(
        self,
        owner_id: int,
        position_id: int,
        take_profit=UNSET,
        stop_loss=UNSET,
    ) -> Position:
        if take_profit is not UNSET and take_profit is not None:
            take_profit = to_decimal(take_profit)
        if stop_loss is not UNSET and stop_loss is not None:
            stop_loss = to_decimal(stop_loss)
        return await self._run(
            self._store.update_risk_parameters,
            position_id,
            owner_id,
            take_profit=take_profit,
            stop_loss=stop_loss,
        )

    async def get_owner_stats(self, owner_id: int) -> User:
        """Fresh stats, score and rank for the owner."""
        await self._run(self._get_user, owner_id)
        return await self._run(self._rating.refresh_owner, owner_id)

    async def get_rank(self, owner_id: int) -> int:
        await self._run(self._get_user, owner_id)
        return await self._run(self._rating.recompute_rank, owner_id)

    async def leaderboard(self, owner_id: int, limit: int = 50) -> list[User]:
        # The caller's own entry is refreshed before they read the board
        await self._run(self._rating.refresh_owner, owner_id)
        return await self._run(self._rating.leaderboard, limit)

    async def enriched_positions(self, owner_id: int) -> list[dict]:
        """Open positions with current price, unrealized and net PnL."""
        positions = await self._run(self._list_open, owner_id)
        if not positions:
            return []

        symbols = sorted({p.symbol for p in positions})
        ticks = await asyncio.gather(
            *(self._price_feed.get_current_price(s) for s in symbols),
            return_exceptions=True,
        )
        prices: dict[str, Decimal | None] = {}
        for symbol, tick in zip(symbols, ticks):
            if isinstance(tick, PriceFeedUnavailable):
                logger.warning(f"No price for {symbol}: {tick}")
                prices[symbol] = None
            elif isinstance(tick, BaseException):
                raise tick
            else:
                prices[symbol] = tick.price

        result = []
        for position in positions:
            price = prices.get(position.symbol)
            row = position.model_dump()
            row["current_price"] = price
            row["commission_at_close"] = commission(position, settings.commission_rate)
            if price is None:
                row["unrealized_pnl"] = None
                row["net_profit"] = None
            else:
                row["unrealized_pnl"] = unrealized_pnl(position, price)
                row["net_profit"] = net_profit(position, price, settings.commission_rate)
            result.append(row)
        return result

    # -- sync helpers (run in the thread pool) -----------------------------

    def _get_user(self, owner_id: int) -> User:
        with Session(self._engine) as session:
            user = session.get(User, owner_id)
            if user is None or not user.is_active:
                raise PositionNotFound(owner_id, "User not found")
            return user

    def _list_open(self, owner_id: int) -> list[Position]:
        with Session(self._engine) as session:
            return list(session.exec(
                select(Position)
                .where(Position.owner_id == owner_id, Position.status == STATUS_OPEN)
                .order_by(Position.opened_at.desc())
            ).all())


_service: PositionService | None = None


def get_position_service() -> PositionService:
    global _service
    if _service is None:
        from backend.engine.price_listener import get_listener
        from backend.engine.settlement_executor import get_executor

        _service = PositionService(executor=get_executor(), listener=get_listener())
    return _service
