"""Per-owner statistics, score and rank.

Stats are always derived from a full scan of the owner's closed positions, so
running a recomputation twice, or after any number of incremental updates,
yields the same values.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, func, select

from backend.database import engine as default_engine
from backend.engine.job_runs import log_job_run
from backend.exceptions import PersistenceFailure
from backend.models.position import Position
from backend.models.user import User
from backend.services.settlement import to_decimal
from backend.utils.constants import (
    AMOUNT_STEP,
    JOB_RANK_RECONCILE,
    MONEY_STEP,
    SCORE_TRADES_CAP,
    SCORE_WEIGHT_PNL,
    SCORE_WEIGHT_TRADES,
    SCORE_WEIGHT_VOLUME,
    SCORE_WEIGHT_WIN_RATE,
    STATUS_CLOSED,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class OwnerStats:
    total_trades: int = 0
    total_volume: Decimal = field(default=ZERO)
    profitable_trades: int = 0
    win_rate: Decimal = field(default=ZERO)
    max_profit: Decimal = field(default=ZERO)
    max_loss: Decimal = field(default=ZERO)
    average_amount: Decimal = field(default=ZERO)
    total_pnl: Decimal = field(default=ZERO)


def compute_stats(closed_positions) -> OwnerStats:
    """Aggregate closed positions into OwnerStats."""
    stats = OwnerStats()
    for position in closed_positions:
        profit = to_decimal(position.profit or 0)
        stats.total_trades += 1
        stats.total_volume += to_decimal(position.amount)
        stats.total_pnl += profit
        if profit > 0:
            stats.profitable_trades += 1
        # Best trade never reported below zero, worst never above
        stats.max_profit = max(stats.max_profit, profit)
        stats.max_loss = min(stats.max_loss, profit)

    if stats.total_trades:
        stats.win_rate = (
            Decimal(stats.profitable_trades) * 100 / stats.total_trades
        ).quantize(MONEY_STEP, rounding=ROUND_HALF_UP)
        stats.average_amount = (stats.total_volume / stats.total_trades).quantize(
            AMOUNT_STEP, rounding=ROUND_HALF_UP
        )
    return stats


def score(stats: OwnerStats) -> int:
    """Weighted composite of PnL, win rate, volume and capped trade count."""
    pnl_term = max(ZERO, to_decimal(stats.total_pnl) / 100) * SCORE_WEIGHT_PNL
    win_term = to_decimal(stats.win_rate) * SCORE_WEIGHT_WIN_RATE
    volume_term = to_decimal(stats.total_volume) / 1000 * SCORE_WEIGHT_VOLUME
    trades_term = min(stats.total_trades * 2, SCORE_TRADES_CAP) * SCORE_WEIGHT_TRADES
    raw = pnl_term + win_term + volume_term + trades_term
    return max(0, int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


class RatingEngine:
    # One refresh per owner at a time across instances in this process;
    # the row lock in refresh_owner covers other processes
    _owner_locks: dict[int, threading.Lock] = {}
    _owner_locks_guard = threading.Lock()

    def __init__(self, db_engine=None):
        self._engine = db_engine or default_engine

    def recompute_stats(self, owner_id: int) -> OwnerStats:
        with Session(self._engine) as session:
            return self._scan(session, owner_id)

    def recompute_rank(self, owner_id: int) -> int:
        """rank = 1 + number of users with a strictly greater score; ties share a rank."""
        try:
            with Session(self._engine) as session:
                user = session.get(User, owner_id)
                if user is None:
                    raise PersistenceFailure(f"User {owner_id} not found")
                higher = session.exec(
                    select(func.count()).select_from(User).where(User.rating_score > user.rating_score)
                ).one()
                user.rating_rank = higher + 1
                session.add(user)
                session.commit()
                return user.rating_rank
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to rank user {owner_id}: {e}") from e

    def refresh_owner(self, owner_id: int) -> User:
        """Recompute and persist stats and score for one owner, then their rank."""
        try:
            with self._owner_lock(owner_id), Session(self._engine) as session:
                user = session.exec(
                    select(User).where(User.id == owner_id).with_for_update()
                ).first()
                if user is None:
                    raise PersistenceFailure(f"User {owner_id} not found")
                stats = self._scan(session, owner_id)
                self._apply_stats(user, stats)
                session.add(user)
                session.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to refresh stats for user {owner_id}: {e}") from e

        self.recompute_rank(owner_id)
        with Session(self._engine) as session:
            return session.get(User, owner_id)

    def reconcile_all(self) -> int:
        """Recompute stats, score and rank for every user. Returns the user count."""
        try:
            with Session(self._engine) as session:
                users = session.exec(select(User)).all()
                for user in users:
                    stats = self._scan(session, user.id)
                    if stats.total_trades != user.trades_count:
                        logger.warning(
                            f"User {user.id}: trades_count {user.trades_count} "
                            f"!= {stats.total_trades} closed positions"
                        )
                    self._apply_stats(user, stats)

                scores = [u.rating_score for u in users]
                for user in users:
                    user.rating_rank = 1 + sum(1 for s in scores if s > user.rating_score)
                    session.add(user)
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Rank reconciliation failed: {e}")
            log_job_run(JOB_RANK_RECONCILE, "error", message=str(e), db_engine=self._engine)
            raise PersistenceFailure(f"Rank reconciliation failed: {e}") from e

        logger.info(f"Reconciled ratings for {len(users)} users")
        log_job_run(JOB_RANK_RECONCILE, "success", settled=len(users), db_engine=self._engine)
        return len(users)

    def leaderboard(self, limit: int = 50) -> list[User]:
        with Session(self._engine) as session:
            return list(session.exec(
                select(User)
                .where(User.is_active == True)  # noqa: E712
                .order_by(User.rating_score.desc(), User.id)
                .limit(limit)
            ).all())

    # -- internals --------------------------------------------------------

    def _owner_lock(self, owner_id: int) -> threading.Lock:
        with self._owner_locks_guard:
            return self._owner_locks.setdefault(owner_id, threading.Lock())

    @staticmethod
    def _scan(session: Session, owner_id: int) -> OwnerStats:
        positions = session.exec(
            select(Position).where(
                Position.owner_id == owner_id,
                Position.status == STATUS_CLOSED,
            )
        ).all()
        return compute_stats(positions)

    @staticmethod
    def _apply_stats(user: User, stats: OwnerStats):
        user.total_trades_volume = stats.total_volume
        user.profitable_trades_count = stats.profitable_trades
        user.win_rate = stats.win_rate
        user.max_profit = stats.max_profit
        user.max_loss = stats.max_loss
        user.average_trade_amount = stats.average_amount
        user.total_pnl = stats.total_pnl
        user.rating_score = score(stats)
        user.updated_at = datetime.now(timezone.utc)


rating_engine = RatingEngine()
