"""SettlementExecutor: settles one position at one price, at most once.

Both the automatic paths (tick evaluator, expiry sweep) and the manual close
go through ``settle``. Exactly-once is enforced by PositionStore.apply_close;
a losing caller gets the winner's persisted result back with
``already_closed=True`` instead of an error.

Database calls are synchronous SQLModel sessions, so they run in the default
thread pool to keep the event loop free for price ticks.
"""

import asyncio
import functools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from backend.config import settings
from backend.engine.position_store import PositionStore
from backend.engine.rating import RatingEngine
from backend.exceptions import PersistenceFailure, PositionNotFound
from backend.services.notifications import notify_position_closed
from backend.services.settlement import commission, net_profit, to_decimal
from backend.utils.constants import AUTOMATIC_REASONS, REASON_MANUAL, STATUS_CLOSED

logger = logging.getLogger(__name__)

RECENT_ERRORS_KEPT = 20


@dataclass
class SettlementResult:
    id: int
    close_price: Decimal
    profit: Decimal
    commission: Decimal
    closed_at: datetime
    reason: str | None = None
    already_closed: bool = False

    @classmethod
    def from_position(cls, position, already_closed: bool = False) -> "SettlementResult":
        return cls(
            id=position.id,
            close_price=to_decimal(position.close_price),
            profit=to_decimal(position.profit),
            commission=to_decimal(position.commission),
            closed_at=position.closed_at,
            reason=position.close_reason,
            already_closed=already_closed,
        )


@dataclass
class ClosureStats:
    """In-process counters for the settlement-stats endpoint."""
    total_closed: int = 0
    already_closed: int = 0
    failures: int = 0
    by_reason: dict[str, int] = field(default_factory=dict)
    total_processing_ms: float = 0.0
    recent_errors: deque = field(default_factory=lambda: deque(maxlen=RECENT_ERRORS_KEPT))
    last_closed_at: datetime | None = None

    def record_success(self, reason: str | None, elapsed_ms: float):
        self.total_closed += 1
        key = reason or "unknown"
        self.by_reason[key] = self.by_reason.get(key, 0) + 1
        self.total_processing_ms += elapsed_ms
        self.last_closed_at = datetime.now(timezone.utc)

    def record_failure(self, position_id: int, error: Exception):
        self.failures += 1
        self.recent_errors.append({
            "position_id": position_id,
            "error": str(error),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def to_dict(self) -> dict:
        avg = self.total_processing_ms / self.total_closed if self.total_closed else 0.0
        return {
            "total_closed": self.total_closed,
            "already_closed": self.already_closed,
            "failures": self.failures,
            "by_reason": dict(self.by_reason),
            "average_processing_ms": round(avg, 2),
            "last_closed_at": self.last_closed_at.isoformat() if self.last_closed_at else None,
            "recent_errors": list(self.recent_errors),
        }


class SettlementExecutor:
    def __init__(
        self,
        store: PositionStore | None = None,
        rating: RatingEngine | None = None,
        price_feed=None,
        notifier=None,
        commission_rate: Decimal | None = None,
    ):
        if price_feed is None:
            from backend.services.price_feed import price_feed as default_feed
            price_feed = default_feed
        self._store = store or PositionStore()
        self._rating = rating or RatingEngine()
        self._price_feed = price_feed
        self._notifier = notifier or notify_position_closed
        self._commission_rate = commission_rate if commission_rate is not None else settings.commission_rate
        self._background: set[asyncio.Task] = set()
        self.stats = ClosureStats()

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def _load_owned(self, position_id: int, owner_id: int | None):
        position = await self._run(self._store.get_position, position_id)
        if position is None or (owner_id is not None and position.owner_id != owner_id):
            raise PositionNotFound(position_id)
        return position

    async def settle(
        self,
        position_id: int,
        owner_id: int | None,
        close_price,
        reason: str,
    ) -> SettlementResult:
        """Close a position at close_price.

        Raises PositionNotFound (missing or not owned) and PersistenceFailure
        (retryable). An already-closed position is returned, not raised.
        """
        started = time.monotonic()
        position = await self._load_owned(position_id, owner_id)
        if position.status == STATUS_CLOSED:
            self.stats.already_closed += 1
            return SettlementResult.from_position(position, already_closed=True)

        price = to_decimal(close_price)
        fee = commission(position, self._commission_rate)
        profit = net_profit(position, price, self._commission_rate)
        closed_at = datetime.now(timezone.utc)

        try:
            outcome = await self._run(
                self._store.apply_close, position_id, price, closed_at, profit, fee, reason
            )
        except PersistenceFailure as e:
            logger.error(f"Position {position_id}: settlement failed: {e}")
            self.stats.record_failure(position_id, e)
            raise

        if not outcome.applied:
            self.stats.already_closed += 1
            return SettlementResult.from_position(outcome.position, already_closed=True)

        elapsed_ms = (time.monotonic() - started) * 1000
        self.stats.record_success(reason, elapsed_ms)
        closed = outcome.position
        logger.info(
            f"Position {position_id} closed ({reason}) at {price}: "
            f"profit={closed.profit} commission={closed.commission}"
        )

        await self._refresh_rating(closed.owner_id)
        if reason in AUTOMATIC_REASONS:
            self._spawn_notification(closed, reason)
        return SettlementResult.from_position(closed)

    async def close_manually(self, owner_id: int, position_id: int) -> SettlementResult:
        """Owner-initiated close at the current market price. Errors propagate."""
        position = await self._load_owned(position_id, owner_id)
        if position.status == STATUS_CLOSED:
            self.stats.already_closed += 1
            return SettlementResult.from_position(position, already_closed=True)

        tick = await self._price_feed.get_current_price(position.symbol)
        return await self.settle(position_id, owner_id, tick.price, REASON_MANUAL)

    async def _refresh_rating(self, owner_id: int):
        # The periodic reconcile job repairs anything missed here
        try:
            await self._run(self._rating.refresh_owner, owner_id)
        except PersistenceFailure as e:
            logger.warning(f"Rating refresh for user {owner_id} deferred: {e}")

    def _spawn_notification(self, position, reason: str):
        task = asyncio.create_task(self._notifier(position, reason))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self):
        """Wait for in-flight notifications (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


_executor: SettlementExecutor | None = None


def get_executor() -> SettlementExecutor:
    """Process-wide executor shared by the evaluator, scheduler and API."""
    global _executor
    if _executor is None:
        _executor = SettlementExecutor()
    return _executor
