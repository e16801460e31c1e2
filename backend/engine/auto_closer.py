"""AutoCloseEvaluator: decides which open positions must close now.

Two triggers feed the same SettlementExecutor:

1. Price ticks: every open position on the tick's symbol is checked against
   its take-profit and stop-loss; matches settle at the tick price.
2. Expiry sweep (scheduled): positions older than the max age settle at a
   freshly fetched market price with reason "expired".

A failure on one position never aborts the batch. It is logged, and the
position backs off exponentially before the next tick may retry it. Sweep
items that fail are picked up by the next sweep. An item that runs past its
timeout is left to finish in the background, since its close may already be
committed and still owes the owner a rating refresh and a notification.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from backend.config import settings
from backend.engine.job_runs import log_job_run
from backend.engine.position_store import PositionStore
from backend.engine.settlement_executor import SettlementExecutor, SettlementResult, get_executor
from backend.exceptions import PriceFeedUnavailable
from backend.services.settlement import as_utc, should_auto_close
from backend.utils.constants import JOB_EXPIRY_SWEEP, REASON_EXPIRED

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    checked: int = 0
    settled: int = 0
    already_closed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.failed or self.skipped:
            return "partial"
        return "success"

    def summary(self) -> str:
        text = (
            f"checked={self.checked} settled={self.settled} already_closed={self.already_closed} "
            f"failed={self.failed} skipped={self.skipped}"
        )
        if self.errors:
            text += " | " + "; ".join(self.errors[:5])
        return text


class AutoCloseEvaluator:
    def __init__(
        self,
        store: PositionStore | None = None,
        executor: SettlementExecutor | None = None,
        price_feed=None,
        max_age: timedelta | None = None,
        max_tick_age_seconds: float | None = None,
        item_timeout_seconds: float | None = None,
        retry_base_seconds: float | None = None,
        retry_max_seconds: float | None = None,
        sweep_concurrency: int | None = None,
        db_engine=None,
    ):
        if price_feed is None:
            from backend.services.price_feed import price_feed as default_feed
            price_feed = default_feed
        self._store = store or PositionStore(db_engine)
        self._executor = executor or get_executor()
        self._price_feed = price_feed
        self._db_engine = db_engine
        self.max_age = max_age or timedelta(hours=settings.max_position_age_hours)
        self.max_tick_age = _or_default(max_tick_age_seconds, settings.max_tick_age_seconds)
        self.item_timeout = _or_default(item_timeout_seconds, settings.sweep_item_timeout_seconds)
        self.retry_base = _or_default(retry_base_seconds, settings.retry_base_seconds)
        self.retry_max = _or_default(retry_max_seconds, settings.retry_max_seconds)
        self.sweep_concurrency = sweep_concurrency or settings.sweep_concurrency

        # Position ids currently being settled (not persisted)
        self.pending: set[int] = set()
        # position id -> (failed attempts, monotonic time before which it is skipped, symbol)
        self._backoff: dict[int, tuple[int, float]] = {}
        # symbol -> moment the feed dropped; older ticks for it are ignored
        self.paused_symbols: dict[str, datetime] = {}
        self._tasks: set[asyncio.Task] = set()
        # Sweep settlements that outlived their per-item timeout
        self._late: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Tick path
    # ------------------------------------------------------------------

    def submit_tick(self, tick) -> asyncio.Task:
        """Schedule tick evaluation without blocking the feed consumer."""
        task = asyncio.create_task(self.on_price_tick(tick))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def on_price_tick(self, tick) -> list[SettlementResult]:
        symbol = tick.symbol.upper()
        tick_time = as_utc(tick.timestamp)
        age = (datetime.now(timezone.utc) - tick_time).total_seconds()
        if age > self.max_tick_age:
            logger.debug(f"Ignoring stale {symbol} tick ({age:.1f}s old)")
            return []

        paused_at = self.paused_symbols.get(symbol)
        if paused_at is not None:
            if tick_time <= paused_at:
                return []
            del self.paused_symbols[symbol]
            logger.info(f"{symbol}: price feed recovered, resuming evaluation")

        try:
            positions = await self._run(self._store.list_open_positions_by_symbol, symbol)
        except Exception as e:
            logger.error(f"{symbol}: failed to load open positions: {e}")
            return []
        self._prune_backoff(symbol, {p.id for p in positions})

        matched = []
        for position in positions:
            if position.id in self.pending or self._backing_off(position.id):
                continue
            decision = should_auto_close(position, tick.price)
            if decision.close:
                # Claimed before any await so a concurrent tick skips it
                self.pending.add(position.id)
                matched.append((position, decision.reason))

        if not matched:
            return []

        logger.info(f"{symbol} @ {tick.price}: {len(matched)} position(s) to close")
        results = await asyncio.gather(
            *(self._settle_from_tick(p, tick.price, reason) for p, reason in matched)
        )
        return [r for r in results if r is not None]

    async def _settle_from_tick(self, position, price: Decimal, reason: str) -> SettlementResult | None:
        try:
            result = await self._executor.settle(position.id, position.owner_id, price, reason)
        except Exception as e:
            delay = self._schedule_retry(position.id, position.symbol)
            logger.error(f"Position {position.id}: auto-close ({reason}) failed, retry in {delay:.0f}s: {e}")
            return None
        finally:
            self.pending.discard(position.id)

        self._backoff.pop(position.id, None)
        return result

    def pause_symbol(self, symbol: str, reason: str = ""):
        symbol = symbol.upper()
        if symbol not in self.paused_symbols:
            logger.warning(f"{symbol}: pausing tick evaluation ({reason})")
        self.paused_symbols[symbol] = datetime.now(timezone.utc)

    def pause_symbols(self, symbols, reason: str = ""):
        for symbol in symbols:
            self.pause_symbol(symbol, reason)

    def _backing_off(self, position_id: int) -> bool:
        entry = self._backoff.get(position_id)
        return entry is not None and time.monotonic() < entry[1]

    def _schedule_retry(self, position_id: int, symbol: str = "") -> float:
        attempts = self._backoff.get(position_id, (0, 0.0, ""))[0] + 1
        delay = min(self.retry_max, self.retry_base * (2 ** (attempts - 1)))
        self._backoff[position_id] = (attempts, time.monotonic() + delay, symbol.upper())
        return delay

    def _prune_backoff(self, symbol: str, open_ids: set[int]):
        # Positions closed by the sweep or by their owner drop out of the open list
        for position_id, entry in list(self._backoff.items()):
            if entry[2] == symbol and position_id not in open_ids:
                del self._backoff[position_id]

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    async def run_expiry_sweep(self, now: datetime | None = None) -> SweepReport:
        """Close every position past max age at the current market price."""
        now = now or datetime.now(timezone.utc)
        report = SweepReport()

        try:
            positions = await self._run(self._store.list_open_positions_older_than, self.max_age, now)
        except Exception as e:
            logger.error(f"Expiry sweep: failed to list positions: {e}")
            report.errors.append(str(e))
            await self._run(log_job_run, JOB_EXPIRY_SWEEP, "error", message=str(e), db_engine=self._db_engine)
            return report

        report.checked = len(positions)
        if not positions:
            logger.debug("Expiry sweep: nothing to close")
            await self._run(log_job_run, JOB_EXPIRY_SWEEP, "success", message=report.summary(), db_engine=self._db_engine)
            return report

        # One price per symbol for the whole batch
        prices: dict[str, Decimal | None] = {}
        for symbol in sorted({p.symbol for p in positions}):
            try:
                prices[symbol] = (await self._price_feed.get_current_price(symbol)).price
            except PriceFeedUnavailable as e:
                logger.warning(f"Expiry sweep: no price for {symbol}, skipping its positions: {e}")
                report.errors.append(str(e))
                prices[symbol] = None

        semaphore = asyncio.Semaphore(self.sweep_concurrency)

        async def _expire(position):
            price = prices.get(position.symbol)
            if price is None or position.id in self.pending:
                report.skipped += 1
                return
            async with semaphore:
                self.pending.add(position.id)
                settlement = asyncio.create_task(
                    self._executor.settle(position.id, position.owner_id, price, REASON_EXPIRED)
                )
                detached = False
                try:
                    result = await asyncio.wait_for(asyncio.shield(settlement), timeout=self.item_timeout)
                except asyncio.TimeoutError:
                    # Stays claimed until settle returns
                    detached = True
                    self._detach(settlement, position.id)
                    report.skipped += 1
                    report.errors.append(f"position {position.id}: timed out")
                    logger.warning(
                        f"Expiry sweep: position {position.id} still settling after {self.item_timeout}s"
                    )
                    return
                except Exception as e:
                    report.failed += 1
                    report.errors.append(f"position {position.id}: {e}")
                    logger.error(f"Expiry sweep: position {position.id} failed: {e}")
                    return
                finally:
                    if not detached:
                        self.pending.discard(position.id)

            self._backoff.pop(position.id, None)
            if result.already_closed:
                report.already_closed += 1
            else:
                report.settled += 1

        await asyncio.gather(*(_expire(p) for p in positions))

        logger.info(f"Expiry sweep: {report.summary()}")
        await self._run(
            log_job_run,
            JOB_EXPIRY_SWEEP,
            report.status,
            settled=report.settled,
            failed=report.failed,
            skipped=report.skipped,
            message=report.summary(),
            db_engine=self._db_engine,
        )
        return report

    # ------------------------------------------------------------------

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: fn(*args, **kwargs))

    def _detach(self, task: asyncio.Task, position_id: int):
        self._late.add(task)

        def _done(t: asyncio.Task):
            self._late.discard(t)
            self.pending.discard(position_id)
            if t.cancelled():
                return
            error = t.exception()
            if error is not None:
                logger.error(f"Position {position_id}: late expiry settlement failed: {error}")
                return
            self._backoff.pop(position_id, None)
            logger.info(f"Position {position_id}: expiry settlement finished after its timeout")

        task.add_done_callback(_done)

    async def drain(self):
        """Wait for in-flight tick evaluations and late sweep settlements."""
        tasks = list(self._tasks) + list(self._late)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def status(self) -> dict:
        return {
            "pending": sorted(self.pending),
            "backing_off": sorted(pid for pid in self._backoff if self._backing_off(pid)),
            "paused_symbols": sorted(self.paused_symbols),
            "in_flight_ticks": len(self._tasks),
            "late_settlements": len(self._late),
        }


def _or_default(value, default):
    return default if value is None else value


_evaluator: AutoCloseEvaluator | None = None


def get_evaluator() -> AutoCloseEvaluator:
    global _evaluator
    if _evaluator is None:
        _evaluator = AutoCloseEvaluator()
    return _evaluator
