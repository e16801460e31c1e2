"""APScheduler integration for FastAPI.

Runs the engine's recurring jobs: the expiry sweep, the full rank
reconciliation and the price-stream subscription refresh.
"""

import asyncio
import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from backend.config import settings
from backend.utils.constants import JOB_EXPIRY_SWEEP, JOB_RANK_RECONCILE

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

JOB_SUBSCRIPTION_REFRESH = "subscription_refresh"


async def run_expiry_sweep():
    from backend.engine.auto_closer import get_evaluator

    try:
        report = await get_evaluator().run_expiry_sweep()
    except Exception as e:
        logger.error(f"Expiry sweep crashed: {e}", exc_info=True)
        return
    if report.failed:
        from backend.services.notifications import send_telegram
        send_telegram(f"Expiry sweep: {report.failed} position(s) failed to settle")


async def run_rank_reconcile():
    from backend.engine.rating import rating_engine

    loop = asyncio.get_running_loop()
    try:
        await loop.run_in_executor(None, rating_engine.reconcile_all)
    except Exception as e:
        logger.error(f"Rank reconciliation crashed: {e}", exc_info=True)


async def run_subscription_refresh():
    from backend.engine.price_listener import get_listener

    try:
        await get_listener().refresh_subscriptions()
    except Exception as e:
        logger.error(f"Subscription refresh failed: {e}")


def _add_job(func, job_id: str, name: str, trigger: IntervalTrigger, **kwargs):
    scheduler.add_job(
        func,
        trigger=trigger,
        **kwargs,
        id=job_id,
        name=name,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
    )


def start_scheduler():
    """Register the engine jobs and start the scheduler."""
    _add_job(
        run_expiry_sweep,
        JOB_EXPIRY_SWEEP,
        "Expiry sweep",
        IntervalTrigger(minutes=settings.sweep_interval_minutes),
        # First run at startup closes deals that expired while the service was down
        next_run_time=datetime.now(timezone.utc),
    )
    _add_job(
        run_rank_reconcile,
        JOB_RANK_RECONCILE,
        "Rank reconciliation",
        IntervalTrigger(minutes=settings.rank_reconcile_interval_minutes),
    )
    _add_job(
        run_subscription_refresh,
        JOB_SUBSCRIPTION_REFRESH,
        "Price subscription refresh",
        IntervalTrigger(seconds=settings.subscription_refresh_seconds),
    )

    scheduler.start()
    logger.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")


def stop_scheduler():
    """Shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
    logger.info("Scheduler stopped")


def get_scheduler_status() -> dict:
    """Return current scheduler state for the API."""
    jobs = scheduler.get_jobs()
    return {
        "running": scheduler.running,
        "job_count": len(jobs),
        "jobs": [
            {
                "id": j.id,
                "name": j.name,
                "next_run": str(j.next_run_time) if j.next_run_time else None,
                "trigger": str(j.trigger),
            }
            for j in jobs
        ],
    }
