"""System API: health check, scheduler status, job logs, manual sweep and reconcile."""

import asyncio

from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from backend.api.deps import get_admin_user, to_http_exception
from backend.database import get_session
from backend.exceptions import PersistenceFailure
from backend.models.job_log import JobLog

router = APIRouter(prefix="/api/system", tags=["system"])


def get_evaluator():
    from backend.engine.auto_closer import get_evaluator as _get
    return _get()


def get_rating_engine():
    from backend.engine.rating import rating_engine
    return rating_engine


def get_executor():
    from backend.engine.settlement_executor import get_executor as _get
    return _get()


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/scheduler", dependencies=[Depends(get_admin_user)])
def scheduler_status(evaluator=Depends(get_evaluator)):
    """Scheduler jobs plus price stream and evaluator state."""
    from backend.engine.price_listener import get_listener
    from backend.engine.scheduler import get_scheduler_status

    status = get_scheduler_status()
    status["price_stream"] = get_listener().status()
    status["evaluator"] = evaluator.status()
    return status


@router.get("/logs", dependencies=[Depends(get_admin_user)])
def job_logs(
    job: str | None = None,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(JobLog).order_by(JobLog.timestamp.desc(), JobLog.id.desc())
    if job is not None:
        stmt = stmt.where(JobLog.job == job)
    if status is not None:
        stmt = stmt.where(JobLog.status == status)
    stmt = stmt.offset(offset).limit(limit)
    return session.exec(stmt).all()


@router.get("/settlement-stats", dependencies=[Depends(get_admin_user)])
def settlement_stats(executor=Depends(get_executor)):
    return executor.stats.to_dict()


@router.post("/sweep", dependencies=[Depends(get_admin_user)])
async def trigger_sweep(evaluator=Depends(get_evaluator)):
    """Run the expiry sweep now."""
    report = await evaluator.run_expiry_sweep()
    return {
        "status": report.status,
        "checked": report.checked,
        "settled": report.settled,
        "already_closed": report.already_closed,
        "failed": report.failed,
        "skipped": report.skipped,
        "errors": report.errors,
    }


@router.post("/reconcile", dependencies=[Depends(get_admin_user)])
async def trigger_reconcile(rating=Depends(get_rating_engine)):
    """Recompute stats, score and rank for every user."""
    loop = asyncio.get_running_loop()
    try:
        users = await loop.run_in_executor(None, rating.reconcile_all)
    except PersistenceFailure as e:
        raise to_http_exception(e)
    return {"status": "ok", "users": users}
