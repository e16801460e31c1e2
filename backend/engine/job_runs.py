"""JobLog writer shared by the scheduled engine jobs."""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from backend.database import engine as default_engine
from backend.models.job_log import JobLog

logger = logging.getLogger(__name__)


def log_job_run(
    job: str,
    status: str,
    settled: int = 0,
    failed: int = 0,
    skipped: int = 0,
    message: str | None = None,
    db_engine=None,
):
    """Write a JobLog entry. A failed write is logged, never raised."""
    try:
        with Session(db_engine or default_engine) as session:
            session.add(JobLog(
                job=job,
                status=status,
                settled=settled,
                failed=failed,
                skipped=skipped,
                message=message,
            ))
            session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Failed to write job log for {job}: {e}")
