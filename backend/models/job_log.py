"""JobLog model: per-run record of scheduled engine jobs."""

from datetime import datetime, timezone

from sqlmodel import SQLModel, Field


class JobLog(SQLModel, table=True):
    __tablename__ = "job_log"

    id: int | None = Field(default=None, primary_key=True)
    job: str = Field(index=True)  # "expiry_sweep", "rank_reconcile"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: str  # "success", "partial", "error"
    settled: int = 0
    failed: int = 0
    skipped: int = 0
    message: str | None = None
