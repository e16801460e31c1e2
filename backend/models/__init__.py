"""Database models."""

from backend.models.user import User
from backend.models.position import Position
from backend.models.notification import Notification
from backend.models.job_log import JobLog

__all__ = [
    "User",
    "Position",
    "Notification",
    "JobLog",
]
