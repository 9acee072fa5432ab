"""
Database models package.
"""
from imagepipe.models.base import Base
from imagepipe.models.user import User
from imagepipe.models.job import Job, JobStatus, AiStatus

__all__ = [
    "Base",
    "User",
    "Job",
    "JobStatus",
    "AiStatus",
]
