"""
Business logic services.
"""
from imagepipe.services.job_service import JobService, JobNotFoundError
from imagepipe.services.auth_service import AuthService
from imagepipe.services.cleanup_service import CleanupService

__all__ = [
    "JobService",
    "JobNotFoundError",
    "AuthService",
    "CleanupService",
]
