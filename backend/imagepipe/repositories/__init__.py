"""
Repository layer for database operations.
Provides higher-level abstractions for job queries.
"""
from imagepipe.repositories.job_repository import JobRepository

__all__ = ["JobRepository"]
