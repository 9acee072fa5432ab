"""
Retention sweep: delete jobs older than the retention window together with
their blobs.
"""
import logging
import time
from datetime import timedelta
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from imagepipe.config import settings
from imagepipe.models.base import utcnow
from imagepipe.repositories.job_repository import JobRepository
from imagepipe.services.cache import JobCache
from imagepipe.storage.keys import original_prefix, processed_prefix
from imagepipe.storage.s3_client import StorageClient
from imagepipe.utils.logging import log_cleanup_completed
from imagepipe.utils.metrics import errors_total, jobs_cleaned_total

logger = logging.getLogger(__name__)


class CleanupService:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        storage: StorageClient,
        cache: JobCache,
        retention_days: Optional[int] = None
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.cache = cache
        self.retention_days = retention_days if retention_days is not None else settings.retention_days

    async def cleanup_expired_jobs(self) -> Tuple[int, int]:
        """
        Returns (found, cleaned).

        A job's row is deleted only after all of its blobs are gone, then its
        cached views are dropped. Any failure for one job is logged and the
        sweep moves on.
        """
        start_time = time.time()
        cutoff = utcnow() - timedelta(days=self.retention_days)

        async with self.session_factory() as db:
            jobs = await JobRepository.list_created_before(db, cutoff)
            expired = [(job.id, job.user_id) for job in jobs]

            cleaned = 0
            for job_id, user_id in expired:
                try:
                    await self.storage.delete_prefixes([
                        original_prefix(user_id, job_id),
                        processed_prefix(user_id, job_id),
                    ])
                    await JobRepository.delete(db, job_id)
                except Exception as e:
                    await db.rollback()
                    errors_total.labels(error_type="cleanup").inc()
                    logger.error(f"Failed to clean up job {job_id}: {e}", extra={"job_id": job_id, "user_id": user_id})
                    continue
                cleaned += 1
                jobs_cleaned_total.inc()
                await self.cache.invalidate_job_views(user_id, job_id)

        log_cleanup_completed(logger, found=len(expired), cleaned=cleaned, duration_ms=(time.time() - start_time) * 1000)
        return len(expired), cleaned
