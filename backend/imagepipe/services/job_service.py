"""
Job orchestration for the API process: create, get, list.

Create inserts the row and publishes the stage-1 message without waiting
for processing. Reads go cache-first with the store as fallback, and URL
signing is applied to the view after it leaves the cache.
"""
import logging
import time
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from imagepipe.messaging.publisher import IMAGE_JOBS_QUEUE, JobPublisher
from imagepipe.models.job import AiStatus, Job, JobStatus
from imagepipe.repositories.job_repository import JobRepository
from imagepipe.schemas.job import JobResponse, PagedResponse
from imagepipe.schemas.messages import ImageJobMessage
from imagepipe.services.cache import JobCache
from imagepipe.storage.s3_client import StorageClient
from imagepipe.utils.logging import log_job_created, log_publish_failure
from imagepipe.utils.metrics import errors_total, jobs_created_total

logger = logging.getLogger(__name__)


class JobNotFoundError(Exception):
    """Job does not exist or is owned by someone else."""

    def __init__(self, job_id: str):
        super().__init__(f"No jobs exist with job id {job_id}")
        self.job_id = job_id


class JobService:
    """Service for job creation and the read path."""

    def __init__(self, storage: StorageClient, publisher: JobPublisher, cache: JobCache):
        self.storage = storage
        self.publisher = publisher
        self.cache = cache

    async def create_job(
        self,
        db: AsyncSession,
        job_id: str,
        user_id: str,
        original_url: str,
        original_filename: str,
        file_size: int,
        mime_type: str
    ) -> Job:
        """
        Insert a Pending job and publish its stage-1 message.

        An insert failure propagates and nothing is published. A publish
        failure after the commit is logged as publish_failure_post_commit and
        the job is still returned; it stays Pending until requeued.
        """
        start_time = time.time()
        job = Job(
            id=job_id,
            user_id=user_id,
            original_url=original_url,
            original_filename=original_filename,
            file_size=file_size,
            mime_type=mime_type,
            status=JobStatus.PENDING,
            ai_status=AiStatus.PENDING,
            retry_count=0,
            ai_retry_count=0,
        )
        job = await JobRepository.add(db, job)
        jobs_created_total.inc()

        await self.cache.invalidate_user_lists(user_id)

        message = ImageJobMessage(
            job_id=job.id,
            user_id=user_id,
            original_url=original_url,
            original_filename=original_filename,
            mime_type=mime_type,
        )
        try:
            await self.publisher.publish_image_job_async(message)
        except Exception as e:
            errors_total.labels(error_type="publish").inc()
            log_publish_failure(logger, job_id=job.id, user_id=user_id, queue=IMAGE_JOBS_QUEUE, error=str(e))
            return job

        log_job_created(logger, job_id=job.id, user_id=user_id, duration_ms=(time.time() - start_time) * 1000)
        return job

    async def get_job(self, db: AsyncSession, job_id: str, user_id: str) -> JobResponse:
        """
        Owner-scoped job view with signed URLs.

        Raises:
            JobNotFoundError: missing or not owned (indistinguishable)
        """
        view = await self.cache.get_job(user_id, job_id)
        if view is None:
            job = await JobRepository.get_by_id_and_user(db, job_id, user_id)
            if job is None:
                raise JobNotFoundError(job_id)
            view = JobResponse.from_job(job)
            await self.cache.set_job(view)

        return self.sign_urls(view)

    async def list_jobs(self, db: AsyncSession, user_id: str, page: int, page_size: int) -> PagedResponse[JobResponse]:
        """One page of the user's jobs, newest first, with signed URLs."""
        version = await self.cache.list_version(user_id)
        paged = None
        if version is not None:
            paged = await self.cache.get_page(user_id, version, page, page_size)
        if paged is None:
            jobs, total = await JobRepository.list_by_user(db, user_id, page, page_size)
            paged = PagedResponse[JobResponse](
                items=[JobResponse.from_job(job) for job in jobs],
                page=page,
                page_size=page_size,
                total_count=total,
                total_pages=PagedResponse.count_pages(total, page_size),
            )
            if version is not None:
                await self.cache.set_page(user_id, version, page, page_size, paged)

        return paged.model_copy(update={"items": [self.sign_urls(item) for item in paged.items]})

    # URL signing

    def _sign(self, url: Optional[str], job_id: str, field: str) -> Optional[str]:
        if not url:
            return url
        try:
            return self.storage.generate_presigned_read_url(self.storage.extract_key(url))
        except Exception as e:
            logger.warning(f"Could not sign {field} for job {job_id}, returning stored URL: {e}")
            return url

    def _sign_map(self, urls: Optional[Dict[str, str]], job_id: str, field: str) -> Optional[Dict[str, str]]:
        if urls is None:
            return None
        return {name: self._sign(url, job_id, f"{field}.{name}") for name, url in urls.items()}

    def sign_urls(self, view: JobResponse) -> JobResponse:
        """
        Copy of the view with every blob URL presigned.
        Each field is signed on its own; a failure keeps that field unsigned.
        """
        return view.model_copy(update={
            "original_url": self._sign(view.original_url, view.id, "originalUrl"),
            "thumbnails": self._sign_map(view.thumbnails, view.id, "thumbnails"),
            "optimized": self._sign_map(view.optimized, view.id, "optimized"),
        })
