"""
Stage-1 consumer: image processing.

Pending -> Processing -> Completed | Error. A Completed job gets its stage-2
message; an Error job has its AI stage forced to Skipped and the message is
rejected without requeue.
"""
import asyncio
import logging
import time
from datetime import timedelta
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from imagepipe.config import settings
from imagepipe.messaging.publisher import AI_JOBS_QUEUE, IMAGE_JOBS_QUEUE, JobPublisher
from imagepipe.models.job import Job
from imagepipe.processing.image_processor import WEBP_CONTENT_TYPE, ImageProcessor
from imagepipe.repositories.job_repository import JobRepository
from imagepipe.schemas.messages import ImageAiJobMessage, ImageJobMessage
from imagepipe.services.cache import JobCache
from imagepipe.services.stage import STAGE_IMAGE, StageOutcome, claim_window, describe_error
from imagepipe.storage.keys import processed_key
from imagepipe.storage.s3_client import StorageClient
from imagepipe.utils.logging import (
    log_message_rejected,
    log_publish_failure,
    log_stage_completed,
    log_stage_failed,
    log_stage_skipped,
    log_stage_started,
)
from imagepipe.utils.metrics import (
    errors_total,
    job_processing_duration_seconds,
    jobs_failed_total,
    jobs_processed_total,
    jobs_processing,
)

logger = logging.getLogger(__name__)


class ImageJobConsumer:
    """Handles one image-jobs message per `handle` call."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        storage: StorageClient,
        processor: ImageProcessor,
        publisher: JobPublisher,
        cache: JobCache,
        stale_after: Optional[timedelta] = None
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.processor = processor
        self.publisher = publisher
        self.cache = cache
        self.stale_after = stale_after or timedelta(minutes=settings.claim_stale_after_minutes)

    async def handle(self, payload, redelivered: bool = False) -> StageOutcome:
        """
        Process one message. `redelivered` is the broker's flag: the previous
        delivery was never acknowledged, so its consumer is gone and a
        Processing claim can be taken over at once.
        """
        try:
            message = ImageJobMessage.model_validate(payload)
        except ValidationError as e:
            log_message_rejected(logger, queue=IMAGE_JOBS_QUEUE, error=str(e))
            return StageOutcome.REJECT

        async with self.session_factory() as db:
            job = await JobRepository.get_by_id(db, message.job_id)
            if job is None:
                log_stage_skipped(logger, job_id=message.job_id, stage=STAGE_IMAGE, reason="job not found",
                                  user_id=message.user_id)
                return StageOutcome.ACK

            if not await JobRepository.claim_image_processing(db, job.id, claim_window(self.stale_after, redelivered)):
                log_stage_skipped(logger, job_id=job.id, stage=STAGE_IMAGE,
                                  reason=f"already claimed or finished (status={job.status.value})",
                                  user_id=job.user_id)
                return StageOutcome.ACK

            await db.refresh(job)
            await self.cache.invalidate_job_views(job.user_id, job.id)
            log_stage_started(logger, job_id=job.id, user_id=job.user_id, stage=STAGE_IMAGE)

            jobs_processing.labels(stage=STAGE_IMAGE).inc()
            try:
                return await self._run(db, job)
            finally:
                jobs_processing.labels(stage=STAGE_IMAGE).dec()

    async def _run(self, db: AsyncSession, job: Job) -> StageOutcome:
        start_time = time.monotonic()
        try:
            data = await self.storage.download(self.storage.extract_key(job.original_url))
            result = await asyncio.to_thread(self.processor.process, data, job.file_size)

            thumbnails = {}
            for name, content in result.thumbnails.items():
                key = processed_key(job.user_id, job.id, f"{name}.webp")
                thumbnails[name] = await self.storage.upload(content, key, WEBP_CONTENT_TYPE)

            optimized = {}
            for fmt, content in result.optimized.items():
                key = processed_key(job.user_id, job.id, f"optimized.{fmt}")
                optimized[fmt] = await self.storage.upload(content, key, f"image/{fmt}")

            job.complete_image_processing(thumbnails, optimized, result.metadata)
            await db.commit()
        except Exception as e:
            duration = time.monotonic() - start_time
            error = describe_error(e)
            log_stage_failed(logger, job_id=job.id, user_id=job.user_id, stage=STAGE_IMAGE,
                             error=error, duration_ms=duration * 1000)

            await db.rollback()
            await db.refresh(job)
            job.fail_image_processing(error)
            job.skip_ai_analysis()
            await db.commit()

            jobs_failed_total.labels(stage=STAGE_IMAGE).inc()
            job_processing_duration_seconds.labels(stage=STAGE_IMAGE, status="Error").observe(duration)
            await self.cache.invalidate_job_views(job.user_id, job.id)
            return StageOutcome.REJECT

        duration = time.monotonic() - start_time
        jobs_processed_total.labels(stage=STAGE_IMAGE).inc()
        job_processing_duration_seconds.labels(stage=STAGE_IMAGE, status="Completed").observe(duration)
        log_stage_completed(logger, job_id=job.id, user_id=job.user_id, stage=STAGE_IMAGE,
                            duration_ms=duration * 1000)
        await self.cache.invalidate_job_views(job.user_id, job.id)

        await self._publish_ai_job(job)
        return StageOutcome.ACK

    async def _publish_ai_job(self, job: Job) -> None:
        """
        Hand the job to stage 2. Completed is already committed, so a publish
        failure leaves the AI stage Pending for requeue_jobs.py.
        """
        message = ImageAiJobMessage(
            job_id=job.id,
            user_id=job.user_id,
            source_image_url=job.optimized_web_url or job.original_url,
        )
        try:
            await self.publisher.publish_ai_job_async(message)
        except Exception as e:
            errors_total.labels(error_type="publish").inc()
            log_publish_failure(logger, job_id=job.id, user_id=job.user_id, queue=AI_JOBS_QUEUE, error=str(e))
