"""
Stage-2 consumer: AI enrichment.

Runs only for jobs whose image stage is Completed. Pending -> Processing ->
Completed | Error on the job's AI fields.
"""
import logging
import time
from datetime import timedelta
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from imagepipe.ai.vision_provider import VisionProvider
from imagepipe.config import settings
from imagepipe.messaging.publisher import AI_JOBS_QUEUE
from imagepipe.models.job import Job
from imagepipe.repositories.job_repository import JobRepository
from imagepipe.schemas.messages import ImageAiJobMessage
from imagepipe.services.cache import JobCache
from imagepipe.services.stage import STAGE_AI, StageOutcome, claim_window, describe_error
from imagepipe.storage.s3_client import StorageClient
from imagepipe.utils.logging import (
    log_message_rejected,
    log_stage_completed,
    log_stage_failed,
    log_stage_skipped,
    log_stage_started,
)
from imagepipe.utils.metrics import (
    job_processing_duration_seconds,
    jobs_failed_total,
    jobs_processed_total,
    jobs_processing,
)

logger = logging.getLogger(__name__)


class AiJobConsumer:
    """Handles one ai-jobs message per `handle` call."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        storage: StorageClient,
        analyzer: VisionProvider,
        cache: JobCache,
        stale_after: Optional[timedelta] = None
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.analyzer = analyzer
        self.cache = cache
        self.stale_after = stale_after or timedelta(minutes=settings.claim_stale_after_minutes)

    async def handle(self, payload, redelivered: bool = False) -> StageOutcome:
        """Process one message; `redelivered` works as in ImageJobConsumer.handle."""
        try:
            message = ImageAiJobMessage.model_validate(payload)
        except ValidationError as e:
            log_message_rejected(logger, queue=AI_JOBS_QUEUE, error=str(e))
            return StageOutcome.REJECT

        async with self.session_factory() as db:
            job = await JobRepository.get_by_id(db, message.job_id)
            if job is None:
                log_stage_skipped(logger, job_id=message.job_id, stage=STAGE_AI, reason="job not found",
                                  user_id=message.user_id)
                return StageOutcome.ACK

            if not await JobRepository.claim_ai_analysis(db, job.id, claim_window(self.stale_after, redelivered)):
                log_stage_skipped(
                    logger,
                    job_id=job.id,
                    stage=STAGE_AI,
                    reason=f"not claimable (status={job.status.value}, ai_status={job.ai_status.value})",
                    user_id=job.user_id
                )
                return StageOutcome.ACK

            await db.refresh(job)
            await self.cache.invalidate_job_views(job.user_id, job.id)
            log_stage_started(logger, job_id=job.id, user_id=job.user_id, stage=STAGE_AI)

            jobs_processing.labels(stage=STAGE_AI).inc()
            try:
                return await self._run(db, job, message.source_image_url)
            finally:
                jobs_processing.labels(stage=STAGE_AI).dec()

    async def _run(self, db: AsyncSession, job: Job, source_image_url: str) -> StageOutcome:
        start_time = time.monotonic()
        try:
            data = await self.storage.download(self.storage.extract_key(source_image_url))
            analysis = await self.analyzer.analyze(data, job_id=job.id)

            job.complete_ai_analysis(analysis)
            await db.commit()
        except Exception as e:
            duration = time.monotonic() - start_time
            error = describe_error(e)
            log_stage_failed(logger, job_id=job.id, user_id=job.user_id, stage=STAGE_AI,
                             error=error, duration_ms=duration * 1000)

            await db.rollback()
            await db.refresh(job)
            job.fail_ai_analysis(error)
            await db.commit()

            jobs_failed_total.labels(stage=STAGE_AI).inc()
            job_processing_duration_seconds.labels(stage=STAGE_AI, status="Error").observe(duration)
            await self.cache.invalidate_job_views(job.user_id, job.id)
            return StageOutcome.REJECT

        duration = time.monotonic() - start_time
        jobs_processed_total.labels(stage=STAGE_AI).inc()
        job_processing_duration_seconds.labels(stage=STAGE_AI, status="Completed").observe(duration)
        log_stage_completed(logger, job_id=job.id, user_id=job.user_id, stage=STAGE_AI,
                            duration_ms=duration * 1000, model=analysis.meta.model)
        await self.cache.invalidate_job_views(job.user_id, job.id)
        return StageOutcome.ACK
