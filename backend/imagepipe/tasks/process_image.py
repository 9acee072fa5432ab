"""
Celery task for stage 1 (image-jobs queue).
"""
import asyncio
import logging

from celery.exceptions import Reject

from imagepipe.messaging.publisher import PROCESS_IMAGE_TASK, get_job_publisher
from imagepipe.processing.image_processor import ImageProcessor
from imagepipe.services.image_consumer import ImageJobConsumer
from imagepipe.services.stage import StageOutcome
from imagepipe.storage.s3_client import get_storage_client
from imagepipe.tasks.worker_context import is_redelivery, worker_resources
from imagepipe.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _process_image_async(payload, redelivered: bool = False) -> StageOutcome:
    async with worker_resources() as (session_factory, cache):
        consumer = ImageJobConsumer(
            session_factory=session_factory,
            storage=get_storage_client(),
            processor=ImageProcessor(),
            publisher=get_job_publisher(),
            cache=cache,
        )
        return await consumer.handle(payload, redelivered=redelivered)


@celery_app.task(bind=True, name=PROCESS_IMAGE_TASK)
def process_image_task(self, payload):
    """
    Run the stage-1 consumer for one message.

    Returning acks the message; Reject(requeue=False) drops it. Any other
    exception (e.g. the database is down before the job could be updated)
    is recorded by Celery as a task failure.
    """
    outcome = asyncio.run(_process_image_async(payload, redelivered=is_redelivery(self.request)))
    if outcome is StageOutcome.REJECT:
        raise Reject("image processing failed", requeue=False)
