"""
Celery task for stage 2 (ai-jobs queue).
"""
import asyncio
import logging

from celery.exceptions import Reject

from imagepipe.ai.vision_provider import VisionProvider
from imagepipe.messaging.publisher import ANALYZE_IMAGE_TASK
from imagepipe.services.ai_consumer import AiJobConsumer
from imagepipe.services.stage import StageOutcome
from imagepipe.storage.s3_client import get_storage_client
from imagepipe.tasks.worker_context import is_redelivery, worker_resources
from imagepipe.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _analyze_image_async(payload, redelivered: bool = False) -> StageOutcome:
    async with worker_resources() as (session_factory, cache):
        consumer = AiJobConsumer(
            session_factory=session_factory,
            storage=get_storage_client(),
            analyzer=VisionProvider(),
            cache=cache,
        )
        return await consumer.handle(payload, redelivered=redelivered)


@celery_app.task(bind=True, name=ANALYZE_IMAGE_TASK)
def analyze_image_task(self, payload):
    """Run the stage-2 consumer for one message; same ack mapping as stage 1."""
    outcome = asyncio.run(_analyze_image_async(payload, redelivered=is_redelivery(self.request)))
    if outcome is StageOutcome.REJECT:
        raise Reject("ai analysis failed", requeue=False)
