"""
Job message publisher.

Stage messages travel as Celery tasks on two durable queues. The payload is
the camelCase wire dict, sent as the single positional argument of the task.
"""
import asyncio
import logging
from typing import Optional

from celery import Celery

from imagepipe.schemas.messages import ImageAiJobMessage, ImageJobMessage

logger = logging.getLogger(__name__)

IMAGE_JOBS_QUEUE = "image-jobs"
AI_JOBS_QUEUE = "ai-jobs"

PROCESS_IMAGE_TASK = "process_image"
ANALYZE_IMAGE_TASK = "analyze_image"


class PublishError(Exception):
    """The broker did not accept the message."""


class JobPublisher:
    def __init__(self, app: Optional[Celery] = None):
        self._app = app

    @property
    def app(self) -> Celery:
        if self._app is None:
            from imagepipe.workers.celery_app import celery_app
            self._app = celery_app
        return self._app

    def _send(self, task_name: str, queue: str, payload: dict) -> None:
        try:
            self.app.send_task(
                task_name,
                args=[payload],
                queue=queue,
                routing_key=queue,
                delivery_mode=2,
            )
        except Exception as e:
            raise PublishError(f"Failed to publish to {queue}: {e}") from e
        logger.debug(f"Published {task_name} to {queue} for job {payload.get('jobId')}")

    def publish_image_job(self, message: ImageJobMessage) -> None:
        self._send(PROCESS_IMAGE_TASK, IMAGE_JOBS_QUEUE, message.to_wire())

    def publish_ai_job(self, message: ImageAiJobMessage) -> None:
        self._send(ANALYZE_IMAGE_TASK, AI_JOBS_QUEUE, message.to_wire())

    # The Celery producer is blocking; keep it off the event loop.

    async def publish_image_job_async(self, message: ImageJobMessage) -> None:
        await asyncio.to_thread(self.publish_image_job, message)

    async def publish_ai_job_async(self, message: ImageAiJobMessage) -> None:
        await asyncio.to_thread(self.publish_ai_job, message)


_publisher: Optional[JobPublisher] = None


def get_job_publisher() -> JobPublisher:
    global _publisher
    if _publisher is None:
        _publisher = JobPublisher()
    return _publisher
