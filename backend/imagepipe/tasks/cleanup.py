"""
Celery beat task for the daily retention sweep.
"""
import asyncio
import logging

from imagepipe.services.cleanup_service import CleanupService
from imagepipe.storage.s3_client import get_storage_client
from imagepipe.tasks.worker_context import worker_resources
from imagepipe.workers.celery_app import CLEANUP_TASK, celery_app

logger = logging.getLogger(__name__)


async def _cleanup_async() -> dict:
    async with worker_resources() as (session_factory, cache):
        found, cleaned = await CleanupService(session_factory, get_storage_client(), cache).cleanup_expired_jobs()
    return {"found": found, "cleaned": cleaned}


@celery_app.task(name=CLEANUP_TASK)
def cleanup_expired_jobs_task():
    return asyncio.run(_cleanup_async())
