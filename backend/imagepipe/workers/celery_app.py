"""
Celery application configuration.

Two durable queues: image-jobs (stage 1) and ai-jobs (stage 2). Messages are
acknowledged only after the task returns; a task that raises Reject is
dropped without requeue, and a worker lost mid-task leaves its message for
redelivery.
"""
import logging
from celery import Celery
from celery.schedules import crontab
from celery.signals import beat_init, worker_init
from kombu import Exchange, Queue

from imagepipe.config import settings
from imagepipe.messaging.publisher import (
    AI_JOBS_QUEUE,
    ANALYZE_IMAGE_TASK,
    IMAGE_JOBS_QUEUE,
    PROCESS_IMAGE_TASK,
)
from imagepipe.utils.logging import configure_logging
from imagepipe.workers.metrics_server import start_metrics_server

logger = logging.getLogger(__name__)

CLEANUP_TASK = "cleanup_expired_jobs"
MAINTENANCE_QUEUE = "maintenance"

# Create Celery app
celery_app = Celery(
    "imagepipe",
    broker=settings.broker_url,
    include=[
        "imagepipe.tasks.process_image",
        "imagepipe.tasks.analyze_image",
        "imagepipe.tasks.cleanup",
    ]
)

jobs_exchange = Exchange("imagepipe", type="direct", durable=True)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_ignore_result=True,
    task_queues=(
        Queue(IMAGE_JOBS_QUEUE, jobs_exchange, routing_key=IMAGE_JOBS_QUEUE, durable=True),
        Queue(AI_JOBS_QUEUE, jobs_exchange, routing_key=AI_JOBS_QUEUE, durable=True),
        Queue(MAINTENANCE_QUEUE, jobs_exchange, routing_key=MAINTENANCE_QUEUE, durable=True),
    ),
    task_routes={
        PROCESS_IMAGE_TASK: {"queue": IMAGE_JOBS_QUEUE, "routing_key": IMAGE_JOBS_QUEUE},
        ANALYZE_IMAGE_TASK: {"queue": AI_JOBS_QUEUE, "routing_key": AI_JOBS_QUEUE},
        CLEANUP_TASK: {"queue": MAINTENANCE_QUEUE, "routing_key": MAINTENANCE_QUEUE},
    },
    task_default_delivery_mode="persistent",
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # One process so the metrics server sees every task's samples
    worker_pool="threads",
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.worker_concurrency,
    worker_hijack_root_logger=False,
    beat_schedule={
        "cleanup-expired-jobs-daily": {
            "task": CLEANUP_TASK,
            "schedule": crontab(hour=3, minute=0),
        },
    },
)


@worker_init.connect
def on_worker_init(**kwargs):
    """Configure JSON logging and start the metrics HTTP server (threads pool: one process)."""
    configure_logging('imagepipe-worker', settings.log_level)
    try:
        start_metrics_server(port=settings.metrics_port)
    except OSError as e:
        logger.warning(f"Failed to start metrics server: {e}")


@beat_init.connect
def on_beat_init(**kwargs):
    configure_logging('imagepipe-beat', settings.log_level)
