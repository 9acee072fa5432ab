#!/usr/bin/env python3
"""
Republish stage messages for stuck or failed jobs.

Jobs are never retried automatically. This script is the recovery path: it
resets the chosen stage to Pending (so the worker's claim accepts the
replay) and publishes a fresh message.

Usage:
    # Every job stuck for more than 30 minutes, dry run:
    python requeue_jobs.py --stuck-minutes 30

    # Include failed jobs and actually publish:
    python requeue_jobs.py --stuck-minutes 30 --include-failed --yes

    # One job, one stage:
    python requeue_jobs.py --job-id <uuid> --stage ai --yes
"""
import argparse
import asyncio
import logging
import sys
from datetime import timedelta

from imagepipe.database import create_engine_and_sessionmaker
from imagepipe.messaging.publisher import get_job_publisher
from imagepipe.models.base import utcnow
from imagepipe.models.job import AiStatus, Job, JobStatus
from imagepipe.repositories.job_repository import JobRepository
from imagepipe.schemas.messages import ImageAiJobMessage, ImageJobMessage

logger = logging.getLogger(__name__)

STAGE_IMAGE = "image"
STAGE_AI = "ai"


def stage_for(job: Job) -> str:
    """Stage 2 once image processing Completed, stage 1 otherwise."""
    return STAGE_AI if job.status == JobStatus.COMPLETED else STAGE_IMAGE


def reset_stage(job: Job, stage: str) -> None:
    if stage == STAGE_IMAGE:
        job.status = JobStatus.PENDING
        job.started_at = None
        job.ai_status = AiStatus.PENDING
        job.ai_error_message = None
    else:
        job.ai_status = AiStatus.PENDING
        job.ai_started_at = None


def publish(job: Job, stage: str) -> None:
    publisher = get_job_publisher()
    if stage == STAGE_IMAGE:
        publisher.publish_image_job(ImageJobMessage(
            job_id=job.id,
            user_id=job.user_id,
            original_url=job.original_url,
            original_filename=job.original_filename,
            mime_type=job.mime_type,
        ))
    else:
        publisher.publish_ai_job(ImageAiJobMessage(
            job_id=job.id,
            user_id=job.user_id,
            source_image_url=job.optimized_web_url or job.original_url,
        ))


async def requeue(args) -> int:
    engine, session_factory = create_engine_and_sessionmaker()
    requeued = 0
    try:
        async with session_factory() as db:
            if args.job_id:
                job = await JobRepository.get_by_id(db, args.job_id)
                if job is None:
                    logger.error(f"Job {args.job_id} not found")
                    return 1
                jobs = [job]
            else:
                cutoff = utcnow() - timedelta(minutes=args.stuck_minutes)
                jobs = await JobRepository.list_stuck(db, cutoff, include_failed=args.include_failed)

            logger.info(f"Found {len(jobs)} job(s) to requeue")

            for job in jobs:
                stage = args.stage or stage_for(job)
                if stage == STAGE_AI and job.status != JobStatus.COMPLETED:
                    logger.warning(f"Skipping {job.id}: AI stage needs a Completed image stage (status={job.status.value})")
                    continue

                logger.info(f"{job.id}: stage={stage} status={job.status.value} ai_status={job.ai_status.value}")
                if not args.yes:
                    continue

                reset_stage(job, stage)
                await db.commit()
                publish(job, stage)
                requeued += 1
    finally:
        await engine.dispose()

    if args.yes:
        logger.info(f"Requeued {requeued} job(s)")
    else:
        logger.info("Dry run; pass --yes to reset and publish")
    return 0


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    parser = argparse.ArgumentParser(description="Requeue stuck or failed image jobs")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--job-id", help="Requeue a single job")
    target.add_argument("--stuck-minutes", type=int, help="Requeue jobs created more than N minutes ago that never finished")
    parser.add_argument("--stage", choices=[STAGE_IMAGE, STAGE_AI], help="Stage to replay (default: the first unfinished one)")
    parser.add_argument("--include-failed", action="store_true", help="Also requeue jobs whose stage ended in Error")
    parser.add_argument("--yes", action="store_true", help="Reset and publish (default is a dry run)")
    args = parser.parse_args()

    sys.exit(asyncio.run(requeue(args)))


if __name__ == "__main__":
    main()
