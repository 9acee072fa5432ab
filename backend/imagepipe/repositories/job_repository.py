"""
Repository for job records.
All job queries (ownership filtering, paging, stage claims, retention) live here.
"""
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from imagepipe.models.base import utcnow
from imagepipe.models.job import AiStatus, Job, JobStatus


class JobRepository:
    """Repository for job database operations."""

    @staticmethod
    async def add(db: AsyncSession, job: Job) -> Job:
        """Insert a job and commit."""
        db.add(job)
        await db.commit()
        await db.refresh(job)
        return job

    @staticmethod
    async def get_by_id(db: AsyncSession, job_id: str) -> Optional[Job]:
        result = await db.execute(
            select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_id_and_user(db: AsyncSession, job_id: str, user_id: str) -> Optional[Job]:
        """
        Get job by ID, ensuring it belongs to the user.
        Returns None if the job does not exist or belongs to someone else.
        """
        result = await db.execute(
            select(Job).where(Job.id == job_id, Job.user_id == user_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def list_by_user(
        db: AsyncSession,
        user_id: str,
        page: int,
        page_size: int
    ) -> Tuple[List[Job], int]:
        """
        Get one page of a user's jobs, newest first, plus the total count.
        """
        total = await db.scalar(
            select(func.count()).select_from(Job).where(Job.user_id == user_id)
        )
        result = await db.execute(
            select(Job)
            .where(Job.user_id == user_id)
            .order_by(Job.created_at.desc(), Job.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total or 0

    @staticmethod
    async def claim_image_processing(
        db: AsyncSession,
        job_id: str,
        stale_after: timedelta,
        now: Optional[datetime] = None
    ) -> bool:
        """
        Move a job to Processing if nobody else holds it.

        Claimable: Pending, or Processing with a claim older than `stale_after`
        (the previous consumer died before finishing). Returns True when this
        caller won the claim. Commits.
        """
        now = now or utcnow()
        result = await db.execute(
            update(Job)
            .where(
                Job.id == job_id,
                or_(
                    Job.status == JobStatus.PENDING,
                    and_(Job.status == JobStatus.PROCESSING, Job.started_at < now - stale_after),
                ),
            )
            .values(status=JobStatus.PROCESSING, started_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1

    @staticmethod
    async def claim_ai_analysis(
        db: AsyncSession,
        job_id: str,
        stale_after: timedelta,
        now: Optional[datetime] = None
    ) -> bool:
        """
        Move a job's AI stage to Processing; only after image processing Completed.
        Same stale-claim rule as `claim_image_processing`. Commits.
        """
        now = now or utcnow()
        result = await db.execute(
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JobStatus.COMPLETED,
                or_(
                    Job.ai_status == AiStatus.PENDING,
                    and_(Job.ai_status == AiStatus.PROCESSING, Job.ai_started_at < now - stale_after),
                ),
            )
            .values(ai_status=AiStatus.PROCESSING, ai_started_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1

    @staticmethod
    async def list_created_before(db: AsyncSession, cutoff: datetime) -> List[Job]:
        """Jobs created strictly before `cutoff` (retention candidates)."""
        result = await db.execute(
            select(Job).where(Job.created_at < cutoff).order_by(Job.created_at)
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_stuck(db: AsyncSession, older_than: datetime, include_failed: bool = False) -> List[Job]:
        """
        Jobs created before `older_than` whose image stage is still Pending, or
        was claimed before `older_than` and never finished, and Completed jobs
        whose AI stage is in the same situation. With include_failed, Error
        jobs are returned too.
        """
        image_states = [JobStatus.PENDING]
        ai_states = [AiStatus.PENDING]
        if include_failed:
            image_states.append(JobStatus.ERROR)
            ai_states.append(AiStatus.ERROR)
        result = await db.execute(
            select(Job)
            .where(
                Job.created_at < older_than,
                or_(
                    Job.status.in_(image_states),
                    and_(Job.status == JobStatus.PROCESSING, Job.started_at < older_than),
                    and_(
                        Job.status == JobStatus.COMPLETED,
                        or_(
                            Job.ai_status.in_(ai_states),
                            and_(Job.ai_status == AiStatus.PROCESSING, Job.ai_started_at < older_than),
                        ),
                    ),
                ),
            )
            .order_by(Job.created_at)
        )
        return list(result.scalars().all())

    @staticmethod
    async def delete(db: AsyncSession, job_id: str) -> None:
        """Delete one job row and commit."""
        await db.execute(delete(Job).where(Job.id == job_id))
        await db.commit()
