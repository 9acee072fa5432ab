"""
Job model: one uploaded image plus its two-stage processing record.

Stage 1 (image processing) is tracked by `status`, stage 2 (AI enrichment)
by `ai_status`. The two evolve independently; the only coupling is the
cascade applied from the stage-1 failure path (see `skip_ai_analysis`).

Result documents (thumbnails, optimized, metadata, ai_analysis) are stored
as JSON columns. Transition methods take typed schema objects and the
read path validates the documents back into typed objects, so raw dicts
stay inside this module and the repository.
"""
import enum
from typing import Dict, Optional

from sqlalchemy import Column, String, Integer, BigInteger, DateTime, Text, JSON, Index, Enum as SQLEnum

from imagepipe.models.base import Base, utcnow


class JobStatus(str, enum.Enum):
    """Stage-1 status; stored as its value."""
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    ERROR = "Error"


class AiStatus(str, enum.Enum):
    """Stage-2 status; stored as its value."""
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    ERROR = "Error"
    SKIPPED = "Skipped"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.ERROR}
TERMINAL_AI_STATUSES = {AiStatus.COMPLETED, AiStatus.ERROR, AiStatus.SKIPPED}

AI_SKIPPED_MESSAGE = "Skipped due to image processing failure."


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Job(Base):
    """Job record; `id` is also the key prefix for the job's blobs."""

    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False)

    # Upload facts
    original_url = Column(String(1024), nullable=False)
    original_filename = Column(String(512), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    mime_type = Column(String(100), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    # Stage 1
    status = Column(
        SQLEnum(JobStatus, name="job_status", native_enum=False, length=20, values_callable=_enum_values),
        nullable=False,
        default=JobStatus.PENDING,
    )
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    thumbnails = Column(JSON, nullable=True)
    optimized = Column(JSON, nullable=True)
    # `metadata` is reserved on declarative classes
    image_metadata = Column("metadata", JSON, nullable=True)

    # Stage 2
    ai_status = Column(
        SQLEnum(AiStatus, name="ai_status", native_enum=False, length=20, values_callable=_enum_values),
        nullable=False,
        default=AiStatus.PENDING,
    )
    ai_started_at = Column(DateTime, nullable=True)
    ai_completed_at = Column(DateTime, nullable=True)
    ai_error_message = Column(Text, nullable=True)
    ai_retry_count = Column(Integer, nullable=False, default=0)
    ai_analysis = Column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_jobs_user_created", "user_id", "created_at"),
        Index("ix_jobs_status", "status"),
        Index("ix_jobs_created_at", "created_at"),
    )

    # Stage 1 transitions

    def complete_image_processing(self, thumbnails: Dict[str, str], optimized: Dict[str, str], metadata) -> None:
        """Processing -> Completed with all stage-1 results in one write."""
        self.thumbnails = dict(thumbnails)
        self.optimized = dict(optimized)
        self.image_metadata = metadata.model_dump(by_alias=True)
        self.status = JobStatus.COMPLETED
        self.completed_at = utcnow()
        self.error_message = None

    def fail_image_processing(self, error: str) -> None:
        """Processing -> Error. Result fields keep their previous values."""
        self.status = JobStatus.ERROR
        self.error_message = error
        self.retry_count = (self.retry_count or 0) + 1
        self.completed_at = utcnow()

    def skip_ai_analysis(self, reason: str = AI_SKIPPED_MESSAGE) -> None:
        """Force stage 2 into Skipped; only called after a stage-1 failure."""
        self.ai_status = AiStatus.SKIPPED
        self.ai_error_message = reason

    # Stage 2 transitions

    def complete_ai_analysis(self, analysis) -> None:
        self.ai_analysis = analysis.model_dump(by_alias=True)
        self.ai_status = AiStatus.COMPLETED
        self.ai_completed_at = utcnow()
        self.ai_error_message = None

    def fail_ai_analysis(self, error: str) -> None:
        self.ai_status = AiStatus.ERROR
        self.ai_error_message = error
        self.ai_retry_count = (self.ai_retry_count or 0) + 1
        self.ai_completed_at = utcnow()

    @property
    def optimized_web_url(self) -> Optional[str]:
        return (self.optimized or {}).get("webp")

    def __repr__(self):
        return f"<Job(id={self.id}, user_id={self.user_id}, status={self.status}, ai_status={self.ai_status})>"
