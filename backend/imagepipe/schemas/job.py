"""
Pydantic schemas for job results and job views.

The result types (ImageMetadata, AiAnalysis) are what the workers produce
and what the store serializes into its JSON columns. JobResponse is the
public view returned by the read API.
"""
import math
from datetime import datetime
from typing import Dict, Generic, List, Optional, TypeVar

from pydantic import Field

from imagepipe.models.job import AiStatus, Job, JobStatus
from imagepipe.schemas.common import CamelModel

T = TypeVar("T")


class ImageMetadata(CamelModel):
    """Facts derived from the decoded original."""
    width: int
    height: int
    format: str
    file_size: int
    exif: Dict[str, Optional[str]] = Field(default_factory=dict)
    dominant_colors: List[str] = Field(default_factory=list)


class AiTag(CamelModel):
    label: str
    confidence: float = Field(ge=0, le=1)


class AiSafety(CamelModel):
    adult: bool = False
    violence: bool = False
    self_harm: bool = False


class AiMeta(CamelModel):
    model: str
    latency_ms: int
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    estimated_cost_usd: Optional[float] = None


class AiAnalysis(CamelModel):
    """Validated vision model result."""
    summary: str
    ocr_text: Optional[str] = None
    tags: List[AiTag] = Field(default_factory=list, max_length=12)
    safety: AiSafety = Field(default_factory=AiSafety)
    meta: AiMeta


class AiStageResponse(CamelModel):
    status: AiStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    analysis: Optional[AiAnalysis] = None


class JobResponse(CamelModel):
    """Full job view (GET /api/images/{jobId} and list items)."""
    id: str
    user_id: str
    status: JobStatus
    original_url: str
    original_filename: str
    file_size: int
    mime_type: str
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    thumbnails: Optional[Dict[str, str]] = None
    optimized: Optional[Dict[str, str]] = None
    metadata: Optional[ImageMetadata] = None
    ai: AiStageResponse

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        """Map a store row into the typed view."""
        return cls(
            id=job.id,
            user_id=job.user_id,
            status=job.status,
            original_url=job.original_url,
            original_filename=job.original_filename,
            file_size=job.file_size,
            mime_type=job.mime_type,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            error_message=job.error_message,
            retry_count=job.retry_count or 0,
            thumbnails=job.thumbnails,
            optimized=job.optimized,
            metadata=ImageMetadata.model_validate(job.image_metadata) if job.image_metadata else None,
            ai=AiStageResponse(
                status=job.ai_status,
                started_at=job.ai_started_at,
                completed_at=job.ai_completed_at,
                error_message=job.ai_error_message,
                retry_count=job.ai_retry_count or 0,
                analysis=AiAnalysis.model_validate(job.ai_analysis) if job.ai_analysis else None,
            ),
        )


class PagedResponse(CamelModel, Generic[T]):
    items: List[T]
    page: int
    page_size: int
    total_count: int
    total_pages: int

    @staticmethod
    def count_pages(total_count: int, page_size: int) -> int:
        return math.ceil(total_count / page_size) if page_size > 0 else 0


class UploadResponse(CamelModel):
    """Returned by POST /api/images/upload."""
    id: str
    original_url: str
    status: JobStatus
