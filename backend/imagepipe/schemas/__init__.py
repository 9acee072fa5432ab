"""
Pydantic schemas for API payloads, queue messages and job results.
"""
from imagepipe.schemas.job import (
    ImageMetadata,
    AiTag,
    AiSafety,
    AiMeta,
    AiAnalysis,
    JobResponse,
    PagedResponse,
    UploadResponse,
)
from imagepipe.schemas.messages import ImageJobMessage, ImageAiJobMessage

__all__ = [
    "ImageMetadata",
    "AiTag",
    "AiSafety",
    "AiMeta",
    "AiAnalysis",
    "JobResponse",
    "PagedResponse",
    "UploadResponse",
    "ImageJobMessage",
    "ImageAiJobMessage",
]
