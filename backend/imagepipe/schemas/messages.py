"""
Queue wire format.

image-jobs: {jobId, userId, originalUrl, originalFilename, mimeType}
ai-jobs:    {jobId, userId, sourceImageUrl}
"""
from pydantic import Field

from imagepipe.schemas.common import CamelModel


class ImageJobMessage(CamelModel):
    """Stage-1 message published by the upload path."""
    job_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    original_url: str
    original_filename: str
    mime_type: str

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class ImageAiJobMessage(CamelModel):
    """Stage-2 message published once image processing is Completed."""
    job_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    source_image_url: str

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)
