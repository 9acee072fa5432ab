"""
Image job endpoints.

POST /images/upload   - store the original and create a job
GET  /images/{job_id} - one job, owner only
GET  /images          - the caller's jobs, newest first
"""
import logging

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from imagepipe.api.dependencies import get_cache, get_publisher, get_storage
from imagepipe.auth.dependencies import get_current_user
from imagepipe.database import get_db
from imagepipe.messaging.publisher import JobPublisher
from imagepipe.models.base import generate_uuid
from imagepipe.models.user import User
from imagepipe.schemas.job import JobResponse, PagedResponse, UploadResponse
from imagepipe.services.cache import JobCache
from imagepipe.services.job_service import JobNotFoundError, JobService
from imagepipe.storage.keys import (
    ALLOWED_CONTENT_TYPES,
    ALLOWED_EXTENSIONS,
    MAX_UPLOAD_SIZE,
    file_extension,
    original_key,
)
from imagepipe.storage.s3_client import StorageClient, StorageError

logger = logging.getLogger(__name__)

router = APIRouter()


def get_job_service(
    storage: StorageClient = Depends(get_storage),
    publisher: JobPublisher = Depends(get_publisher),
    cache: JobCache = Depends(get_cache)
) -> JobService:
    return JobService(storage=storage, publisher=publisher, cache=cache)


def _bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


async def _discard_original(storage: StorageClient, key: str, job_id: str) -> None:
    try:
        await storage.delete(key)
    except StorageError as e:
        logger.error(f"Failed to remove orphaned original {key}: {e}", extra={"job_id": job_id})


@router.post("/upload", response_model=UploadResponse)
async def upload_image(
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    storage: StorageClient = Depends(get_storage),
    service: JobService = Depends(get_job_service)
):
    """
    Upload an image and queue it for processing.

    Validation happens before anything is stored or published:
    extension and content type must both be JPEG, PNG or WEBP and the file
    must not exceed 50MB.
    """
    extension = file_extension(file.filename)
    content_type = (file.content_type or "").lower()
    if extension not in ALLOWED_EXTENSIONS or content_type not in ALLOWED_CONTENT_TYPES:
        raise _bad_request("Only JPEG, PNG, and WEBP images are allowed.")

    if file.size is not None and file.size > MAX_UPLOAD_SIZE:
        raise _bad_request("File size exceeds maximum allowed size (50MB).")

    data = await file.read()
    if len(data) > MAX_UPLOAD_SIZE:
        raise _bad_request("File size exceeds maximum allowed size (50MB).")
    if not data:
        raise _bad_request("No file uploaded.")

    job_id = generate_uuid()
    key = original_key(current_user.id, job_id, extension)
    try:
        original_url = await storage.upload(data, key, content_type)
    except StorageError as e:
        logger.error(f"Failed to store original for job {job_id}: {e}", extra={"job_id": job_id, "user_id": current_user.id})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to store the uploaded file."
        )

    try:
        job = await service.create_job(
            db,
            job_id=job_id,
            user_id=current_user.id,
            original_url=original_url,
            original_filename=file.filename,
            file_size=len(data),
            mime_type=content_type,
        )
    except Exception:
        # an original without a job row is never swept
        await _discard_original(storage, key, job_id)
        raise
    return UploadResponse(id=job.id, original_url=job.original_url, status=job.status)


@router.get("/{job_id}", response_model=JobResponse)
async def get_image_job(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: JobService = Depends(get_job_service)
):
    """Job view with signed URLs. 404 when the job is missing or not the caller's."""
    try:
        return await service.get_job(db, job_id, current_user.id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("", response_model=PagedResponse[JobResponse])
async def list_image_jobs(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: JobService = Depends(get_job_service)
):
    return await service.list_jobs(db, current_user.id, page, page_size)
