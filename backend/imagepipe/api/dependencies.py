"""
Providers for the collaborators of the job endpoints.
Tests swap these through app.dependency_overrides.
"""
from imagepipe.messaging.publisher import JobPublisher, get_job_publisher
from imagepipe.services.cache import JobCache, get_job_cache
from imagepipe.services.job_service import JobService
from imagepipe.storage.s3_client import StorageClient, get_storage_client


def get_storage() -> StorageClient:
    return get_storage_client()


def get_publisher() -> JobPublisher:
    return get_job_publisher()


def get_cache() -> JobCache:
    return get_job_cache()
