"""
S3-compatible object storage client (AWS S3, Cloudflare R2, MinIO).

Uses boto3 with path-style addressing. Blocking boto3 calls are pushed to
a worker thread (`asyncio.to_thread`) so API handlers and stage consumers
never block the event loop; each call is bounded by the connect/read
timeouts and retry budget configured below.

Stored URLs have the form `{endpoint}/{bucket}/{key}`. The bucket stays
private: clients only ever read through presigned GET URLs.
"""
import asyncio
import logging
from typing import Iterable, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from imagepipe.config import settings

logger = logging.getLogger(__name__)

# S3 batch delete supports max 1000 objects per call
DELETE_BATCH_SIZE = 1000


class StorageError(Exception):
    """Raised when a blob operation fails."""


class StorageClient:
    """
    Key-addressed blob store: put, get, delete-by-prefix, URL <-> key mapping
    and presigned read URLs.
    """

    def __init__(self, client=None, bucket: Optional[str] = None, endpoint: Optional[str] = None):
        """
        Initialize the client from settings unless a boto3 client is injected.
        Stays unconfigured (every operation raises) when credentials are missing.
        """
        self._bucket = bucket or settings.storage_bucket
        self._endpoint = (endpoint or settings.storage_endpoint or "").rstrip("/")
        self._client = client

        if self._client is not None:
            return

        if not all([
            settings.storage_endpoint,
            settings.storage_access_key,
            settings.storage_secret_key
        ]):
            logger.warning(
                "Object storage not configured. "
                "Set STORAGE_ENDPOINT, STORAGE_ACCESS_KEY, and STORAGE_SECRET_KEY."
            )
            return

        self._client = boto3.client(
            's3',
            endpoint_url=settings.storage_endpoint,
            aws_access_key_id=settings.storage_access_key,
            aws_secret_access_key=settings.storage_secret_key,
            region_name=settings.storage_region,
            config=Config(
                signature_version='s3v4',
                s3={'addressing_style': 'path'},
                connect_timeout=settings.storage_timeout_seconds,
                read_timeout=settings.storage_timeout_seconds,
                retries={'max_attempts': settings.storage_max_attempts, 'mode': 'standard'},
            )
        )
        logger.info(f"Storage client initialized for bucket: {self._bucket}")

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    @property
    def bucket(self) -> str:
        return self._bucket

    def _require_client(self):
        if self._client is None:
            raise StorageError("Object storage is not configured")
        return self._client

    # URL <-> key

    def build_url(self, key: str) -> str:
        return f"{self._endpoint}/{self._bucket}/{key}"

    def extract_key(self, url: str) -> str:
        """
        Turn a stored URL back into its object key.
        Values that are not URLs of this bucket are assumed to be keys already.
        """
        prefix = f"{self._endpoint}/{self._bucket}/"
        return url[len(prefix):] if url.startswith(prefix) else url

    # Blocking operations

    def put_object(self, data: bytes, key: str, content_type: str) -> str:
        client = self._require_client()
        try:
            client.put_object(Bucket=self._bucket, Key=key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to upload {key}: {e}")
            raise StorageError(f"Failed to upload {key}: {e}") from e
        logger.debug(f"Uploaded {key} ({len(data)} bytes)")
        return self.build_url(key)

    def get_object(self, key: str) -> bytes:
        client = self._require_client()
        try:
            response = client.get_object(Bucket=self._bucket, Key=key)
            return response['Body'].read()
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to download {key}: {e}")
            raise StorageError(f"Failed to download {key}: {e}") from e

    def list_keys(self, prefix: str) -> List[str]:
        """List all keys under a prefix using pagination."""
        client = self._require_client()
        keys = []
        try:
            paginator = client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                keys.extend(obj['Key'] for obj in page.get('Contents', []))
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to list objects under {prefix}: {e}")
            raise StorageError(f"Failed to list objects under {prefix}: {e}") from e
        return keys

    def delete_keys(self, keys: List[str]) -> int:
        """
        Delete keys in batches of 1000.
        Raises StorageError if any key could not be deleted.
        """
        client = self._require_client()
        deleted = 0
        for i in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[i:i + DELETE_BATCH_SIZE]
            try:
                response = client.delete_objects(
                    Bucket=self._bucket,
                    Delete={
                        'Objects': [{'Key': key} for key in batch],
                        'Quiet': True  # Only return errors, not successes
                    }
                )
            except (ClientError, BotoCoreError) as e:
                logger.error(f"Batch delete failed: {e}")
                raise StorageError(f"Batch delete failed: {e}") from e

            errors = response.get('Errors', [])
            if errors:
                for error in errors[:5]:  # Log first 5 errors
                    logger.warning(
                        f"Failed to delete {error.get('Key')}: "
                        f"{error.get('Code')} - {error.get('Message')}"
                    )
                raise StorageError(f"{len(errors)} object(s) could not be deleted")
            deleted += len(batch)
        return deleted

    def delete_prefix(self, prefix: str) -> int:
        """Delete every object under a prefix; returns how many were deleted."""
        keys = self.list_keys(prefix)
        if not keys:
            return 0
        return self.delete_keys(keys)

    def generate_presigned_read_url(self, key: str, expiration: Optional[int] = None) -> str:
        """
        Generate a presigned GET URL for reading an object.

        Signing is local (no network call). Raises StorageError on failure so
        callers can decide how to degrade.
        """
        client = self._require_client()
        if expiration is None:
            expiration = settings.presign_expiration_seconds
        try:
            return client.generate_presigned_url(
                ClientMethod='get_object',
                Params={'Bucket': self._bucket, 'Key': key},
                ExpiresIn=expiration
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to sign {key}: {e}") from e

    # Async facade

    async def upload(self, data: bytes, key: str, content_type: str) -> str:
        """Upload bytes and return the stored URL."""
        return await asyncio.to_thread(self.put_object, data, key, content_type)

    async def download(self, key: str) -> bytes:
        return await asyncio.to_thread(self.get_object, key)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self.delete_keys, [key])

    async def delete_prefixes(self, prefixes: Iterable[str]) -> int:
        """Delete everything under each prefix in turn; stops at the first failure."""
        total = 0
        for prefix in prefixes:
            total += await asyncio.to_thread(self.delete_prefix, prefix)
        return total


# Singleton instance
_storage_client: Optional[StorageClient] = None


def get_storage_client() -> StorageClient:
    """
    Get the singleton storage client instance.

    Returns:
        StorageClient instance (may or may not be configured)
    """
    global _storage_client
    if _storage_client is None:
        _storage_client = StorageClient()
    return _storage_client
