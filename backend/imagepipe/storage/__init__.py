"""
Storage module for S3-compatible object storage.

Originals are written by the upload endpoint; derivatives by the image
worker. Clients read through short-lived presigned URLs.
"""
from imagepipe.storage.s3_client import get_storage_client, StorageClient, StorageError

__all__ = ["get_storage_client", "StorageClient", "StorageError"]
