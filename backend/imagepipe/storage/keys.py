"""
Object key layout.

Pattern:
    originals/{user_id}/{job_id}{ext}
    processed/{user_id}/{job_id}/{name}.{ext}

Every key of a job sits under one of the two prefixes, so the retention
sweep can delete a job's blobs by prefix.
"""
import os

# Mapping of content types to file extensions
CONTENT_TYPE_EXTENSIONS = {
    'image/jpeg': '.jpg',
    'image/png': '.png',
    'image/webp': '.webp',
}

ALLOWED_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.webp'}
ALLOWED_CONTENT_TYPES = {'image/jpeg', 'image/png', 'image/webp'}
MAX_UPLOAD_SIZE = 50 * 1024 * 1024  # 50 MiB


def file_extension(filename: str) -> str:
    """Lowercased extension including the dot ('' when absent)."""
    return os.path.splitext(filename or "")[1].lower()


def original_key(user_id: str, job_id: str, extension: str) -> str:
    return f"originals/{user_id}/{job_id}{extension}"


def processed_key(user_id: str, job_id: str, filename: str) -> str:
    return f"processed/{user_id}/{job_id}/{filename}"


def original_prefix(user_id: str, job_id: str) -> str:
    """Prefix matching the original whatever its extension."""
    return f"originals/{user_id}/{job_id}"


def processed_prefix(user_id: str, job_id: str) -> str:
    return f"processed/{user_id}/{job_id}/"
