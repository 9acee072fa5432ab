"""
Read-through cache for job views.

Keys:
    job:{userId}:{jobId}                        single job view, short TTL
    jobs:{userId}:v{version}:{page}:{pageSize}  one list page, long TTL
    jobs:version:{userId}                       list generation, bumped to
                                                invalidate every page at once

Values are JSON with unsigned URLs; signing happens after a cache read. A
Redis failure is logged and treated as a miss so reads fall through to the
store.
"""
import logging
from typing import Optional

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from imagepipe.config import settings
from imagepipe.schemas.job import JobResponse, PagedResponse
from imagepipe.utils.metrics import cache_misses_total, errors_total

logger = logging.getLogger(__name__)


def job_key(user_id: str, job_id: str) -> str:
    return f"job:{user_id}:{job_id}"


def page_key(user_id: str, version: int, page: int, page_size: int) -> str:
    return f"jobs:{user_id}:v{version}:{page}:{page_size}"


def version_key(user_id: str) -> str:
    return f"jobs:version:{user_id}"


class JobCache:
    def __init__(self, client: Optional[aioredis.Redis] = None):
        self._client = client

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(settings.redis_url, decode_responses=True)
        return self._client

    def _on_error(self, operation: str, error: Exception) -> None:
        errors_total.labels(error_type="cache").inc()
        logger.warning(f"Cache {operation} failed, continuing without cache: {error}")

    async def get_job(self, user_id: str, job_id: str) -> Optional[JobResponse]:
        try:
            raw = await self.client.get(job_key(user_id, job_id))
        except RedisError as e:
            self._on_error("get", e)
            raw = None

        if raw is None:
            cache_misses_total.labels(view="job").inc()
            return None
        try:
            return JobResponse.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable cache entry for job {job_id}: {e}")
            return None

    async def set_job(self, view: JobResponse) -> None:
        try:
            await self.client.set(
                job_key(view.user_id, view.id),
                view.model_dump_json(by_alias=True),
                ex=settings.job_cache_ttl_seconds,
            )
        except RedisError as e:
            self._on_error("set", e)

    async def list_version(self, user_id: str) -> Optional[int]:
        """
        Current generation of the user's list pages, or None when Redis is
        unavailable. Read it before querying the store and pass it to
        get_page/set_page: a page computed before an invalidation is then
        written under the old generation and never served.
        """
        try:
            raw = await self.client.get(version_key(user_id))
        except RedisError as e:
            self._on_error("get", e)
            return None
        return int(raw) if raw is not None else 0

    async def get_page(
        self,
        user_id: str,
        version: int,
        page: int,
        page_size: int
    ) -> Optional[PagedResponse[JobResponse]]:
        try:
            raw = await self.client.get(page_key(user_id, version, page, page_size))
        except RedisError as e:
            self._on_error("get", e)
            raw = None

        if raw is None:
            cache_misses_total.labels(view="list").inc()
            return None
        try:
            return PagedResponse[JobResponse].model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable cache entry for user {user_id} list: {e}")
            return None

    async def set_page(
        self,
        user_id: str,
        version: int,
        page: int,
        page_size: int,
        view: PagedResponse[JobResponse]
    ) -> None:
        ttl = settings.job_list_cache_ttl_seconds
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.set(page_key(user_id, version, page, page_size), view.model_dump_json(by_alias=True), ex=ttl)
                # the version key must outlive every page stored under it
                pipe.expire(version_key(user_id), ttl)
                await pipe.execute()
        except RedisError as e:
            self._on_error("set", e)

    async def invalidate_user_lists(self, user_id: str) -> None:
        """Move the user to a new list generation; older pages expire unread."""
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.incr(version_key(user_id))
                pipe.expire(version_key(user_id), settings.job_list_cache_ttl_seconds)
                await pipe.execute()
        except RedisError as e:
            self._on_error("invalidate", e)

    async def invalidate_job(self, user_id: str, job_id: str) -> None:
        try:
            await self.client.delete(job_key(user_id, job_id))
        except RedisError as e:
            self._on_error("invalidate", e)

    async def invalidate_job_views(self, user_id: str, job_id: str) -> None:
        """Used by the workers after every stage transition."""
        await self.invalidate_job(user_id, job_id)
        await self.invalidate_user_lists(user_id)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


_cache: Optional[JobCache] = None


def get_job_cache() -> JobCache:
    global _cache
    if _cache is None:
        _cache = JobCache()
    return _cache
