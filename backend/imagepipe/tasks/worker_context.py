"""
Per-task resources for the async stage consumers.

Each Celery task runs its consumer under a fresh `asyncio.run` loop, so the
database engine and the Redis pool are created inside that loop and disposed
before it closes.
"""
from contextlib import asynccontextmanager

from imagepipe.database import create_engine_and_sessionmaker
from imagepipe.services.cache import JobCache


@asynccontextmanager
async def worker_resources():
    """Yields (session_factory, cache)."""
    engine, session_factory = create_engine_and_sessionmaker()
    cache = JobCache()
    try:
        yield session_factory, cache
    finally:
        await cache.close()
        await engine.dispose()


def is_redelivery(request) -> bool:
    """True when the broker marked the task's message as redelivered."""
    return bool((request.delivery_info or {}).get("redelivered"))
