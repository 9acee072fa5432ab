"""
Test configuration and fixtures.
Runs against a throwaway SQLite file (aiosqlite); object storage, the queue
publisher and Redis are replaced with in-memory fakes.
"""
import io
import os
import uuid as uuid_module

# Set test environment before any imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["ENVIRONMENT"] = "test"
os.environ["STORAGE_ENDPOINT"] = "http://storage.test"
os.environ["STORAGE_BUCKET"] = "imagepipe"
os.environ.pop("OPENAI_API_KEY", None)

import numpy as np
import pytest
from typing import AsyncGenerator, Dict, List
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport
from PIL import Image
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from imagepipe.messaging.publisher import JobPublisher, PublishError
from imagepipe.models.base import Base, utcnow
from imagepipe.models.job import AiStatus, Job, JobStatus
from imagepipe.models.user import User
from imagepipe.services.auth_service import hash_password
from imagepipe.services.cache import JobCache
from imagepipe.storage.keys import original_key
from imagepipe.storage.s3_client import StorageClient, StorageError


# ============================================================================
# Fakes
# ============================================================================

class FakeStorage(StorageClient):
    """StorageClient whose blocking calls hit a dict instead of boto3."""

    def __init__(self):
        super().__init__(client=object(), bucket="imagepipe", endpoint="http://storage.test")
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.failing_prefixes = set()
        self.failing_sign_keys = set()
        self._signatures = 0

    def put_object(self, data: bytes, key: str, content_type: str) -> str:
        self.objects[key] = data
        self.content_types[key] = content_type
        return self.build_url(key)

    def get_object(self, key: str) -> bytes:
        if key not in self.objects:
            raise StorageError(f"Failed to download {key}: NoSuchKey")
        return self.objects[key]

    def list_keys(self, prefix: str) -> List[str]:
        if any(prefix.startswith(failing) for failing in self.failing_prefixes):
            raise StorageError(f"Failed to list objects under {prefix}: AccessDenied")
        return [key for key in self.objects if key.startswith(prefix)]

    def delete_keys(self, keys: List[str]) -> int:
        for key in keys:
            self.objects.pop(key, None)
        return len(keys)

    def generate_presigned_read_url(self, key: str, expiration: int = None) -> str:
        if key in self.failing_sign_keys:
            raise StorageError(f"Failed to sign {key}")
        self._signatures += 1
        return f"{self.build_url(key)}?X-Amz-Signature=sig{self._signatures}"


class FakePublisher(JobPublisher):
    """Records messages instead of talking to the broker."""

    def __init__(self):
        super().__init__(app=None)
        self.sent = []
        self.fail = False

    def _send(self, task_name: str, queue: str, payload: dict) -> None:
        if self.fail:
            raise PublishError(f"Failed to publish to {queue}: broker unreachable")
        self.sent.append((queue, payload))

    def messages(self, queue: str) -> List[dict]:
        return [payload for sent_queue, payload in self.sent if sent_queue == queue]


class _FakePipeline:
    def __init__(self, redis):
        self._redis = redis
        self._ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def set(self, *args, **kwargs):
        self._ops.append(("set", args, kwargs))
        return self

    def incr(self, *args, **kwargs):
        self._ops.append(("incr", args, kwargs))
        return self

    def expire(self, *args, **kwargs):
        self._ops.append(("expire", args, kwargs))
        return self

    async def execute(self):
        results = []
        for name, args, kwargs in self._ops:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._ops = []
        return results


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the cache and the rate limiter."""

    def __init__(self):
        self.values = {}
        self.ttls = {}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self.values[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def incr(self, key):
        self.values[key] = int(self.values.get(key, 0)) + 1
        return self.values[key]

    async def expire(self, key, seconds):
        if key not in self.values:
            return False
        self.ttls[key] = seconds
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            removed += int(self.values.pop(key, None) is not None)
        return removed

    async def ping(self):
        return True

    def pipeline(self, transaction=True):
        return _FakePipeline(self)

    async def aclose(self):
        pass


class BrokenRedis(FakeRedis):
    """Every command fails as if Redis were down."""

    async def _fail(self, *args, **kwargs):
        raise RedisConnectionError("Connection refused")

    get = set = incr = expire = delete = ping = _fail


# ============================================================================
# Helpers
# ============================================================================

def make_image_bytes(width: int = 64, height: int = 32, fmt: str = "PNG", stripes: int = 6, **save_kwargs) -> bytes:
    """Image made of vertical color stripes of decreasing width."""
    palette = [
        (230, 30, 30), (30, 200, 30), (30, 30, 220),
        (240, 240, 20), (20, 220, 220), (200, 20, 200), (120, 120, 120),
    ]
    pixels = np.zeros((height, width, 3), dtype=np.uint8)
    start = 0
    for i in range(stripes):
        stop = width if i == stripes - 1 else start + max(1, (width - start) // 2)
        pixels[:, start:stop] = palette[i % len(palette)]
        start = stop
    buffer = io.BytesIO()
    Image.fromarray(pixels).save(buffer, format=fmt, **save_kwargs)
    return buffer.getvalue()


async def create_job(
    db: AsyncSession,
    user_id: str,
    storage: FakeStorage = None,
    data: bytes = None,
    **overrides
) -> Job:
    """Insert a job; with storage, the original bytes are stored too."""
    job_id = str(uuid_module.uuid4())
    key = original_key(user_id, job_id, ".png")
    if storage is not None:
        storage.put_object(data if data is not None else make_image_bytes(), key, "image/png")
    fields = dict(
        id=job_id,
        user_id=user_id,
        original_url=f"http://storage.test/imagepipe/{key}",
        original_filename="photo.png",
        file_size=1024,
        mime_type="image/png",
        status=JobStatus.PENDING,
        ai_status=AiStatus.PENDING,
        retry_count=0,
        ai_retry_count=0,
        created_at=utcnow(),
    )
    fields.update(overrides)
    job = Job(**fields)
    db.add(job)
    await db.commit()
    await db.refresh(job)
    return job


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Session factory bound to a fresh database file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture(scope="function")
async def test_user(db_session: AsyncSession) -> User:
    """Create a test user."""
    user = User(
        id=str(uuid_module.uuid4()),
        name="Test User",
        email="test@example.com",
        password_hash=hash_password("correct-horse"),
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
async def other_user(db_session: AsyncSession) -> User:
    """A second user, for ownership checks."""
    user = User(
        id=str(uuid_module.uuid4()),
        name="Other User",
        email="other@example.com",
        password_hash=hash_password("another-password"),
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache(fake_redis: FakeRedis) -> JobCache:
    return JobCache(client=fake_redis)


@pytest.fixture(autouse=True)
def rate_limit_redis(monkeypatch) -> FakeRedis:
    """Keep the auth rate limiter off the network."""
    from imagepipe.auth import rate_limit

    redis_client = FakeRedis()
    monkeypatch.setattr(rate_limit, "_client", redis_client)
    return redis_client


def get_test_app(db_session: AsyncSession, storage, publisher, cache, current_user: User = None) -> FastAPI:
    """Create a test FastAPI app with overridden dependencies."""
    from imagepipe.main import app
    from imagepipe.database import get_db
    from imagepipe.auth.dependencies import get_current_user
    from imagepipe.api.dependencies import get_cache, get_publisher, get_storage

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_publisher] = lambda: publisher
    app.dependency_overrides[get_cache] = lambda: cache

    if current_user is not None:
        async def override_get_current_user():
            return current_user

        app.dependency_overrides[get_current_user] = override_get_current_user

    return app


@pytest.fixture(scope="function")
async def client(db_session, test_user, storage, publisher, cache) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client authenticated as test_user."""
    app = get_test_app(db_session, storage, publisher, cache, current_user=test_user)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    # Clean up overrides
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def anon_client(db_session, storage, publisher, cache) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with real bearer-token authentication."""
    app = get_test_app(db_session, storage, publisher, cache)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
