"""
Tests for the stage-1 and stage-2 consumers.
"""
import json
import uuid
from datetime import timedelta

import httpx
import pytest
from openai import AsyncOpenAI
from prometheus_client import REGISTRY
from sqlalchemy import func, select

from imagepipe.ai.vision_provider import VisionProvider
from imagepipe.messaging.publisher import AI_JOBS_QUEUE
from imagepipe.models.base import utcnow
from imagepipe.models.job import AI_SKIPPED_MESSAGE, AiStatus, Job, JobStatus
from imagepipe.processing.image_processor import ImageProcessor
from imagepipe.schemas.job import JobResponse
from imagepipe.services.ai_consumer import AiJobConsumer
from imagepipe.services.cache import job_key
from imagepipe.services.image_consumer import ImageJobConsumer
from imagepipe.services.stage import StageOutcome
from conftest import create_job, make_image_bytes


def sample(name: str, stage: str) -> float:
    return REGISTRY.get_sample_value(name, {"stage": stage}) or 0.0


def image_message(job: Job) -> dict:
    return {
        "jobId": job.id,
        "userId": job.user_id,
        "originalUrl": job.original_url,
        "originalFilename": job.original_filename,
        "mimeType": job.mime_type,
    }


async def reload(session_factory, job_id: str) -> Job:
    async with session_factory() as db:
        return await db.get(Job, job_id)


def vision_provider(status_code: int, payload: dict = None) -> VisionProvider:
    def handler(request: httpx.Request) -> httpx.Response:
        if status_code != 200:
            return httpx.Response(status_code, json={"error": {"message": "upstream failure"}})
        return httpx.Response(200, json={
            "id": "chatcmpl-test",
            "object": "chat.completion",
            "created": 1700000000,
            "model": "gpt-4.1-mini",
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": json.dumps(payload)},
                "finish_reason": "stop",
            }],
            "usage": {"prompt_tokens": 800, "completion_tokens": 120, "total_tokens": 920},
        })

    client = AsyncOpenAI(
        api_key="test-key",
        base_url="https://ai.test/v1",
        max_retries=0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    return VisionProvider(client=client)


@pytest.fixture
def image_consumer(session_factory, storage, publisher, cache) -> ImageJobConsumer:
    return ImageJobConsumer(
        session_factory=session_factory,
        storage=storage,
        processor=ImageProcessor(),
        publisher=publisher,
        cache=cache,
    )


class TestImageJobConsumer:
    """Tests for stage 1."""

    @pytest.mark.asyncio
    async def test_success_stores_results_and_publishes_stage_two(
        self, image_consumer, session_factory, db_session, test_user, storage, publisher
    ):
        job = await create_job(db_session, test_user.id, storage=storage, data=make_image_bytes(300, 200))
        processed_before = sample("jobs_processed_total", "image")

        outcome = await image_consumer.handle(image_message(job))

        assert outcome is StageOutcome.ACK
        stored = await reload(session_factory, job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.ai_status == AiStatus.PENDING
        assert stored.started_at is not None
        assert stored.completed_at is not None
        assert stored.error_message is None
        assert set(stored.thumbnails) == {"thumb-128", "thumb-512", "thumb-1024"}
        assert stored.thumbnails["thumb-128"] == (
            f"http://storage.test/imagepipe/processed/{test_user.id}/{job.id}/thumb-128.webp"
        )
        assert stored.optimized == {
            "webp": f"http://storage.test/imagepipe/processed/{test_user.id}/{job.id}/optimized.webp"
        }
        assert stored.image_metadata["width"] == 300
        assert stored.image_metadata["height"] == 200
        assert stored.image_metadata["fileSize"] == 1024
        assert len(stored.image_metadata["dominantColors"]) == 5
        assert storage.content_types[f"processed/{test_user.id}/{job.id}/optimized.webp"] == "image/webp"

        assert publisher.messages(AI_JOBS_QUEUE) == [{
            "jobId": job.id,
            "userId": test_user.id,
            "sourceImageUrl": stored.optimized["webp"],
        }]
        assert sample("jobs_processed_total", "image") == processed_before + 1

    @pytest.mark.asyncio
    async def test_failure_cascades_to_skipped_ai_stage(
        self, image_consumer, session_factory, db_session, test_user, storage, publisher
    ):
        """Undecodable original: Error, AI Skipped, no stage-2 message, rejected."""
        job = await create_job(db_session, test_user.id, storage=storage, data=b"not an image at all")
        failed_before = sample("jobs_failed_total", "image")

        outcome = await image_consumer.handle(image_message(job))

        assert outcome is StageOutcome.REJECT
        stored = await reload(session_factory, job.id)
        assert stored.status == JobStatus.ERROR
        assert "decode" in stored.error_message
        assert stored.retry_count == 1
        assert stored.thumbnails is None
        assert stored.ai_status == AiStatus.SKIPPED
        assert stored.ai_error_message == AI_SKIPPED_MESSAGE
        assert publisher.messages(AI_JOBS_QUEUE) == []
        assert sample("jobs_failed_total", "image") == failed_before + 1

    @pytest.mark.asyncio
    async def test_missing_original_is_a_stage_failure(
        self, image_consumer, session_factory, db_session, test_user, storage, publisher
    ):
        job = await create_job(db_session, test_user.id)  # nothing in storage

        outcome = await image_consumer.handle(image_message(job))

        assert outcome is StageOutcome.REJECT
        stored = await reload(session_factory, job.id)
        assert stored.status == JobStatus.ERROR
        assert "NoSuchKey" in stored.error_message
        assert stored.ai_status == AiStatus.SKIPPED
        assert publisher.sent == []

    @pytest.mark.asyncio
    async def test_unknown_job_is_acknowledged_without_writes(
        self, image_consumer, session_factory, publisher
    ):
        failed_before = sample("jobs_failed_total", "image")
        message = {
            "jobId": str(uuid.uuid4()),
            "userId": str(uuid.uuid4()),
            "originalUrl": "http://storage.test/imagepipe/originals/x/y.png",
            "originalFilename": "y.png",
            "mimeType": "image/png",
        }

        outcome = await image_consumer.handle(message)

        assert outcome is StageOutcome.ACK
        async with session_factory() as db:
            assert await db.scalar(select(func.count()).select_from(Job)) == 0
        assert publisher.sent == []
        assert sample("jobs_failed_total", "image") == failed_before

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"jobId": "", "userId": "u", "originalUrl": "x", "originalFilename": "x", "mimeType": "image/png"},
        {"jobId": "abc"},
        "not-json-object",
        None,
    ])
    async def test_malformed_message_is_rejected(self, image_consumer, publisher, payload):
        outcome = await image_consumer.handle(payload)

        assert outcome is StageOutcome.REJECT
        assert publisher.sent == []

    @pytest.mark.asyncio
    async def test_redelivery_of_finished_job_is_skipped(
        self, image_consumer, session_factory, db_session, test_user, storage, publisher
    ):
        job = await create_job(db_session, test_user.id, storage=storage)
        assert await image_consumer.handle(image_message(job)) is StageOutcome.ACK
        first = await reload(session_factory, job.id)

        outcome = await image_consumer.handle(image_message(job))

        assert outcome is StageOutcome.ACK
        second = await reload(session_factory, job.id)
        assert second.completed_at == first.completed_at
        assert second.retry_count == 0
        assert len(publisher.messages(AI_JOBS_QUEUE)) == 1

    @pytest.mark.asyncio
    async def test_fresh_processing_claim_is_not_taken_over(
        self, image_consumer, session_factory, db_session, test_user, storage
    ):
        job = await create_job(
            db_session, test_user.id, storage=storage,
            status=JobStatus.PROCESSING, started_at=utcnow() - timedelta(minutes=1)
        )

        assert await image_consumer.handle(image_message(job)) is StageOutcome.ACK
        assert (await reload(session_factory, job.id)).status == JobStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_stale_processing_claim_is_taken_over(
        self, image_consumer, session_factory, db_session, test_user, storage
    ):
        job = await create_job(
            db_session, test_user.id, storage=storage,
            status=JobStatus.PROCESSING, started_at=utcnow() - timedelta(hours=2)
        )

        assert await image_consumer.handle(image_message(job)) is StageOutcome.ACK
        assert (await reload(session_factory, job.id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_redelivered_message_takes_over_fresh_processing_claim(
        self, image_consumer, session_factory, db_session, test_user, storage, publisher
    ):
        """The worker holding the claim died; the broker redelivers right away."""
        job = await create_job(
            db_session, test_user.id, storage=storage,
            status=JobStatus.PROCESSING, started_at=utcnow() - timedelta(minutes=1)
        )

        outcome = await image_consumer.handle(image_message(job), redelivered=True)

        assert outcome is StageOutcome.ACK
        stored = await reload(session_factory, job.id)
        assert stored.status == JobStatus.COMPLETED
        assert len(publisher.messages(AI_JOBS_QUEUE)) == 1

    @pytest.mark.asyncio
    async def test_redelivered_message_for_finished_job_is_still_skipped(
        self, image_consumer, session_factory, db_session, test_user, storage, publisher
    ):
        job = await create_job(db_session, test_user.id, storage=storage)
        assert await image_consumer.handle(image_message(job)) is StageOutcome.ACK
        first = await reload(session_factory, job.id)

        assert await image_consumer.handle(image_message(job), redelivered=True) is StageOutcome.ACK

        assert (await reload(session_factory, job.id)).completed_at == first.completed_at
        assert len(publisher.messages(AI_JOBS_QUEUE)) == 1

    @pytest.mark.asyncio
    async def test_cached_view_is_invalidated(
        self, image_consumer, db_session, test_user, storage, cache, fake_redis
    ):
        job = await create_job(db_session, test_user.id, storage=storage)
        await cache.set_job(JobResponse.from_job(job))
        assert job_key(test_user.id, job.id) in fake_redis.values

        await image_consumer.handle(image_message(job))

        assert job_key(test_user.id, job.id) not in fake_redis.values


class TestAiJobConsumer:
    """Tests for stage 2."""

    async def _completed_job(self, db_session, user_id, storage) -> Job:
        job = await create_job(db_session, user_id, status=JobStatus.COMPLETED)
        key = f"processed/{user_id}/{job.id}/optimized.webp"
        storage.put_object(make_image_bytes(fmt="WEBP"), key, "image/webp")
        job.optimized = {"webp": storage.build_url(key)}
        await db_session.commit()
        return job

    @staticmethod
    def message(job: Job) -> dict:
        return {"jobId": job.id, "userId": job.user_id, "sourceImageUrl": job.optimized["webp"]}

    @pytest.mark.asyncio
    async def test_success_stores_analysis(self, session_factory, db_session, test_user, storage, cache):
        job = await self._completed_job(db_session, test_user.id, storage)
        consumer = AiJobConsumer(
            session_factory, storage,
            vision_provider(200, {"summary": "Stripes.", "ocrText": "SALE", "tags": [{"label": "stripes", "confidence": 0.8}]}),
            cache,
        )

        outcome = await consumer.handle(self.message(job))

        assert outcome is StageOutcome.ACK
        stored = await reload(session_factory, job.id)
        assert stored.ai_status == AiStatus.COMPLETED
        assert stored.ai_started_at is not None
        assert stored.ai_completed_at is not None
        assert stored.ai_error_message is None
        assert stored.ai_analysis["summary"] == "Stripes."
        assert stored.ai_analysis["ocrText"] == "SALE"
        assert stored.ai_analysis["tags"] == [{"label": "stripes", "confidence": 0.8}]
        assert stored.ai_analysis["safety"] == {"adult": False, "violence": False, "selfHarm": False}
        assert stored.ai_analysis["meta"]["inputTokens"] == 800

    @pytest.mark.asyncio
    async def test_provider_error_is_recorded(self, session_factory, db_session, test_user, storage, cache):
        """HTTP 500 from the model endpoint -> AI Error with the status code, retry count 1."""
        job = await self._completed_job(db_session, test_user.id, storage)
        consumer = AiJobConsumer(session_factory, storage, vision_provider(500), cache)
        failed_before = sample("jobs_failed_total", "ai")

        outcome = await consumer.handle(self.message(job))

        assert outcome is StageOutcome.REJECT
        stored = await reload(session_factory, job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.ai_status == AiStatus.ERROR
        assert "status 500" in stored.ai_error_message
        assert stored.ai_retry_count == 1
        assert stored.ai_analysis is None
        assert sample("jobs_failed_total", "ai") == failed_before + 1

    @pytest.mark.asyncio
    async def test_missing_api_key_fails_only_the_job(self, session_factory, db_session, test_user, storage, cache):
        job = await self._completed_job(db_session, test_user.id, storage)
        consumer = AiJobConsumer(session_factory, storage, VisionProvider(), cache)

        outcome = await consumer.handle(self.message(job))

        assert outcome is StageOutcome.REJECT
        stored = await reload(session_factory, job.id)
        assert stored.ai_status == AiStatus.ERROR
        assert "not configured" in stored.ai_error_message

    @pytest.mark.asyncio
    async def test_redelivered_message_takes_over_fresh_ai_claim(
        self, session_factory, db_session, test_user, storage, cache
    ):
        job = await self._completed_job(db_session, test_user.id, storage)
        job.ai_status = AiStatus.PROCESSING
        job.ai_started_at = utcnow() - timedelta(minutes=1)
        await db_session.commit()
        consumer = AiJobConsumer(session_factory, storage, vision_provider(200, {"summary": "Stripes."}), cache)

        assert await consumer.handle(self.message(job)) is StageOutcome.ACK
        assert (await reload(session_factory, job.id)).ai_status == AiStatus.PROCESSING

        assert await consumer.handle(self.message(job), redelivered=True) is StageOutcome.ACK
        assert (await reload(session_factory, job.id)).ai_status == AiStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_job_without_completed_image_stage_is_skipped(
        self, session_factory, db_session, test_user, storage, cache
    ):
        job = await create_job(db_session, test_user.id, status=JobStatus.ERROR, ai_status=AiStatus.SKIPPED)
        consumer = AiJobConsumer(session_factory, storage, vision_provider(200, {"summary": "x"}), cache)

        outcome = await consumer.handle({"jobId": job.id, "userId": job.user_id, "sourceImageUrl": job.original_url})

        assert outcome is StageOutcome.ACK
        assert (await reload(session_factory, job.id)).ai_status == AiStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_unknown_job_and_malformed_message(self, session_factory, storage, cache):
        consumer = AiJobConsumer(session_factory, storage, VisionProvider(), cache)

        assert await consumer.handle(
            {"jobId": str(uuid.uuid4()), "userId": "u", "sourceImageUrl": "http://x"}
        ) is StageOutcome.ACK
        assert await consumer.handle({"jobId": "j", "userId": "u"}) is StageOutcome.REJECT
