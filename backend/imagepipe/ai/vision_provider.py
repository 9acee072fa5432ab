"""
Vision provider for image enrichment.

Sends a downscaled JPEG (as a data URL) to an OpenAI-compatible chat
completions endpoint and turns the model's strict-JSON reply into an
AiAnalysis: summary, OCR text, up to 12 tags, safety flags, and usage /
cost metadata.
"""
import asyncio
import base64
import io
import json
import logging
import time
from typing import List, Optional

import httpx
from openai import APIError, APIStatusError, AsyncOpenAI
from PIL import Image
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from imagepipe.config import settings
from imagepipe.schemas.job import AiAnalysis, AiMeta, AiSafety, AiTag
from imagepipe.utils.ai_metrics import track_ai_provider_metrics_async
from imagepipe.utils.logging import log_provider_request, log_provider_failure

logger = logging.getLogger(__name__)

MAX_TAGS = 12
DATA_URL_JPEG_QUALITY = 85

SYSTEM_PROMPT = (
    "You are an image analysis assistant. Return strictly valid JSON with keys: "
    "summary (string, 1-2 sentences), ocrText (string), tags (array of {label:string,confidence:number 0..1}), "
    "safety ({adult:boolean,violence:boolean,selfHarm:boolean}). Keep tags concise and confidence realistic."
)
USER_PROMPT = "Analyze this image and describe it."


class AIAnalysisError(Exception):
    """The AI stage could not produce a valid analysis."""


class AIConfigurationError(AIAnalysisError):
    """Raised before any network call when the provider is not configured."""


# Model reply shape (lenient; normalized in _build_analysis)

class _TagPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")
    label: Optional[str] = None
    confidence: float = 0.0


class _SafetyPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    adult: Optional[bool] = None
    violence: Optional[bool] = None
    self_harm: Optional[bool] = Field(None, alias="selfHarm")


class _ModelPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    summary: Optional[str] = None
    ocr_text: Optional[str] = Field(None, alias="ocrText")
    tags: Optional[List[_TagPayload]] = None
    safety: Optional[_SafetyPayload] = None


def estimate_cost(
    input_tokens: Optional[int],
    output_tokens: Optional[int],
    input_rate: float,
    output_rate: float
) -> Optional[float]:
    """USD estimate from per-1K-token rates; None when no usage was reported."""
    if input_tokens is None and output_tokens is None:
        return None
    cost = ((input_tokens or 0) / 1000) * input_rate + ((output_tokens or 0) / 1000) * output_rate
    return round(cost, 6)


def build_data_url(image_bytes: bytes, max_dimension: int) -> str:
    """Downscale so neither edge exceeds max_dimension and embed as a JPEG data URL."""
    image = Image.open(io.BytesIO(image_bytes))
    image = image.convert("RGB")
    image.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=DATA_URL_JPEG_QUALITY)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/jpeg;base64,{encoded}"


class VisionProvider:
    """
    Vision provider backed by the OpenAI SDK.

    The SDK's own retries are disabled: a failed request fails the job's AI
    stage and retrying is an operator decision.
    """

    provider_name = "openai"

    def __init__(self, client: Optional[AsyncOpenAI] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.api_key = settings.openai_api_key
        self.model = settings.openai_vision_model
        self.max_dimension = settings.ai_image_dimension
        self.input_rate = settings.ai_input_cost_per_1k_tokens
        self.output_rate = settings.ai_output_cost_per_1k_tokens
        self._http_client = http_client
        self._client = client

    def is_configured(self) -> bool:
        """Check if an API key is configured."""
        return bool(self.api_key) or self._client is not None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=settings.openai_base_url,
                timeout=settings.openai_timeout_seconds,
                max_retries=0,
                http_client=self._http_client,
            )
        return self._client

    async def analyze(self, image_bytes: bytes, job_id: Optional[str] = None) -> AiAnalysis:
        """
        Analyze an image.

        Raises:
            AIConfigurationError: API key missing (no request is made)
            AIAnalysisError: non-success status, transport error, or malformed reply
        """
        if not self.is_configured():
            raise AIConfigurationError("OpenAI API key is not configured.")

        start_time = time.monotonic()
        data_url = await asyncio.to_thread(build_data_url, image_bytes, self.max_dimension)

        try:
            response = await self._request_completion(data_url)
        except APIStatusError as e:
            log_provider_failure(
                logger,
                provider=self.provider_name,
                operation="analyze_image",
                error=f"status {e.status_code}",
                duration_ms=(time.monotonic() - start_time) * 1000,
                job_id=job_id
            )
            raise AIAnalysisError(f"AI request failed with status {e.status_code}.") from e
        except APIError as e:
            log_provider_failure(
                logger,
                provider=self.provider_name,
                operation="analyze_image",
                error=str(e),
                duration_ms=(time.monotonic() - start_time) * 1000,
                job_id=job_id
            )
            raise AIAnalysisError(f"AI request failed: {e}") from e

        latency_ms = int((time.monotonic() - start_time) * 1000)
        analysis = self._build_analysis(response, latency_ms)

        log_provider_request(
            logger,
            provider=self.provider_name,
            operation="analyze_image",
            duration_ms=latency_ms,
            job_id=job_id,
            model=analysis.meta.model
        )
        return analysis

    @track_ai_provider_metrics_async("openai", "analyze_image")
    async def _request_completion(self, data_url: str):
        return await self._get_client().chat.completions.create(
            model=self.model,
            temperature=0.2,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": USER_PROMPT},
                        {"type": "image_url", "image_url": {"url": data_url, "detail": "low"}},
                    ],
                },
            ],
        )

    def _build_analysis(self, response, latency_ms: int) -> AiAnalysis:
        choices = getattr(response, "choices", None) or []
        content = choices[0].message.content if choices and choices[0].message else None
        if not content or not content.strip():
            raise AIAnalysisError("AI response did not include analysis content.")

        try:
            payload = _ModelPayload.model_validate(json.loads(content))
        except (json.JSONDecodeError, ValidationError) as e:
            raise AIAnalysisError(f"AI response payload was malformed: {e}") from e

        if not payload.summary or not payload.summary.strip():
            raise AIAnalysisError("AI response payload was malformed: missing summary.")

        tags = [
            AiTag(label=tag.label.strip(), confidence=round(min(max(tag.confidence, 0.0), 1.0), 4))
            for tag in (payload.tags or [])
            if tag.label and tag.label.strip()
        ][:MAX_TAGS]

        safety = payload.safety or _SafetyPayload()
        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "prompt_tokens", None) if usage else None
        output_tokens = getattr(usage, "completion_tokens", None) if usage else None

        return AiAnalysis(
            summary=payload.summary.strip(),
            ocr_text=payload.ocr_text.strip() if payload.ocr_text and payload.ocr_text.strip() else None,
            tags=tags,
            safety=AiSafety(
                adult=bool(safety.adult),
                violence=bool(safety.violence),
                self_harm=bool(safety.self_harm),
            ),
            meta=AiMeta(
                model=getattr(response, "model", None) or self.model,
                latency_ms=latency_ms,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                estimated_cost_usd=estimate_cost(input_tokens, output_tokens, self.input_rate, self.output_rate),
            ),
        )
