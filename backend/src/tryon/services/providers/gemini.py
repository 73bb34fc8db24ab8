"""Gemini adapter: synchronous fashion image analysis."""

import base64
from typing import Optional

import httpx
import structlog

from tryon.core.timezone import epoch_millis, utcnow
from tryon.models.job import JobStatus, JobType, Provider
from tryon.services.events import ProviderEvent
from tryon.services.exceptions import (
    ProviderAuthError,
    ProviderResponseError,
    ProviderTimeoutError,
)
from tryon.services.providers.base import (
    HttpProviderAdapter,
    SubmitRequest,
    TaskRef,
    raise_for_provider_status,
)

logger = structlog.get_logger()

DEFAULT_MODEL = "gemini-2.0-flash-exp"

DEFAULT_ANALYSIS_PROMPT = """Analyze these fashion images and provide detailed insights about:
1. The model's pose and styling
2. The clothing item's design, color, and characteristics
3. How well they would work together for a virtual try-on
4. Suggestions for improving the combination
5. Fashion recommendations based on the style"""


class GeminiAdapter(HttpProviderAdapter):
    """Gemini generateContent with the input images inlined as base64.

    Gemini answers in the same request, so submit returns a TaskRef that
    already carries the completed event. There is no callback and nothing
    to poll.
    """

    provider = Provider.GEMINI
    label = "Gemini"
    supported_job_types = frozenset({JobType.GEMINI_ANALYSIS, JobType.GEMINI_GENERATION})

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://generativelanguage.googleapis.com",
        model: str = DEFAULT_MODEL,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(api_key, base_url, model, timeout=timeout, transport=transport)

    @property
    def headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": self.api_key}

    async def _inline_image(self, client: httpx.AsyncClient, url: str) -> dict:
        response = await client.get(url)
        if not response.is_success:
            raise ProviderResponseError(f"Failed to fetch input image ({response.status_code})")
        mime_type = response.headers.get("content-type", "image/jpeg").split(";")[0]
        return {
            "inline_data": {
                "mime_type": mime_type,
                "data": base64.b64encode(response.content).decode("ascii"),
            }
        }

    async def submit(self, request: SubmitRequest) -> TaskRef:
        self.validate(request)
        if not self.api_key:
            raise ProviderAuthError("Gemini API key not configured")

        prompt = request.settings.get("prompt") or DEFAULT_ANALYSIS_PROMPT
        parts: list[dict] = [{"text": prompt}]

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                for url in request.image_urls:
                    if url:
                        parts.append(await self._inline_image(client, url))
                response = await client.post(
                    f"{self.base_url}/v1beta/models/{self.model}:generateContent",
                    headers=self.headers,
                    json={"contents": [{"parts": parts}]},
                )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(
                f"Gemini request timeout after {self.timeout:g}s: {e}"
            ) from e
        except httpx.HTTPError as e:
            raise ProviderTimeoutError(f"Gemini network error: {e}") from e

        raise_for_provider_status(response, self.label)
        try:
            body = response.json()
        except ValueError as e:
            raise ProviderResponseError(f"{self.label} returned a non-JSON response") from e
        if not isinstance(body, dict):
            raise ProviderResponseError(f"{self.label} returned an unexpected response shape")

        try:
            analysis = body["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            analysis = "No analysis available"

        task_id = f"gemini_{epoch_millis(utcnow())}"
        logger.info("gemini.analysis_completed", job_id=str(request.job_id), task_id=task_id)

        event = ProviderEvent(
            provider=self.provider,
            task_id=task_id,
            status=JobStatus.COMPLETED,
            job_id=request.job_id,
            analysis=analysis,
            raw={"usageMetadata": body.get("usageMetadata")},
        )
        return TaskRef(
            provider=self.provider, task_id=task_id, model=self.model, raw=event.raw, event=event
        )

    async def poll(self, task_id: str) -> ProviderEvent:
        raise ProviderResponseError("Gemini tasks complete synchronously and cannot be polled")
