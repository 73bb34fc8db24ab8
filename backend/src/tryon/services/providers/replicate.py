"""Replicate adapter for photo edits, with error classification."""

import asyncio
from typing import Any, Optional

import httpx
import replicate
import structlog
from replicate.exceptions import ReplicateError as ReplicateAPIError

from tryon.models.job import JobType, Provider
from tryon.services.events import ProviderEvent
from tryon.services.exceptions import (
    JobInputError,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderResponseError,
    ProviderTimeoutError,
)
from tryon.services.providers.base import ProviderAdapter, SubmitRequest, TaskRef

logger = structlog.get_logger()

BACKGROUND_REMOVAL_VERSION = "fb8af171cfa1616ddcf1242c093f9c46bcada5ad4cf6f2fbe8b81b330ec5c003"
BACKGROUND_REPLACEMENT_VERSION = "95b7223104132402a9ae91cc677285bc5eb997834bd2349fa486f53910fd68a3"
ENHANCEMENT_VERSION = "30c1d0b916a6f8efce669bc3cc4abecc219df1a01a7762315fb24eaab6649de7"

EDIT_VERSIONS = {
    "background_removal": BACKGROUND_REMOVAL_VERSION,
    "background_replacement": BACKGROUND_REPLACEMENT_VERSION,
    "enhancement": ENHANCEMENT_VERSION,
    "image_enhancement": ENHANCEMENT_VERSION,
}


def classify_error(exception: Exception) -> ProviderError:
    """Classify a Replicate SDK or network exception.

    Classification rules:
        - Timeout errors → ProviderTimeoutError
        - 429 (rate limit) / 503 (service unavailable) → ProviderRateLimitError
        - 401/403 (authentication) → ProviderAuthError
        - Connection errors → ProviderTimeoutError
        - Anything else → ProviderResponseError
    """
    error_message = str(exception)
    error_message_lower = error_message.lower()

    if "timeout" in error_message_lower or isinstance(exception, TimeoutError):
        return ProviderTimeoutError(f"Network timeout: {error_message}")

    if "429" in error_message or "rate limit" in error_message_lower:
        return ProviderRateLimitError(f"Rate limit exceeded: {error_message}")

    if "503" in error_message or "service unavailable" in error_message_lower:
        return ProviderRateLimitError(f"Service unavailable: {error_message}")

    if (
        "401" in error_message
        or "403" in error_message
        or "unauthorized" in error_message_lower
        or "forbidden" in error_message_lower
        or "authentication" in error_message_lower
        or "invalid api token" in error_message_lower
    ):
        return ProviderAuthError(f"Authentication failed: {error_message}")

    if isinstance(exception, (ConnectionError, OSError, httpx.TransportError)):
        return ProviderTimeoutError(f"Connection error: {error_message}")

    return ProviderResponseError(f"Replicate API Error: {error_message}")


def build_prediction_input(request: SubmitRequest) -> tuple[str, dict]:
    """Pick the model version and input for a photo edit.

    Returns:
        Tuple of (version, input)

    Raises:
        JobInputError: If the edit type has no Replicate model
    """
    edit_type = request.settings.get("edit_type")
    version = EDIT_VERSIONS.get(edit_type or "")
    if version is None:
        raise JobInputError(f"Replicate does not support edit type {edit_type!r}")

    image_url = request.image_urls[0]
    if version == BACKGROUND_REPLACEMENT_VERSION:
        return version, {
            "image": image_url,
            "prompt": request.settings.get("prompt")
            or "modern, clean environment, professional product photography",
            "negative_prompt": "low quality, blurry, distorted",
            "num_inference_steps": 20,
            "guidance_scale": 7.5,
        }
    if version == ENHANCEMENT_VERSION:
        return version, {"image": image_url, "scale": 2, "face_enhance": True}
    return version, {"image": image_url}


def prediction_payload(prediction: Any) -> dict:
    """Flatten an SDK Prediction into the webhook payload shape."""
    return {
        "id": getattr(prediction, "id", None),
        "status": getattr(prediction, "status", None),
        "output": getattr(prediction, "output", None),
        "error": getattr(prediction, "error", None),
    }


class ReplicateAdapter(ProviderAdapter):
    """Replicate predictions through the official SDK.

    The SDK is synchronous, so every call runs in a worker thread.
    """

    provider = Provider.REPLICATE
    supported_job_types = frozenset({JobType.PHOTO_EDIT})

    def __init__(self, api_token: str, timeout: float = 60.0, client: Optional[Any] = None):
        super().__init__(model="replicate", timeout=timeout)
        self.api_token = api_token
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            if not self.api_token:
                raise ProviderAuthError("REPLICATE_API_TOKEN not configured")
            self._client = replicate.Client(
                api_token=self.api_token, timeout=httpx.Timeout(self.timeout)
            )
        return self._client

    def validate(self, request: SubmitRequest) -> None:
        super().validate(request)
        build_prediction_input(request)

    async def _call(self, func, *args, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except ProviderError:
            raise
        except (ReplicateAPIError, httpx.HTTPError, ConnectionError, OSError, TimeoutError) as e:
            raise classify_error(e) from e

    async def submit(self, request: SubmitRequest) -> TaskRef:
        self.validate(request)
        version, prediction_input = build_prediction_input(request)

        prediction = await self._call(
            self.client.predictions.create,
            version=version,
            input=prediction_input,
            webhook=request.callback_url,
            webhook_events_filter=["completed"],
        )

        task_id = getattr(prediction, "id", None)
        if not task_id:
            raise ProviderResponseError("No prediction ID returned from Replicate API")

        logger.info(
            "replicate.prediction_created",
            job_id=str(request.job_id),
            task_id=task_id,
            version=version[:12],
        )
        return TaskRef(
            provider=self.provider,
            task_id=str(task_id),
            model=version,
            raw=prediction_payload(prediction),
        )

    async def poll(self, task_id: str) -> ProviderEvent:
        prediction = await self._call(self.client.predictions.get, task_id)
        return self.parse_event(prediction_payload(prediction), task_id=task_id)
