"""Uniform interface over third-party image generation providers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID

import httpx

from tryon.models.job import JobType, Provider
from tryon.services.events import ProviderEvent, decode_event
from tryon.services.exceptions import (
    JobInputError,
    ProviderAuthError,
    ProviderRateLimitError,
    ProviderResponseError,
    ProviderTimeoutError,
)


@dataclass
class SubmitRequest:
    """Everything an adapter needs to start a provider task for a job.

    image_urls follow the job's convention: for try-on and model swap the
    person/model image comes first and the garment image second.
    """

    job_id: UUID
    job_type: JobType
    image_urls: list[str]
    callback_url: str
    settings: dict = field(default_factory=dict)


@dataclass
class TaskRef:
    """Reference to a task accepted by a provider."""

    provider: Provider
    task_id: str
    model: str
    raw: dict = field(default_factory=dict)
    # Set by providers that answer synchronously; reconciled right away
    event: Optional[ProviderEvent] = None


class ProviderAdapter(ABC):
    """Submit, poll and parse for one provider.

    Adapters receive their credentials at construction and hold no other state.
    """

    provider: Provider
    supported_job_types: frozenset[JobType] = frozenset()

    def __init__(self, model: str, timeout: float = 60.0):
        self.model = model
        self.timeout = timeout

    def supports(self, job_type: JobType) -> bool:
        return job_type in self.supported_job_types

    def validate(self, request: SubmitRequest) -> None:
        """Reject incomplete inputs before any network call.

        Raises:
            JobInputError: If the job type is unsupported or images are missing
        """
        if not self.supports(request.job_type):
            raise JobInputError(
                f"{self.provider.value} does not support {request.job_type.value} jobs"
            )
        required = request.job_type.required_images
        present = [url for url in request.image_urls if url]
        if len(present) < required:
            raise JobInputError(
                f"{request.job_type.value} requires {required} image(s), got {len(present)}"
            )

    @abstractmethod
    async def submit(self, request: SubmitRequest) -> TaskRef:
        """Start a provider task.

        Raises:
            JobInputError: Inputs are incomplete (nothing was sent)
            ProviderError: Network failure, non-2xx answer or no task id
        """

    @abstractmethod
    async def poll(self, task_id: str) -> ProviderEvent:
        """Fetch the current task state.

        Raises:
            ProviderError: If the provider cannot be reached or rejects the call
        """

    def parse_event(self, payload: Any, task_id: Optional[str] = None) -> ProviderEvent:
        return decode_event(self.provider, payload, task_id=task_id)


def provider_error_text(response: httpx.Response) -> str:
    """Pull the most specific error text out of a provider error response."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            error = error.get("message") or error
        for candidate in (error, body.get("message"), body.get("msg"), body.get("detail")):
            if candidate:
                return str(candidate)
    return response.text or f"HTTP {response.status_code}"


def raise_for_provider_status(response: httpx.Response, label: str) -> None:
    """Classify a non-2xx provider answer into the provider error hierarchy.

    Raises:
        ProviderRateLimitError: 429 or 503
        ProviderAuthError: 401 or 403
        ProviderResponseError: Any other non-2xx status
    """
    if response.is_success:
        return
    detail = provider_error_text(response)
    message = f"{label} API Error ({response.status_code}): {detail}"
    if response.status_code in (429, 503):
        raise ProviderRateLimitError(message)
    if response.status_code in (401, 403):
        raise ProviderAuthError(message)
    raise ProviderResponseError(message)


class HttpProviderAdapter(ProviderAdapter):
    """Adapter base for providers spoken to over plain HTTPS with a bearer key."""

    label: str = ""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        model: str,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(model=model, timeout=timeout)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.transport = transport

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, json_body: Optional[dict] = None) -> dict:
        """Send one request and return the decoded JSON object.

        Raises:
            ProviderAuthError: API key is missing or rejected
            ProviderTimeoutError: Timeout or network failure
            ProviderRateLimitError: 429 / 503
            ProviderResponseError: Other non-2xx or a non-JSON body
        """
        if not self.api_key:
            raise ProviderAuthError(f"{self.label} API key not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(
                    method, f"{self.base_url}{path}", headers=self.headers, json=json_body
                )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(
                f"{self.label} request timeout after {self.timeout:g}s: {e}"
            ) from e
        except httpx.HTTPError as e:
            raise ProviderTimeoutError(f"{self.label} network error: {e}") from e

        raise_for_provider_status(response, self.label)

        try:
            body = response.json()
        except ValueError as e:
            raise ProviderResponseError(f"{self.label} returned a non-JSON response") from e
        if not isinstance(body, dict):
            raise ProviderResponseError(f"{self.label} returned an unexpected response shape")
        return body
