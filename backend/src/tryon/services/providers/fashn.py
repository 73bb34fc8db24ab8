"""Fashn adapter (dedicated try-on model)."""

from typing import Optional

import httpx
import structlog

from tryon.models.job import JobType, Provider
from tryon.services.events import ProviderEvent
from tryon.services.exceptions import ProviderResponseError
from tryon.services.providers.base import HttpProviderAdapter, SubmitRequest, TaskRef

logger = structlog.get_logger()

DEFAULT_MODEL = "tryon-v1.6"


class FashnAdapter(HttpProviderAdapter):
    """Fashn /v1/run predictions with webhook delivery."""

    provider = Provider.FASHN
    label = "Fashn"
    supported_job_types = frozenset({JobType.VIRTUAL_TRYON, JobType.MODEL_SWAP})

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.fashn.ai",
        model: str = DEFAULT_MODEL,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(api_key, base_url, model, timeout=timeout, transport=transport)

    async def submit(self, request: SubmitRequest) -> TaskRef:
        self.validate(request)
        model_image, garment_image = request.image_urls[:2]
        body = await self._request(
            "POST",
            "/v1/run",
            {
                "model_name": self.model,
                "inputs": {"model_image": model_image, "garment_image": garment_image},
                "webhook_url": request.callback_url,
            },
        )

        if body.get("error"):
            raise ProviderResponseError(f"Fashn API Error: {body['error']}")
        task_id = body.get("id")
        if not task_id:
            raise ProviderResponseError("No prediction ID returned from Fashn API")

        logger.info("fashn.prediction_created", job_id=str(request.job_id), task_id=task_id)
        return TaskRef(provider=self.provider, task_id=str(task_id), model=self.model, raw=body)

    async def poll(self, task_id: str) -> ProviderEvent:
        body = await self._request("GET", f"/v1/status/{task_id}")
        return self.parse_event(body, task_id=task_id)
