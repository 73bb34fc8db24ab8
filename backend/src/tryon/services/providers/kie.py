"""Kie.AI adapter (nano-banana edit and generation tasks)."""

from typing import Optional

import httpx
import structlog

from tryon.models.job import JobType, Provider
from tryon.services.events import ProviderEvent
from tryon.services.exceptions import JobInputError, ProviderResponseError
from tryon.services.providers.base import HttpProviderAdapter, SubmitRequest, TaskRef

logger = structlog.get_logger()

DEFAULT_MODEL = "google/nano-banana"

TRYON_PROMPT = (
    "Virtual try-on: Take the person from the first image and dress them in the clothing "
    "from the second image. Maintain the person's pose, body proportions, and facial features "
    "while fitting the garment naturally with proper sizing, realistic lighting, shadows, and "
    "fabric physics. High quality, photorealistic result."
)

MODEL_SWAP_PROMPT = (
    "Model swap: Replace the model/person in the first image with the model/person from the "
    "second image while keeping the same clothing, pose, and composition. Maintain realistic "
    "proportions, lighting, and shadows. High quality, photorealistic result."
)

EDIT_PROMPTS = {
    "background_removal": (
        "Remove the background from this image while keeping the subject intact. "
        "Create a clean, transparent background."
    ),
    "background_replacement": (
        "Replace the background with a modern, clean environment while keeping the subject intact."
    ),
    "enhancement": (
        "Enhance this image quality, improve lighting, colors, and sharpness while maintaining "
        "natural appearance."
    ),
}
DEFAULT_EDIT_PROMPT = "Improve this image quality and appearance."

ASPECT_RATIO_HINTS = {
    "1:1": "square format",
    "2:3": "portrait format",
    "3:4": "vertical format",
    "4:3": "horizontal format",
    "4:5": "vertical portrait format",
}


def build_edit_prompt(edit_type: Optional[str], prompt: Optional[str]) -> str:
    """Choose the prompt for a photo edit.

    Background replacement and free-form edits prefer the user's prompt.
    """
    if edit_type in ("background_removal", "enhancement"):
        return EDIT_PROMPTS[edit_type]
    if edit_type == "background_replacement":
        return prompt or EDIT_PROMPTS["background_replacement"]
    return prompt or DEFAULT_EDIT_PROMPT


def build_generation_prompt(prompt: str, aspect_ratio: Optional[str]) -> str:
    final_prompt = (
        f"Generate a high-quality fashion model image: {prompt}. Professional photography, "
        "studio lighting, clean background, high resolution, photorealistic, commercial fashion "
        "photography style."
    )
    if aspect_ratio:
        final_prompt += f" {ASPECT_RATIO_HINTS.get(aspect_ratio, 'standard format')} composition."
    return final_prompt


class KieAdapter(HttpProviderAdapter):
    """Kie.AI playground tasks.

    The job id travels in the task ``metadata.projectId`` and comes back in the
    callback's ``data.param``, so callbacks are attributable even before the
    task id has been stored.
    """

    provider = Provider.KIE
    label = "Kie.AI"
    supported_job_types = frozenset(
        {JobType.VIRTUAL_TRYON, JobType.MODEL_SWAP, JobType.PHOTO_EDIT, JobType.PRODUCT_MARKETING}
    )

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.kie.ai",
        model: str = DEFAULT_MODEL,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(api_key, base_url, model, timeout=timeout, transport=transport)

    def validate(self, request: SubmitRequest) -> None:
        super().validate(request)
        if request.job_type is JobType.PRODUCT_MARKETING and not request.settings.get("prompt"):
            raise JobInputError("product_marketing requires a prompt")

    def build_task(self, request: SubmitRequest) -> dict:
        """Build the createTask body for a job."""
        settings = request.settings
        metadata: dict = {"projectId": str(request.job_id)}
        task_input: dict = {"num_images": "1"}

        if request.job_type is JobType.VIRTUAL_TRYON:
            model_image, garment_image = request.image_urls[:2]
            task_input.update(prompt=TRYON_PROMPT, image_urls=[model_image, garment_image])
            metadata.update(
                modelImage=model_image, garmentImage=garment_image, action="virtualTryOn"
            )
        elif request.job_type is JobType.MODEL_SWAP:
            model_image, garment_image = request.image_urls[:2]
            # Garment first, new model second
            task_input.update(prompt=MODEL_SWAP_PROMPT, image_urls=[garment_image, model_image])
            metadata.update(modelImage=model_image, garmentImage=garment_image, action="modelSwap")
        elif request.job_type is JobType.PHOTO_EDIT:
            original_image = request.image_urls[0]
            edit_type = settings.get("edit_type")
            task_input.update(
                prompt=build_edit_prompt(edit_type, settings.get("prompt")),
                image_urls=[original_image],
            )
            metadata.update(originalImage=original_image, editType=edit_type, action="photoEdit")
        else:
            reference_image = request.image_urls[0] if request.image_urls else None
            task_input["prompt"] = build_generation_prompt(
                settings["prompt"], settings.get("aspect_ratio")
            )
            if reference_image:
                task_input["image_urls"] = [reference_image]
            metadata.update(
                originalPrompt=settings["prompt"],
                aspectRatio=settings.get("aspect_ratio"),
                referenceImage=reference_image,
                action="generateModel",
            )

        return {
            "model": self.model,
            "callBackUrl": request.callback_url,
            "input": task_input,
            "metadata": metadata,
        }

    async def submit(self, request: SubmitRequest) -> TaskRef:
        self.validate(request)
        body = await self._request(
            "POST", "/api/v1/playground/createTask", self.build_task(request)
        )

        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        task_id = data.get("taskId") or body.get("id") or body.get("taskId") or body.get("task_id")
        if not task_id:
            logger.error("kie.no_task_id", job_id=str(request.job_id), response=body)
            raise ProviderResponseError("No task ID returned from Kie.AI API")

        logger.info("kie.task_created", job_id=str(request.job_id), task_id=task_id)
        return TaskRef(provider=self.provider, task_id=str(task_id), model=self.model, raw=body)

    async def poll(self, task_id: str) -> ProviderEvent:
        body = await self._request("GET", f"/api/v1/playground/getTaskStatus/{task_id}")
        return self.parse_event(body, task_id=task_id)
