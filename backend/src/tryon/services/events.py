"""Provider callback decoding.

Every provider reports task progress in its own shape: Kie.AI nests the task
under ``data`` with ``state`` and a JSON-encoded ``resultJson``, Replicate and
Fashn send flat prediction objects with ``status``/``output``/``error``. This
module validates those payloads and translates them into one ProviderEvent so
the reconciler never sees provider quirks.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union
from uuid import UUID

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError

from tryon.models.job import JobStatus, Provider
from tryon.services.exceptions import UnattributableEventError

logger = structlog.get_logger()

COMPLETED_STATUSES = frozenset({"succeeded", "success", "completed"})
FAILED_STATUSES = frozenset({"failed", "error", "fail", "canceled", "cancelled"})


@dataclass
class ProviderEvent:
    """Canonical task progress event, independent of the reporting provider."""

    provider: Provider
    task_id: str
    status: JobStatus
    job_id: Optional[UUID] = None
    result_url: Optional[str] = None
    analysis: Optional[str] = None
    error: Optional[str] = None
    raw: dict = field(default_factory=dict)


def normalize_status(value: Any) -> JobStatus:
    """Map a provider status word onto processing / completed / failed.

    Unknown or missing values (queued, starting, in_progress, ...) are processing.
    """
    if not isinstance(value, str):
        return JobStatus.PROCESSING
    word = value.strip().lower()
    if word in COMPLETED_STATUSES:
        return JobStatus.COMPLETED
    if word in FAILED_STATUSES:
        return JobStatus.FAILED
    return JobStatus.PROCESSING


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)


class KieTaskData(_Payload):
    """``data`` object of a Kie.AI callback or task status response."""

    taskId: Optional[str] = None
    state: Optional[str] = None
    resultJson: Optional[Union[str, dict]] = None
    failMsg: Optional[str] = None
    param: Optional[Union[str, dict]] = None


class KiePayload(_Payload):
    """Kie.AI callback. Either nested under ``data`` or flat."""

    id: Optional[str] = None
    taskId: Optional[str] = None
    status: Optional[str] = None
    error: Any = None
    message: Optional[str] = None
    metadata: Optional[dict] = None
    data: Optional[KieTaskData] = None


class PredictionPayload(_Payload):
    """Flat prediction object used by Replicate and Fashn."""

    id: Optional[str] = None
    status: Optional[str] = None
    output: Any = None
    error: Any = None


def _load_json_object(value: Any) -> dict:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value:
        try:
            loaded = json.loads(value)
        except ValueError:
            logger.warning("events.json_field_unparseable", preview=value[:100])
            return {}
        return loaded if isinstance(loaded, dict) else {}
    return {}


def _first_url(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    if isinstance(value, list) and value and isinstance(value[0], str) and value[0]:
        return value[0]
    return None


def extract_result_url(payload: dict) -> Optional[str]:
    """Find the result image URL in a completed payload.

    Locations are probed in order and the first hit wins:
    ``resultJson.resultUrls[0]``, ``resultJson.result_url``, ``resultJson.output``
    (``resultJson`` may sit under ``data`` and may be a JSON string), then
    ``result`` (string, ``image_url``, ``url`` or ``output``), then ``output``
    (string or first list item), then ``image_url``.

    Args:
        payload: Raw provider payload

    Returns:
        Result URL, or None if no known location holds one
    """
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    result_json = _load_json_object(data.get("resultJson", payload.get("resultJson")))
    if result_json:
        url = (
            _first_url(result_json.get("resultUrls"))
            or _first_url(result_json.get("result_url"))
            or _first_url(result_json.get("output"))
        )
        if url:
            return url

    result = payload.get("result")
    if isinstance(result, str) and result:
        return result
    if isinstance(result, dict):
        url = (
            _first_url(result.get("image_url"))
            or _first_url(result.get("url"))
            or _first_url(result.get("output"))
        )
        if url:
            return url

    url = _first_url(payload.get("output"))
    if url:
        return url

    return _first_url(payload.get("image_url"))


def _error_text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("message"), str):
        return value["message"]
    return json.dumps(value)


def _parse_job_id(metadata: dict) -> Optional[UUID]:
    project_id = metadata.get("projectId") or metadata.get("jobId")
    if not project_id:
        return None
    try:
        return UUID(str(project_id))
    except ValueError:
        logger.warning("events.invalid_job_id", project_id=project_id)
        return None


def _decode_kie(payload: dict, task_id: Optional[str]) -> ProviderEvent:
    model = KiePayload.model_validate(payload)
    metadata = model.metadata or {}

    if model.data is not None and model.data.taskId:
        found_task_id = model.data.taskId
        status = model.data.state
        param = _load_json_object(model.data.param)
        if isinstance(param.get("metadata"), dict):
            metadata = param["metadata"]
        error = model.data.failMsg or _error_text(model.error) or model.message
    else:
        found_task_id = model.id or model.taskId
        status = model.status
        if status is None and model.data is not None:
            status = model.data.state
        error = _error_text(model.error) or model.message

    found_task_id = found_task_id or task_id
    if not found_task_id:
        raise UnattributableEventError("Missing task id in Kie.AI payload")

    normalized = normalize_status(status)
    return ProviderEvent(
        provider=Provider.KIE,
        task_id=found_task_id,
        status=normalized,
        job_id=_parse_job_id(metadata),
        result_url=extract_result_url(payload) if normalized is JobStatus.COMPLETED else None,
        error=(error or "Kie.AI task failed") if normalized is JobStatus.FAILED else None,
        raw=payload,
    )


def _decode_prediction(provider: Provider, payload: dict, task_id: Optional[str]) -> ProviderEvent:
    model = PredictionPayload.model_validate(payload)
    found_task_id = model.id or task_id
    if not found_task_id:
        raise UnattributableEventError(f"Missing prediction id in {provider.value} payload")

    normalized = normalize_status(model.status)
    error = None
    if normalized is JobStatus.FAILED:
        error = _error_text(model.error) or f"{provider.value} prediction {model.status}"
    return ProviderEvent(
        provider=provider,
        task_id=found_task_id,
        status=normalized,
        result_url=extract_result_url(payload) if normalized is JobStatus.COMPLETED else None,
        error=error,
        raw=payload,
    )


def decode_event(provider: Provider, payload: Any, task_id: Optional[str] = None) -> ProviderEvent:
    """Translate a provider payload into a ProviderEvent.

    Args:
        provider: Provider that sent the payload
        payload: Parsed JSON body
        task_id: Known task id, used when the payload omits it (poll responses)

    Returns:
        Canonical event

    Raises:
        UnattributableEventError: If the payload is malformed or no task id is recoverable
    """
    if not isinstance(payload, dict):
        raise UnattributableEventError("Payload must be a JSON object")

    try:
        if provider is Provider.KIE:
            return _decode_kie(payload, task_id)
        if provider in (Provider.REPLICATE, Provider.FASHN):
            return _decode_prediction(provider, payload, task_id)
    except ValidationError as e:
        raise UnattributableEventError(
            f"Malformed {provider.value} payload: {e.error_count()} errors"
        ) from e

    raise UnattributableEventError(f"{provider.value} does not deliver callbacks")
