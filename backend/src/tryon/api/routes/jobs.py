"""Job API endpoints.

This module implements:
- POST /api/jobs - Debit credits and create a job, optionally submitting it right away
- GET /api/jobs - List the caller's jobs
- GET /api/jobs/{job_id} - Get one job
- DELETE /api/jobs/{job_id} - Delete one job
- POST /api/providers/{provider}/jobs - Submit an existing job to a provider
- GET /api/providers/{provider}/status/{task_id} - Normalized task status (polls the provider)
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from tryon.api.dependencies import get_current_user, get_lifecycle
from tryon.models.job import Job, JobType, Provider
from tryon.services.auth import AuthUser
from tryon.services.exceptions import (
    CreditsNotInitializedError,
    JobInputError,
    JobNotFoundError,
    ProviderError,
)
from tryon.services.lifecycle import JobLifecycleManager

logger = structlog.get_logger()
router = APIRouter(tags=["jobs"])


# Request/Response Models


class CreateJobRequest(BaseModel):
    """Request model for job creation."""

    job_type: JobType = Field(..., description="Requested transformation")
    image_urls: list[str] = Field(
        default_factory=list,
        description="Source images in durable storage (model/person first, garment second)",
    )
    settings: dict = Field(
        default_factory=dict, description="Options such as edit_type, prompt, aspect_ratio"
    )
    title: str = Field(default="", max_length=255)
    provider: Optional[Provider] = Field(
        default=None, description="Submit immediately to this provider"
    )


class SubmitJobRequest(BaseModel):
    """Request model for submitting an existing job to a provider."""

    job_id: UUID = Field(..., description="Job created through POST /api/jobs")


class JobDTO(BaseModel):
    """Data Transfer Object for job information in API responses."""

    id: UUID
    job_type: JobType
    title: str
    status: str = Field(..., description="processing, completed or failed")
    provider: Optional[str] = None
    task_id: Optional[str] = Field(default=None, description="Current provider task id")
    source_image_urls: list[str]
    result_url: Optional[str] = None
    analysis: Optional[str] = None
    error_message: Optional[str] = None
    retried: bool = Field(..., description="True once the automatic fallback has been used")
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


def to_dto(job: Job) -> JobDTO:
    return JobDTO(
        id=job.id,
        job_type=job.job_type,
        title=job.title,
        status=job.status.value,
        provider=job.provider.value if job.provider else None,
        task_id=job.external_task_id,
        source_image_urls=list(job.source_image_urls),
        result_url=job.result_url,
        analysis=job.analysis,
        error_message=job.error_message,
        retried=job.retried,
        created_at=job.created_at,
        updated_at=job.updated_at,
        completed_at=job.completed_at,
    )


# API Endpoints


@router.post("/api/jobs", status_code=status.HTTP_201_CREATED)
async def create_job(
    request: CreateJobRequest,
    user: AuthUser = Depends(get_current_user),
    lifecycle: JobLifecycleManager = Depends(get_lifecycle),
):
    """Debit the job cost and create a job.

    HTTP Status Codes:
        201: Job created (and submitted when a provider was given)
        400: Incomplete inputs (nothing debited)
        402: Insufficient credits (nothing created)
        404: Credits not initialized
        502: Immediate submission failed (job stored as failed)
    """
    try:
        job, debit = await lifecycle.create_job(
            user_id=user.id,
            job_type=request.job_type,
            image_urls=request.image_urls,
            settings=request.settings,
            title=request.title,
            provider=request.provider,
        )
    except JobInputError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except CreditsNotInitializedError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ProviderError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    if job is None:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED, detail="Insufficient credits"
        )

    return {"success": True, "job": to_dto(job), "credits_balance": debit.balance}


@router.get("/api/jobs")
async def list_jobs(
    limit: int = Query(default=50, ge=1, le=100),
    user: AuthUser = Depends(get_current_user),
    lifecycle: JobLifecycleManager = Depends(get_lifecycle),
):
    jobs = await lifecycle.list_jobs(user.id, limit=limit)
    return {"success": True, "jobs": [to_dto(job) for job in jobs]}


@router.get("/api/jobs/{job_id}")
async def get_job(
    job_id: UUID,
    user: AuthUser = Depends(get_current_user),
    lifecycle: JobLifecycleManager = Depends(get_lifecycle),
):
    try:
        job = await lifecycle.get_job(job_id, user_id=user.id)
    except JobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return {"success": True, "job": to_dto(job)}


@router.delete("/api/jobs/{job_id}")
async def delete_job(
    job_id: UUID,
    user: AuthUser = Depends(get_current_user),
    lifecycle: JobLifecycleManager = Depends(get_lifecycle),
):
    try:
        await lifecycle.delete_job(job_id, user.id)
    except JobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return {"success": True}


@router.post("/api/providers/{provider}/jobs")
async def submit_job(
    provider: Provider,
    request: SubmitJobRequest,
    user: AuthUser = Depends(get_current_user),
    lifecycle: JobLifecycleManager = Depends(get_lifecycle),
):
    """Submit a job to a provider.

    Returns ``{taskId, status}``. Status is processing for webhook-driven
    providers and already terminal for synchronous ones (Gemini).

    HTTP Status Codes:
        200: Provider accepted the task
        400: Incomplete inputs, provider not configured, or job failed/already submitted
        404: Unknown job
        502: Provider rejected the task (job stored as failed with the provider's error)
    """
    try:
        ref = await lifecycle.submit(request.job_id, provider, user_id=user.id)
    except JobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    except JobInputError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ProviderError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    response = {
        "success": True,
        "taskId": ref.task_id,
        "jobId": str(request.job_id),
        "status": "processing",
    }
    if ref.event is not None:
        response["status"] = ref.event.status.value
        response["analysis"] = ref.event.analysis
    return response


@router.get("/api/providers/{provider}/status/{task_id}")
async def get_task_status(
    provider: Provider,
    task_id: str,
    user: AuthUser = Depends(get_current_user),
    lifecycle: JobLifecycleManager = Depends(get_lifecycle),
):
    """Normalized status of a provider task.

    Task ids "test" and "health" answer a synthetic healthy response without
    touching the database or the provider.
    """
    try:
        return await lifecycle.get_status(provider, task_id, user_id=user.id)
    except JobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
