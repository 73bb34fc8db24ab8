"""Webhook endpoints for provider callbacks and payment notifications.

- POST /webhooks/midtrans - Signed Midtrans payment notification
- POST /webhooks/{provider} - Kie.AI, Replicate and Fashn task callbacks
"""

import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from tryon.api.dependencies import get_lifecycle, get_payments, verify_provider_token
from tryon.models.job import Provider
from tryon.services.events import decode_event
from tryon.services.exceptions import (
    InvalidSignatureError,
    JobNotFoundError,
    OrderNotFoundError,
    UnattributableEventError,
)
from tryon.services.lifecycle import EventSource, JobLifecycleManager
from tryon.services.payments.midtrans import PaymentService

logger = structlog.get_logger()
router = APIRouter()


def parse_json_body(raw_body: bytes):
    try:
        return json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error("webhook.invalid_json", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid JSON payload: {str(e)}",
        )


@router.post("/midtrans")
async def receive_midtrans_notification(
    request: Request,
    payments: PaymentService = Depends(get_payments),
):
    """Receive a Midtrans payment notification.

    The signature is verified before anything is read from the ledger.

    HTTP Status Codes:
        200: Notification applied, ignored (pending) or already applied (duplicate)
        400: Malformed body or invalid signature (no side effects)
        404: No pending purchase carries the order id
        500: Ledger write failed (Midtrans retries)
    """
    payload = parse_json_body(await request.body())
    logger.info(
        "webhook.received",
        source="midtrans",
        order_id=payload.get("order_id") if isinstance(payload, dict) else None,
        transaction_status=payload.get("transaction_status") if isinstance(payload, dict) else None,
    )

    try:
        return await payments.handle_notification(payload)
    except InvalidSignatureError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")
    except OrderNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")
    except Exception as e:
        logger.error("webhook.storage_error", source="midtrans", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to process notification: {str(e)}",
        )


@router.post("/{provider}")
async def receive_provider_webhook(
    provider: Provider,
    raw_body: bytes = Depends(verify_provider_token),
    lifecycle: JobLifecycleManager = Depends(get_lifecycle),
):
    """Receive a task callback from an AI provider.

    This endpoint:
    1. Checks the shared callback token (via dependency, when configured)
    2. Decodes the provider payload into a canonical event
    3. Reconciles the event against the job (materialize, fallback, or fail)

    HTTP Status Codes:
        200: Event applied, or ignored as stale/duplicate
        400: Malformed payload or no task id recoverable
        404: No job matches the task
        500: Persistence failure (provider retries)
    """
    payload = parse_json_body(raw_body)

    try:
        event = decode_event(provider, payload)
    except UnattributableEventError as e:
        logger.warning("webhook.unattributable", provider=provider.value, error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.info(
        "webhook.received",
        provider=provider.value,
        task_id=event.task_id,
        job_id=str(event.job_id) if event.job_id else None,
        status=event.status.value,
    )

    try:
        outcome = await lifecycle.reconcile(event, EventSource.WEBHOOK)
    except JobNotFoundError:
        logger.warning("webhook.job_not_found", provider=provider.value, task_id=event.task_id)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    except Exception as e:
        logger.error(
            "webhook.storage_error",
            provider=provider.value,
            task_id=event.task_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to update project: {str(e)}",
        )

    return {
        "success": True,
        "jobId": str(outcome.job.id),
        "status": outcome.status.value,
    }
