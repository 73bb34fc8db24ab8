"""Payment API endpoints.

- POST /api/payments - Create a Midtrans Snap order for a credit package
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from tryon.api.dependencies import get_current_user, get_payments
from tryon.services.auth import AuthUser
from tryon.services.exceptions import PaymentError
from tryon.services.payments.midtrans import PaymentService

logger = structlog.get_logger()
router = APIRouter(prefix="/api/payments", tags=["payments"])


class CreatePaymentRequest(BaseModel):
    """Request model for purchasing a credit package."""

    package_id: str = Field(..., min_length=1, max_length=100)
    package_name: str = Field(..., min_length=1, max_length=200)
    credits: int = Field(..., gt=0, description="Credits granted when the payment settles")
    price: int = Field(..., gt=0, description="Gross amount in IDR")
    name: Optional[str] = Field(default=None, description="Customer first name")


@router.post("")
async def create_payment(
    request: CreatePaymentRequest,
    user: AuthUser = Depends(get_current_user),
    payments: PaymentService = Depends(get_payments),
):
    """Create a Snap transaction and a pending_purchase ledger entry.

    Credits are granted later by the signed Midtrans notification.

    HTTP Status Codes:
        200: Order created, returns orderId, token and paymentUrl
        502: Midtrans rejected or could not be reached (nothing recorded)
    """
    try:
        order = await payments.create_order(
            user_id=user.id,
            package_id=request.package_id,
            package_name=request.package_name,
            credits=request.credits,
            price=request.price,
            email=user.email,
            name=request.name,
        )
    except PaymentError as e:
        logger.error("payment.create_failed", user_id=str(user.id), error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return {"success": True, **order}
