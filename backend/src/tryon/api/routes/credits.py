"""Credit management API endpoints.

- POST /api/credits - Action-dispatched credit manager
  (check_balance, use_credits, add_credits, get_transactions, expire_credits)
- POST /api/credits/initialize - Provision the caller with the welcome bonus

Every response uses the envelope ``{"success": bool, ...}``; errors carry ``error``.
"""

from dataclasses import asdict
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError

from tryon.api.dependencies import (
    get_current_user,
    get_ledger,
    get_settings,
    get_uow_factory,
    is_admin,
)
from tryon.core.config import Settings
from tryon.models.credit import CreditTransaction, TransactionKind
from tryon.services.auth import AuthUser
from tryon.services.exceptions import (
    CreditKindNotAllowedError,
    CreditsNotInitializedError,
    InvalidCreditAmountError,
)
from tryon.services.ledger import CreditLedger

logger = structlog.get_logger()
router = APIRouter(prefix="/api/credits", tags=["credits"])

ADMIN_ACTIONS = frozenset({"expire_credits"})


class CreditActionRequest(BaseModel):
    """Request model for the credit manager."""

    action: str = Field(..., description="Credit manager action")
    amount: Optional[int] = Field(default=None, description="Credits to use or add")
    transaction_type: Optional[str] = Field(
        default=None, description="Kind for add_credits (admin_grant or free)"
    )
    description: Optional[str] = Field(default=None, max_length=500)
    reference_id: Optional[str] = Field(default=None, max_length=255)
    target_user_id: Optional[UUID] = Field(
        default=None, description="Recipient of admin_grant (defaults to the caller)"
    )


class TransactionDTO(BaseModel):
    """Data Transfer Object for ledger entries in API responses."""

    id: UUID
    transaction_type: str
    credits_amount: int
    credits_before: int
    credits_after: int
    description: Optional[str] = None
    reference_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_model(cls, entry: CreditTransaction) -> "TransactionDTO":
        return cls(
            id=entry.id,
            transaction_type=entry.transaction_type.value,
            credits_amount=entry.credits_amount,
            credits_before=entry.credits_before,
            credits_after=entry.credits_after,
            description=entry.description,
            reference_id=entry.reference_id,
            expires_at=entry.expires_at,
            created_at=entry.created_at,
        )


def bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


@router.post("")
async def manage_credits(
    request: CreditActionRequest,
    user: AuthUser = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    ledger: CreditLedger = Depends(get_ledger),
    uow_factory=Depends(get_uow_factory),
):
    """Dispatch a credit manager action.

    HTTP Status Codes:
        200: Action handled (use_credits answers success=false when insufficient)
        400: Unknown action, invalid amount or kind not allowed
        403: Admin-only action or kind
        404: Credits not initialized
    """
    action = request.action
    if action in ADMIN_ACTIONS and not is_admin(user, settings):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

    try:
        if action == "check_balance":
            async with await uow_factory() as uow:
                balance = await ledger.check_balance(uow, user.id)
            return {"success": True, "credits": asdict(balance)}

        if action == "use_credits":
            async with await uow_factory() as uow:
                result = await ledger.debit(
                    uow,
                    user.id,
                    request.amount or 0,
                    description=request.description or "Credit usage",
                    reference_id=request.reference_id,
                )
            if not result.success:
                return {
                    "success": False,
                    "error": "Insufficient credits",
                    "credits_balance": result.balance,
                }
            return {"success": True, "credits_balance": result.balance}

        if action == "add_credits":
            return await _add_credits(request, user, settings, ledger, uow_factory)

        if action == "get_transactions":
            async with await uow_factory() as uow:
                entries = await ledger.list_transactions(uow, user.id)
            return {
                "success": True,
                "transactions": [TransactionDTO.from_model(entry) for entry in entries],
            }

        if action == "expire_credits":
            async with await uow_factory() as uow:
                expired = await ledger.expire_stale(uow)
            return {"success": True, "expired_count": expired}

    except CreditsNotInitializedError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (InvalidCreditAmountError, CreditKindNotAllowedError) as e:
        raise bad_request(str(e))

    raise bad_request("Invalid action")


async def _add_credits(
    request: CreditActionRequest,
    user: AuthUser,
    settings: Settings,
    ledger: CreditLedger,
    uow_factory,
) -> dict:
    try:
        kind = TransactionKind(request.transaction_type or "")
    except ValueError:
        raise bad_request("Invalid transaction type")

    target = request.target_user_id or user.id
    if (kind is TransactionKind.ADMIN_GRANT or target != user.id) and not is_admin(
        user, settings
    ):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

    async with await uow_factory() as uow:
        balance = await ledger.credit(
            uow,
            target,
            request.amount or 0,
            kind,
            description=request.description,
            reference_id=request.reference_id,
        )

    logger.info(
        "credits.added",
        actor=str(user.id),
        user_id=str(target),
        amount=request.amount,
        kind=kind.value,
    )
    return {"success": True, "credits": asdict(balance)}


@router.post("/initialize")
async def initialize_credits(
    user: AuthUser = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
    uow_factory=Depends(get_uow_factory),
):
    """Grant the welcome bonus once. Repeated calls return the existing balance."""
    try:
        async with await uow_factory() as uow:
            balance, created = await ledger.initialize(uow, user.id)
    except IntegrityError:
        # Concurrent initialize won the unique user_id insert
        logger.info("credits.initialize_race", user_id=str(user.id))
        async with await uow_factory() as uow:
            balance = await ledger.check_balance(uow, user.id)
        created = False

    return {"success": True, "initialized": created, "credits": asdict(balance)}
