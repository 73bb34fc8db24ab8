"""FastAPI dependencies for request validation and common operations.

This module provides reusable FastAPI dependencies for:
- Bearer token authentication and admin authorization
- Shared-token validation for AI provider callbacks
- Access to the services created at application startup
"""

import hmac
from typing import Annotated, Callable

import structlog
from fastapi import Depends, Header, HTTPException, Query, Request, status

from tryon.core.config import Settings
from tryon.services.auth import AuthClient, AuthenticationError, AuthUnavailableError, AuthUser
from tryon.services.ledger import CreditLedger
from tryon.services.lifecycle import JobLifecycleManager
from tryon.services.payments.midtrans import PaymentService
from tryon.uow import UnitOfWork

logger = structlog.get_logger()


def get_settings(request: Request) -> Settings:
    """Get the settings the application was created with."""
    return request.app.state.settings


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Args:
        request: FastAPI Request object (contains app.state)

    Returns:
        UnitOfWork factory function from app lifespan

    Example:
        >>> @router.post("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.jobs.get_by_id(job_id)
    """
    return request.app.state.uow_factory


def get_lifecycle(request: Request) -> JobLifecycleManager:
    return request.app.state.lifecycle


def get_ledger(request: Request) -> CreditLedger:
    return request.app.state.ledger


def get_payments(request: Request) -> PaymentService:
    return request.app.state.payments


def get_auth_client(request: Request) -> AuthClient:
    return request.app.state.auth_client


async def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
    auth_client: AuthClient = Depends(get_auth_client),
) -> AuthUser:
    """Resolve the caller from the ``Authorization: Bearer <token>`` header.

    Raises:
        HTTPException: 401 "Unauthorized" if the header is missing or the token is
            rejected, 503 if the auth service cannot be reached
    """
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    token = authorization[7:].strip()
    try:
        return await auth_client.get_user(token)
    except AuthenticationError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    except AuthUnavailableError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Auth service unavailable"
        )


def is_admin(user: AuthUser, settings: Settings) -> bool:
    """Whether the caller is listed in ADMIN_USER_IDS."""
    return str(user.id) in settings.admin_user_ids_list


async def verify_provider_token(
    request: Request,
    token: Annotated[str | None, Query()] = None,
    settings: Settings = Depends(get_settings),
) -> bytes:
    """Check the shared callback token before a provider webhook is processed.

    Callback URLs carry ``?token=<PROVIDER_WEBHOOK_TOKEN>`` when the token is
    configured. Without a configured token every callback is accepted.

    Returns:
        Raw request body bytes (for further processing by the endpoint)

    Raises:
        HTTPException: 401 Unauthorized if the token is missing or wrong
    """
    expected = settings.provider_webhook_token
    if expected and not hmac.compare_digest((token or "").encode(), expected.encode()):
        logger.warning("webhook.invalid_token", path=request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    return await request.body()
