"""Supabase Auth lookup: resolve a bearer token to the user it belongs to."""

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

import httpx
import structlog

from tryon.services.exceptions import PermanentError, TransientError

logger = structlog.get_logger()


class AuthenticationError(PermanentError):
    """Bearer token is missing, expired or rejected."""

    pass


class AuthUnavailableError(TransientError):
    """Auth API could not be reached."""

    pass


@dataclass
class AuthUser:
    """Authenticated caller."""

    id: UUID
    email: Optional[str] = None


class AuthClient:
    """Thin client over ``GET {SUPABASE_URL}/auth/v1/user``."""

    def __init__(
        self,
        supabase_url: str,
        service_key: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = supabase_url.rstrip("/")
        self.service_key = service_key
        self.timeout = timeout
        self.transport = transport

    async def get_user(self, token: str) -> AuthUser:
        """Resolve an access token.

        Args:
            token: Access token from the Authorization header (without "Bearer ")

        Returns:
            AuthUser for the token's subject

        Raises:
            AuthenticationError: Token rejected or response without a user id
            AuthUnavailableError: Network failure or timeout
        """
        if not token or not self.base_url:
            raise AuthenticationError("Unauthorized")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(
                    f"{self.base_url}/auth/v1/user",
                    headers={"Authorization": f"Bearer {token}", "apikey": self.service_key},
                )
        except httpx.HTTPError as e:
            logger.error("auth.unavailable", error=str(e), error_type=type(e).__name__)
            raise AuthUnavailableError(f"Auth API unreachable: {e}") from e

        if not response.is_success:
            logger.info("auth.rejected", status_code=response.status_code)
            raise AuthenticationError("Unauthorized")

        body = response.json()
        try:
            return AuthUser(id=UUID(str(body["id"])), email=body.get("email"))
        except (KeyError, ValueError, TypeError) as e:
            raise AuthenticationError("Unauthorized") from e
