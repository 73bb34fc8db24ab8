"""Midtrans payments: Snap order creation and signed notification handling.

Security Note:
    verify_notification_signature MUST pass before a notification touches the
    ledger. Return 400 "Invalid signature" immediately if it fails.
"""

import base64
import hashlib
import hmac
from typing import Any, Callable, Optional
from uuid import UUID

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, ValidationError

from tryon.core.timezone import epoch_millis, utcnow
from tryon.models.credit import CreditTransaction, TransactionKind
from tryon.services.exceptions import (
    InvalidSignatureError,
    OrderNotFoundError,
    PaymentError,
)
from tryon.services.ledger import CreditLedger

logger = structlog.get_logger()

SETTLED_STATUSES = frozenset({"capture", "settlement"})
FAILED_STATUSES = frozenset({"deny", "cancel", "expire", "failure"})


def compute_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    """SHA-512 hex digest of order_id + status_code + gross_amount + server_key."""
    data = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(data.encode("utf-8")).hexdigest()


def verify_notification_signature(
    order_id: str, status_code: str, gross_amount: str, signature: str, server_key: str
) -> bool:
    """Validate a Midtrans notification signature.

    Args:
        order_id: Notified order id
        status_code: Notified HTTP-like status code (e.g. "200")
        gross_amount: Notified amount exactly as sent (e.g. "100000.00")
        signature: signature_key field of the notification
        server_key: Merchant server key

    Returns:
        True if the signature matches, False otherwise (including an empty server key)
    """
    if not server_key or not signature:
        return False
    expected = compute_signature(order_id, status_code, gross_amount, server_key)
    return hmac.compare_digest(expected.lower(), signature.lower())


class MidtransNotification(BaseModel):
    """HTTP notification body. Amounts arrive as strings and must stay verbatim."""

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    order_id: str
    status_code: str
    gross_amount: str
    signature_key: str
    transaction_status: str
    fraud_status: Optional[str] = None
    payment_type: Optional[str] = None


def generate_order_id(user_id: UUID) -> str:
    return f"order_{str(user_id)[:8]}_{epoch_millis(utcnow())}"


class MidtransClient:
    """Snap API client (server-to-server, Basic auth with the server key)."""

    def __init__(
        self,
        server_key: str,
        snap_url: str,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.server_key = server_key
        self.snap_url = snap_url
        self.timeout = timeout
        self.transport = transport

    @property
    def headers(self) -> dict[str, str]:
        token = base64.b64encode(f"{self.server_key}:".encode()).decode("ascii")
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Basic {token}",
        }

    async def create_transaction(self, payload: dict) -> dict:
        """Create a Snap transaction.

        Returns:
            Response body with ``token`` and ``redirect_url``

        Raises:
            PaymentError: Missing key, network failure or non-2xx answer
        """
        if not self.server_key:
            raise PaymentError("MIDTRANS_SERVER_KEY not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.snap_url, headers=self.headers, json=payload)
        except httpx.HTTPError as e:
            raise PaymentError(f"Midtrans network error: {e}") from e

        if not response.is_success:
            logger.error(
                "midtrans.create_failed", status_code=response.status_code, body=response.text[:500]
            )
            raise PaymentError("Payment initialization failed")
        return response.json()


class PaymentService:
    """Credit purchases: pending ledger entry on order, settlement on notification."""

    def __init__(
        self,
        uow_factory: Callable[[], Any],
        ledger: CreditLedger,
        client: MidtransClient,
        server_key: str,
    ):
        self.uow_factory = uow_factory
        self.ledger = ledger
        self.client = client
        self.server_key = server_key

    async def create_order(
        self,
        user_id: UUID,
        package_id: str,
        package_name: str,
        credits: int,
        price: int,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> dict:
        """Create a Snap transaction and record the pending purchase.

        Returns:
            Dict with orderId, token and paymentUrl

        Raises:
            PaymentError: Midtrans rejected the order (nothing is recorded)
        """
        order_id = generate_order_id(user_id)
        snap = await self.client.create_transaction(
            {
                "transaction_details": {"order_id": order_id, "gross_amount": price},
                "customer_details": {"email": email, "first_name": name or "User"},
                "item_details": [
                    {
                        "id": package_id,
                        "price": price,
                        "quantity": 1,
                        "name": f"{package_name} - {credits} Credits",
                    }
                ],
                "custom_field1": str(user_id),
                "custom_field2": package_id,
                "custom_field3": str(credits),
            }
        )

        async with await self.uow_factory() as uow:
            await uow.transactions.add(
                CreditTransaction(
                    user_id=user_id,
                    transaction_type=TransactionKind.PENDING_PURCHASE,
                    credits_amount=credits,
                    reference_id=order_id,
                    description=f"Pending purchase: {package_name}",
                    expires_at=self.ledger.purchase_expiry(),
                )
            )

        logger.info("payment.order_created", user_id=str(user_id), order_id=order_id, credits=credits)
        return {
            "orderId": order_id,
            "token": snap.get("token"),
            "paymentUrl": snap.get("redirect_url"),
        }

    async def handle_notification(self, payload: Any) -> dict:
        """Apply a Midtrans notification to its pending purchase.

        - capture/settlement with fraud status accept (or none): credit once
        - capture/settlement with any other fraud status: failed_purchase
        - deny/cancel/expire/failure: failed_purchase
        - pending or anything else: no change

        Replays are harmless: only the first notification finds the entry
        still pending.

        Raises:
            InvalidSignatureError: Malformed body or signature mismatch (nothing is read or written)
            OrderNotFoundError: No ledger entry carries the order id
        """
        try:
            notification = MidtransNotification.model_validate(payload)
        except ValidationError as e:
            raise InvalidSignatureError("Invalid signature") from e

        if not verify_notification_signature(
            notification.order_id,
            notification.status_code,
            notification.gross_amount,
            notification.signature_key,
            self.server_key,
        ):
            logger.warning("payment.invalid_signature", order_id=notification.order_id)
            raise InvalidSignatureError("Invalid signature")

        status = notification.transaction_status
        fraud = notification.fraud_status
        log = logger.bind(order_id=notification.order_id, transaction_status=status, fraud=fraud)

        async with await self.uow_factory() as uow:
            entry = await uow.transactions.get_by_reference(notification.order_id)
            if entry is None:
                log.warning("payment.order_not_found")
                raise OrderNotFoundError("Transaction not found")

            if entry.transaction_type is not TransactionKind.PENDING_PURCHASE:
                log.info("payment.already_resolved", kind=entry.transaction_type.value)
                return {"success": True, "orderId": notification.order_id, "status": "duplicate"}

            outcome = "pending"
            if status in SETTLED_STATUSES and (fraud is None or fraud == "accept"):
                description = (entry.description or "").replace(
                    "Pending purchase:", "Successful purchase:"
                )
                balance = await self.ledger.confirm_purchase(uow, entry, description)
                outcome = "settled" if balance is not None else "duplicate"
            elif status in SETTLED_STATUSES or status in FAILED_STATUSES:
                reason = "fraud" if status in SETTLED_STATUSES else status
                description = (entry.description or "").replace(
                    "Pending purchase:", f"Failed purchase ({reason}):"
                )
                rejected = await self.ledger.reject_purchase(uow, entry, description)
                outcome = "failed" if rejected else "duplicate"

        log.info("payment.notification_processed", outcome=outcome)
        return {"success": True, "orderId": notification.order_id, "status": outcome}
