"""Credit ledger entities - per-user balance aggregate and append-only transactions."""

from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import NaiveDatetime
from sqlmodel import Field, SQLModel

from tryon.core.timezone import utcnow


class TransactionKind(str, Enum):
    """Credit transaction kinds."""

    PURCHASE = "purchase"
    BONUS = "bonus"
    FREE = "free"
    USAGE = "usage"
    ADMIN_GRANT = "admin_grant"
    PENDING_PURCHASE = "pending_purchase"
    FAILED_PURCHASE = "failed_purchase"
    EXPIRED = "expired"

    @property
    def is_applied(self) -> bool:
        """Whether the delta of this kind is reflected in the balance."""
        return self not in (TransactionKind.PENDING_PURCHASE, TransactionKind.FAILED_PURCHASE)


# Kinds a client may credit directly; purchases only arrive through the payment webhook
CLIENT_CREDIT_KINDS = frozenset({TransactionKind.ADMIN_GRANT, TransactionKind.FREE})

# Positive grants that the expiry sweep may claw back
EXPIRABLE_KINDS = frozenset(
    {
        TransactionKind.PURCHASE,
        TransactionKind.BONUS,
        TransactionKind.FREE,
        TransactionKind.ADMIN_GRANT,
    }
)


class UserCredits(SQLModel, table=True):
    """Cached balance aggregate, updated in the same transaction as each ledger entry."""

    __tablename__ = "user_credits"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(unique=True, index=True)
    credits_balance: int = Field(default=0, ge=0)
    free_credits: int = Field(default=0, ge=0)
    total_purchased: int = Field(default=0, ge=0)
    total_used: int = Field(default=0, ge=0)
    created_at: NaiveDatetime = Field(default_factory=utcnow)
    updated_at: NaiveDatetime = Field(default_factory=utcnow)


class CreditTransaction(SQLModel, table=True):
    """Ledger entry. balance_after == balance_before + credits_amount for applied kinds."""

    __tablename__ = "credit_transactions"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(index=True)
    transaction_type: TransactionKind = Field(index=True)
    credits_amount: int
    credits_before: int = Field(default=0)
    credits_after: int = Field(default=0)
    description: Optional[str] = Field(default=None, max_length=500)
    reference_id: Optional[str] = Field(default=None, max_length=255, index=True)
    expires_at: Optional[NaiveDatetime] = Field(default=None)
    # Grant offset by an expired entry; unique so a grant expires at most once
    offsets_transaction_id: Optional[UUID] = Field(default=None, unique=True)
    created_at: NaiveDatetime = Field(default_factory=utcnow)
