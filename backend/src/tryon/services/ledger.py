"""Credit ledger: balance checks, atomic debits, restricted credits and expiry.

Every method takes the caller's UnitOfWork so the ledger entry and the
balance aggregate change in the same transaction as whatever the caller is
doing (e.g. creating a job).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

import structlog

from tryon.core.config import Settings
from tryon.core.timezone import utcnow
from tryon.models.credit import (
    CLIENT_CREDIT_KINDS,
    CreditTransaction,
    TransactionKind,
    UserCredits,
)
from tryon.services.exceptions import (
    CreditKindNotAllowedError,
    CreditsNotInitializedError,
    InvalidCreditAmountError,
)
from tryon.uow import UnitOfWork

logger = structlog.get_logger()


@dataclass
class Balance:
    """Snapshot of a user's credit aggregate."""

    credits_balance: int
    free_credits: int
    total_purchased: int
    total_used: int

    @classmethod
    def from_model(cls, credits: UserCredits) -> "Balance":
        return cls(
            credits_balance=credits.credits_balance,
            free_credits=credits.free_credits,
            total_purchased=credits.total_purchased,
            total_used=credits.total_used,
        )


@dataclass
class DebitResult:
    """Outcome of a debit. Insufficient credits is a result, not an exception."""

    success: bool
    balance: int


class CreditLedger:
    """Credit operations over the user_credits aggregate and the transaction log."""

    def __init__(
        self,
        welcome_credits: int = 5,
        purchase_expiry_days: int = 365,
        history_limit: int = 20,
        expiry_batch_size: int = 500,
    ):
        self.welcome_credits = welcome_credits
        self.purchase_expiry_days = purchase_expiry_days
        self.history_limit = history_limit
        self.expiry_batch_size = expiry_batch_size

    @classmethod
    def from_settings(cls, settings: Settings) -> "CreditLedger":
        return cls(
            welcome_credits=settings.welcome_credits,
            purchase_expiry_days=settings.purchase_expiry_days,
            history_limit=settings.transaction_history_limit,
        )

    def purchase_expiry(self) -> datetime:
        return utcnow() + timedelta(days=self.purchase_expiry_days)

    async def check_balance(self, uow: UnitOfWork, user_id: UUID) -> Balance:
        """Read the current aggregate.

        Raises:
            CreditsNotInitializedError: If the user was never provisioned
        """
        credits = await uow.credits.get_by_user(user_id)
        if credits is None:
            raise CreditsNotInitializedError("Credits not initialized")
        return Balance.from_model(credits)

    async def debit(
        self,
        uow: UnitOfWork,
        user_id: UUID,
        amount: int,
        description: str = "Credit usage",
        reference_id: Optional[str] = None,
    ) -> DebitResult:
        """Deduct credits if the balance covers them.

        The balance check and the deduction are a single conditional UPDATE,
        so concurrent debits for one user can never overdraw.

        Args:
            uow: Active unit of work
            user_id: Owner of the balance
            amount: Positive number of credits
            description: Ledger entry description
            reference_id: Optional reference (e.g. job id)

        Returns:
            DebitResult with success=False and the unchanged balance when insufficient

        Raises:
            InvalidCreditAmountError: If amount is not positive
            CreditsNotInitializedError: If the user was never provisioned
        """
        if amount <= 0:
            raise InvalidCreditAmountError("Invalid credits amount")

        new_balance = await uow.credits.debit(user_id, amount)
        if new_balance is None:
            current = await self.check_balance(uow, user_id)
            logger.info(
                "ledger.debit_rejected",
                user_id=str(user_id),
                amount=amount,
                balance=current.credits_balance,
            )
            return DebitResult(success=False, balance=current.credits_balance)

        await uow.transactions.add(
            CreditTransaction(
                user_id=user_id,
                transaction_type=TransactionKind.USAGE,
                credits_amount=-amount,
                credits_before=new_balance + amount,
                credits_after=new_balance,
                description=description,
                reference_id=reference_id,
            )
        )
        logger.info("ledger.debited", user_id=str(user_id), amount=amount, balance=new_balance)
        return DebitResult(success=True, balance=new_balance)

    async def credit(
        self,
        uow: UnitOfWork,
        user_id: UUID,
        amount: int,
        kind: TransactionKind,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> Balance:
        """Add credits of a client-grantable kind (admin_grant, free).

        Purchases are never credited here; they arrive only through the
        signature-verified payment webhook.

        Raises:
            CreditKindNotAllowedError: If kind is not client-grantable
            InvalidCreditAmountError: If amount is not positive
            CreditsNotInitializedError: If the user was never provisioned
        """
        if kind not in CLIENT_CREDIT_KINDS:
            raise CreditKindNotAllowedError(
                "Direct credit addition not allowed. Use payment system instead."
            )
        if amount <= 0:
            raise InvalidCreditAmountError("Invalid credits amount")

        new_balance = await uow.credits.credit(
            user_id, amount, free=kind is TransactionKind.FREE
        )
        if new_balance is None:
            raise CreditsNotInitializedError("Credits not initialized")

        await uow.transactions.add(
            CreditTransaction(
                user_id=user_id,
                transaction_type=kind,
                credits_amount=amount,
                credits_before=new_balance - amount,
                credits_after=new_balance,
                description=description or "Credit grant",
                reference_id=reference_id,
            )
        )
        logger.info(
            "ledger.credited",
            user_id=str(user_id),
            amount=amount,
            kind=kind.value,
            balance=new_balance,
        )
        return await self.check_balance(uow, user_id)

    async def initialize(self, uow: UnitOfWork, user_id: UUID) -> tuple[Balance, bool]:
        """Provision a user with the welcome bonus, once.

        A concurrent initialize for the same user fails the unique user_id
        constraint with IntegrityError; callers re-read in a fresh unit of work.

        Returns:
            Tuple of (balance, created) where created is False if already initialized
        """
        existing = await uow.credits.get_by_user(user_id)
        if existing is not None:
            return Balance.from_model(existing), False

        credits = await uow.credits.add(
            UserCredits(
                user_id=user_id,
                credits_balance=self.welcome_credits,
                free_credits=self.welcome_credits,
            )
        )
        await uow.transactions.add(
            CreditTransaction(
                user_id=user_id,
                transaction_type=TransactionKind.FREE,
                credits_amount=self.welcome_credits,
                credits_before=0,
                credits_after=self.welcome_credits,
                description="Welcome bonus",
            )
        )
        logger.info("ledger.initialized", user_id=str(user_id), credits=self.welcome_credits)
        return Balance.from_model(credits), True

    async def confirm_purchase(
        self, uow: UnitOfWork, pending: CreditTransaction, description: Optional[str] = None
    ) -> Optional[int]:
        """Settle a pending purchase and credit the balance, exactly once per entry.

        Returns:
            New balance, or None if the entry had already been resolved

        Raises:
            CreditsNotInitializedError: If the buyer has no credit aggregate
        """
        claimed = await uow.transactions.transition_pending(
            pending.id, TransactionKind.PURCHASE, description
        )
        if not claimed:
            return None

        new_balance = await uow.credits.credit(
            pending.user_id, pending.credits_amount, purchased=True
        )
        if new_balance is None:
            raise CreditsNotInitializedError("Credits not initialized")

        await uow.transactions.set_balances(
            pending.id, new_balance - pending.credits_amount, new_balance
        )
        logger.info(
            "ledger.purchase_confirmed",
            user_id=str(pending.user_id),
            reference_id=pending.reference_id,
            amount=pending.credits_amount,
            balance=new_balance,
        )
        return new_balance

    async def reject_purchase(
        self, uow: UnitOfWork, pending: CreditTransaction, description: Optional[str] = None
    ) -> bool:
        """Mark a pending purchase failed. Returns False if it was already resolved."""
        rejected = await uow.transactions.transition_pending(
            pending.id, TransactionKind.FAILED_PURCHASE, description
        )
        if rejected:
            logger.info(
                "ledger.purchase_rejected",
                user_id=str(pending.user_id),
                reference_id=pending.reference_id,
            )
        return rejected

    async def expire_stale(self, uow: UnitOfWork, now: Optional[datetime] = None) -> int:
        """Offset every grant past its expiry with an ``expired`` entry.

        Each grant is offset once (``offsets_transaction_id`` plus reference
        ``expire:{grant id}``), by at most the current balance so the balance
        never goes negative. Grants are fetched in batches until none are left.

        Returns:
            Number of grants expired in this sweep
        """
        now = now or utcnow()
        expired = 0
        while True:
            grants = await uow.transactions.get_expired_grants(now, limit=self.expiry_batch_size)
            for grant in grants:
                deducted, before, after = await uow.credits.deduct_up_to(
                    grant.user_id, grant.credits_amount
                )
                await uow.transactions.add(
                    CreditTransaction(
                        user_id=grant.user_id,
                        transaction_type=TransactionKind.EXPIRED,
                        credits_amount=-deducted,
                        credits_before=before,
                        credits_after=after,
                        description=f"Expired {grant.transaction_type.value} credits",
                        reference_id=f"expire:{grant.id}",
                        offsets_transaction_id=grant.id,
                    )
                )
                expired += 1
            if len(grants) < self.expiry_batch_size:
                break

        logger.info("ledger.expired", count=expired)
        return expired

    async def list_transactions(self, uow: UnitOfWork, user_id: UUID) -> list[CreditTransaction]:
        return await uow.transactions.list_by_user(user_id, limit=self.history_limit)
