"""Credit repositories for the try-on backend.

UserCreditsRepository owns the cached balance aggregate; every mutation is a
single UPDATE so concurrent requests for one user serialize on the row.
CreditTransactionRepository owns the append-only ledger.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import aliased
from sqlalchemy.ext.asyncio import AsyncSession

from tryon.core.timezone import utcnow
from tryon.models.credit import (
    EXPIRABLE_KINDS,
    CreditTransaction,
    TransactionKind,
    UserCredits,
)


class UserCreditsRepository:
    """Repository for UserCredits aggregates."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_user(self, user_id: UUID, for_update: bool = False) -> UserCredits | None:
        """Retrieve a user's aggregate, optionally locking the row."""
        stmt = select(UserCredits).where(UserCredits.user_id == user_id)  # type: ignore[arg-type]
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add(self, credits: UserCredits) -> UserCredits:
        """Persist a new aggregate."""
        self.session.add(credits)
        await self.session.flush()
        return credits

    async def _read_balance(self, user_id: UUID) -> int:
        result = await self.session.execute(
            select(UserCredits.credits_balance).where(UserCredits.user_id == user_id)  # type: ignore[arg-type]
        )
        return int(result.scalar_one())

    async def debit(self, user_id: UUID, amount: int) -> Optional[int]:
        """Deduct credits only if the balance covers them.

        Query:
            UPDATE user_credits
            SET credits_balance = credits_balance - :amount,
                total_used = total_used + :amount,
                free_credits = max(free_credits - :amount, 0)
            WHERE user_id = :user_id AND credits_balance >= :amount

        The check and the write are one statement, so two concurrent debits
        can never both pass against the same stale balance.

        Args:
            user_id: Owner of the balance
            amount: Positive number of credits to deduct

        Returns:
            New balance, or None if the balance was insufficient (nothing written)
        """
        result = await self.session.execute(
            update(UserCredits)
            .where(UserCredits.user_id == user_id)  # type: ignore[arg-type]
            .where(UserCredits.credits_balance >= amount)  # type: ignore[arg-type]
            .values(
                credits_balance=UserCredits.credits_balance - amount,
                total_used=UserCredits.total_used + amount,
                free_credits=case(
                    (UserCredits.free_credits > amount, UserCredits.free_credits - amount),  # type: ignore[operator]
                    else_=0,
                ),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            return None
        return await self._read_balance(user_id)

    async def credit(
        self, user_id: UUID, amount: int, purchased: bool = False, free: bool = False
    ) -> Optional[int]:
        """Add credits to a balance.

        Args:
            user_id: Owner of the balance
            amount: Positive number of credits to add
            purchased: Also count the credits in total_purchased
            free: Also count the credits in free_credits

        Returns:
            New balance, or None if the user has no aggregate yet
        """
        values = {
            "credits_balance": UserCredits.credits_balance + amount,
            "updated_at": utcnow(),
        }
        if purchased:
            values["total_purchased"] = UserCredits.total_purchased + amount
        if free:
            values["free_credits"] = UserCredits.free_credits + amount

        result = await self.session.execute(
            update(UserCredits)
            .where(UserCredits.user_id == user_id)  # type: ignore[arg-type]
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            return None
        return await self._read_balance(user_id)

    async def deduct_up_to(self, user_id: UUID, amount: int) -> tuple[int, int, int]:
        """Deduct as much of amount as the balance allows (never below zero).

        Locks the row first so the deducted amount and the write agree.

        Returns:
            Tuple of (deducted, balance_before, balance_after)
        """
        account = await self.get_by_user(user_id, for_update=True)
        if account is None:
            return 0, 0, 0
        before = account.credits_balance
        deducted = min(amount, before)
        if deducted > 0:
            await self.session.execute(
                update(UserCredits)
                .where(UserCredits.user_id == user_id)  # type: ignore[arg-type]
                .where(UserCredits.credits_balance == before)  # type: ignore[arg-type]
                .values(
                    credits_balance=UserCredits.credits_balance - deducted,
                    free_credits=case(
                        (UserCredits.free_credits > deducted, UserCredits.free_credits - deducted),  # type: ignore[operator]
                        else_=0,
                    ),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await self.session.flush()
        return deducted, before, before - deducted


class CreditTransactionRepository:
    """Repository for the append-only credit ledger."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, transaction: CreditTransaction) -> CreditTransaction:
        """Append a ledger entry."""
        self.session.add(transaction)
        await self.session.flush()
        return transaction

    async def list_by_user(self, user_id: UUID, limit: int = 20) -> list[CreditTransaction]:
        """Retrieve a user's most recent ledger entries, newest first."""
        result = await self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)  # type: ignore[arg-type]
            .order_by(CreditTransaction.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_by_reference(self, reference_id: str) -> CreditTransaction | None:
        """Retrieve the first ledger entry carrying a reference id (e.g. payment order id)."""
        result = await self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.reference_id == reference_id)  # type: ignore[arg-type]
            .order_by(CreditTransaction.created_at.asc())  # type: ignore[attr-defined]
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def transition_pending(
        self,
        transaction_id: UUID,
        new_kind: TransactionKind,
        description: Optional[str],
        credits_before: int = 0,
        credits_after: int = 0,
    ) -> bool:
        """Resolve a pending purchase exactly once.

        Query:
            UPDATE credit_transactions SET transaction_type = :new_kind, ...
            WHERE id = :id AND transaction_type = 'pending_purchase'

        Returns:
            True if this caller resolved the entry, False if it was already resolved
        """
        result = await self.session.execute(
            update(CreditTransaction)
            .where(CreditTransaction.id == transaction_id)  # type: ignore[arg-type]
            .where(CreditTransaction.transaction_type == TransactionKind.PENDING_PURCHASE)  # type: ignore[arg-type]
            .values(
                transaction_type=new_kind,
                description=description,
                credits_before=credits_before,
                credits_after=credits_after,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def set_balances(self, transaction_id: UUID, before: int, after: int) -> None:
        """Record the balance snapshot of a just-resolved entry."""
        await self.session.execute(
            update(CreditTransaction)
            .where(CreditTransaction.id == transaction_id)  # type: ignore[arg-type]
            .values(credits_before=before, credits_after=after)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()

    async def get_expired_grants(self, now: datetime, limit: int = 500) -> list[CreditTransaction]:
        """Retrieve positive grants past their expiry that no entry offsets yet, oldest first.

        Query:
            SELECT * FROM credit_transactions g
            WHERE g.expires_at < :now AND g.transaction_type IN (:expirable)
              AND NOT EXISTS (
                SELECT 1 FROM credit_transactions e WHERE e.offsets_transaction_id = g.id
              )
            ORDER BY g.expires_at ASC LIMIT :limit
        """
        offset = aliased(CreditTransaction)
        already_offset = (
            select(offset.id)
            .where(offset.offsets_transaction_id == CreditTransaction.id)  # type: ignore[arg-type]
            .exists()
        )
        result = await self.session.execute(
            select(CreditTransaction)
            .where(~already_offset)
            .where(CreditTransaction.expires_at.is_not(None))  # type: ignore[union-attr]
            .where(CreditTransaction.expires_at < now)  # type: ignore[operator]
            .where(CreditTransaction.transaction_type.in_(list(EXPIRABLE_KINDS)))  # type: ignore[attr-defined]
            .order_by(CreditTransaction.expires_at.asc())  # type: ignore[union-attr]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def sum_applied(self, user_id: UUID) -> int:
        """Sum of every delta that is reflected in the balance (audit helper)."""
        applied = [kind for kind in TransactionKind if kind.is_applied]
        result = await self.session.execute(
            select(func.coalesce(func.sum(CreditTransaction.credits_amount), 0))
            .where(CreditTransaction.user_id == user_id)  # type: ignore[arg-type]
            .where(CreditTransaction.transaction_type.in_(applied))  # type: ignore[attr-defined]
        )
        return int(result.scalar_one())
