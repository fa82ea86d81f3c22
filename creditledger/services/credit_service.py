"""
Credit ledger service.

SECURITY: Reads on behalf of a caller MUST filter by user_id.
The ledger is append-only: rows are inserted, never edited or deleted.
"""
from datetime import datetime, timezone
from sqlalchemy import select, update, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from creditledger.models.credit import CreditTransaction, TransactionType
from creditledger.models.user import User


def add_years(moment: datetime, years: int) -> datetime:
    """Shift a datetime by whole years, clamping Feb 29 to Feb 28."""
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        return moment.replace(year=moment.year + years, day=28)


class CreditService:
    """Service for the credit ledger and the cached user balance."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_balance(self, user_id: str) -> int:
        """
        Get the cached credit balance for a user.

        Args:
            user_id: User UUID

        Returns:
            Credit balance (0 if the user does not exist)
        """
        stmt = select(User.current_credits).where(User.id == user_id)
        result = await self.db.execute(stmt)
        balance = result.scalar_one_or_none()
        return balance or 0

    async def get_ledger_balance(self, user_id: str, now: datetime | None = None) -> int:
        """
        Sum of non-expired ledger amounts for a user.

        Used to audit the cached balance against the ledger.
        """
        now = now or datetime.now(timezone.utc)
        stmt = select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
            CreditTransaction.user_id == user_id,
            or_(
                CreditTransaction.expiration_date.is_(None),
                CreditTransaction.expiration_date > now,
            ),
        )
        result = await self.db.execute(stmt)
        return int(result.scalar() or 0)

    async def get_purchase_by_payment_reference(
        self,
        payment_reference: str
    ) -> CreditTransaction | None:
        """
        Get the PURCHASE row recorded for a payment reference.

        Args:
            payment_reference: Gateway payment identifier

        Returns:
            CreditTransaction or None if the payment was never fulfilled
        """
        stmt = select(CreditTransaction).where(
            CreditTransaction.payment_reference == payment_reference,
            CreditTransaction.type == TransactionType.PURCHASE,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def is_fulfilled(self, payment_reference: str) -> bool:
        """Has this payment reference already produced a credit grant?"""
        return await self.get_purchase_by_payment_reference(payment_reference) is not None

    async def get_owned_purchase(
        self,
        payment_reference: str,
        user_id: str
    ) -> CreditTransaction | None:
        """Get the PURCHASE row for a reference only if it belongs to user_id."""
        stmt = select(CreditTransaction).where(
            CreditTransaction.payment_reference == payment_reference,
            CreditTransaction.type == TransactionType.PURCHASE,
            CreditTransaction.user_id == user_id,  # SECURITY: ownership check
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_transaction(self, transaction_id: str) -> CreditTransaction | None:
        stmt = select(CreditTransaction).where(CreditTransaction.id == transaction_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def grant_purchase(
        self,
        user_id: str,
        amount: int,
        payment_reference: str,
        description: str,
        expiration_years: int,
    ) -> CreditTransaction | None:
        """
        Record a purchase grant and bump the cached balance in one transaction.

        The insert is the idempotency gate: a second grant for the same
        payment reference violates the partial unique index and is rolled
        back without touching the balance.

        Args:
            user_id: User UUID
            amount: Credits to grant (positive)
            payment_reference: Gateway payment identifier
            description: Ledger description
            expiration_years: Retention window for the grant

        Returns:
            The new CreditTransaction, or None if the reference was already fulfilled
        """
        now = datetime.now(timezone.utc)
        transaction = CreditTransaction(
            user_id=user_id,
            amount=amount,
            type=TransactionType.PURCHASE,
            description=description,
            payment_reference=payment_reference,
            expiration_date=add_years(now, expiration_years),
            created_at=now,
        )
        self.db.add(transaction)

        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            return None

        # Atomic increment, no read-modify-write
        await self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(current_credits=User.current_credits + amount)
        )

        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            return None

        return transaction

    async def link_receipt(self, transaction_id: str, receipt_id: str, receipt_url: str) -> None:
        """Attach the receipt to its ledger row. Only fills an empty link."""
        await self.db.execute(
            update(CreditTransaction)
            .where(
                CreditTransaction.id == transaction_id,
                CreditTransaction.receipt_id.is_(None),
            )
            .values(receipt_id=receipt_id, receipt_url=receipt_url)
        )

    async def get_transactions(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 10
    ) -> tuple[list[CreditTransaction], int]:
        """
        Get a page of credit transactions for a user.

        Args:
            user_id: User UUID
            page: 1-based page number
            limit: Page size

        Returns:
            (transactions most recent first, total count)
        """
        stmt = (
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        transactions = list(result.scalars().all())

        count_stmt = select(func.count(CreditTransaction.id)).where(
            CreditTransaction.user_id == user_id
        )
        total = (await self.db.execute(count_stmt)).scalar_one()
        return transactions, total
