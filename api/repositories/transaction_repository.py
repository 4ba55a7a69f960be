"""Repository for transaction lookups and certificate write-back."""

from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from models import Transaction, TransactionStatus, TransactionType
from repositories.utils import is_uuid, log_slow_query


class TransactionRepository:
    """Repository for Transaction database operations."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    @log_slow_query("get_transaction_by_id")
    async def get_by_id(
        self,
        transaction_id: str,
        *,
        with_relations: bool = False,
    ) -> Transaction | None:
        """Get a transaction by ID, optionally eager-loading user and property."""
        stmt = select(Transaction).where(Transaction.id == transaction_id)
        if with_relations:
            stmt = stmt.options(
                selectinload(Transaction.user),
                selectinload(Transaction.property),
            )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    @log_slow_query("get_transaction_by_display_code")
    async def get_by_display_code(self, display_code: str) -> Transaction | None:
        result = await self.db.execute(
            select(Transaction).where(Transaction.display_code == display_code)
        )
        return result.scalar_one_or_none()

    async def get_by_ref(self, ref: str) -> Transaction | None:
        """Resolve a UUID or a human-readable display code."""
        if is_uuid(ref):
            return await self.get_by_id(ref)
        return await self.get_by_display_code(ref)

    @log_slow_query("list_completed_investment_transactions")
    async def list_completed_investments(
        self,
        user_id: str,
        property_id: str,
    ) -> Sequence[Transaction]:
        """Completed investment-type transactions, oldest first."""
        result = await self.db.execute(
            select(Transaction)
            .where(
                Transaction.user_id == user_id,
                Transaction.property_id == property_id,
                Transaction.type == TransactionType.INVESTMENT,
                Transaction.status == TransactionStatus.COMPLETED,
            )
            .order_by(Transaction.created_at.asc())
        )
        return result.scalars().all()

    async def set_certificate_path(self, transaction: Transaction, path: str) -> None:
        """Record the generated certificate location.

        Calls flush() but does NOT commit; the caller owns the transaction.
        """
        transaction.certificate_path = path
        await self.db.flush()
