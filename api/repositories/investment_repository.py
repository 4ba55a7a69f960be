"""Repository for investment positions."""

from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Investment, InvestmentStatus
from repositories.utils import log_slow_query


class InvestmentRepository:
    """Repository for Investment database operations."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    @log_slow_query("get_investment_by_id")
    async def get_by_id(self, investment_id: str) -> Investment | None:
        result = await self.db.execute(
            select(Investment).where(Investment.id == investment_id)
        )
        return result.scalar_one_or_none()

    @log_slow_query("get_latest_investment")
    async def get_latest_for(
        self,
        user_id: str,
        property_id: str,
    ) -> Investment | None:
        """Most recently created investment for a user+property pair."""
        result = await self.db.execute(
            select(Investment)
            .where(
                Investment.user_id == user_id,
                Investment.property_id == property_id,
            )
            .order_by(Investment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @log_slow_query("list_confirmed_investments")
    async def list_confirmed(
        self,
        user_id: str,
        property_id: str,
    ) -> Sequence[Investment]:
        """Confirmed investments for a user+property pair, oldest first."""
        result = await self.db.execute(
            select(Investment)
            .where(
                Investment.user_id == user_id,
                Investment.property_id == property_id,
                Investment.status == InvestmentStatus.CONFIRMED,
            )
            .order_by(Investment.created_at.asc())
        )
        return result.scalars().all()

    async def set_certificate_path(self, investment: Investment, path: str) -> None:
        """Mirror the certificate location onto the investment.

        Calls flush() but does NOT commit; the caller owns the transaction.
        """
        investment.certificate_path = path
        await self.db.flush()
