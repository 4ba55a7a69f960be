"""Repository for property lookups."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Property
from repositories.utils import is_uuid, log_slow_query


class PropertyRepository:
    """Repository for Property database operations."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    @log_slow_query("get_property_by_id")
    async def get_by_id(self, property_id: str) -> Property | None:
        result = await self.db.execute(
            select(Property).where(Property.id == property_id)
        )
        return result.scalar_one_or_none()

    @log_slow_query("get_property_by_display_code")
    async def get_by_display_code(self, display_code: str) -> Property | None:
        result = await self.db.execute(
            select(Property).where(Property.display_code == display_code)
        )
        return result.scalar_one_or_none()

    async def get_by_ref(self, ref: str) -> Property | None:
        """Resolve a UUID or a human-readable display code."""
        if is_uuid(ref):
            return await self.get_by_id(ref)
        return await self.get_by_display_code(ref)
