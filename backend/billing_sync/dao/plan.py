"""
Plan Data Access Object (DAO).
"""

from typing import Any, Set, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.dao.base import BaseDAO
from billing_sync.models.plan import Plan


class PlanDAO(BaseDAO[Plan]):
    """
    Data Access Object for Plan model.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(Plan, session)

    async def upsert(self, plan_id: str, **fields: Any) -> Tuple[Plan, bool]:
        """
        Insert or update a plan by its deterministic ID.

        Returns:
            (plan, created)
        """
        existing = await self.get_by_id(plan_id)
        if existing is not None:
            await self.apply(existing, fields)
            return existing, False
        return await self.create(id=plan_id, **fields), True

    async def known_stripe_price_ids(self) -> Set[str]:
        result = await self.session.execute(
            select(Plan.stripe_price_id).where(Plan.stripe_price_id.is_not(None))
        )
        return {row[0] for row in result.all()}
