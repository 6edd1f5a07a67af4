"""
Profile Data Access Object (DAO).

WHY: Role changes are the user-visible side effect of every sync path.
Keeping them here guarantees the "never touch admins" rule is applied in
one place instead of in every service.
"""

from datetime import datetime
from typing import Optional, List

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.dao.base import BaseDAO
from billing_sync.models.profile import Profile, ProfileRole


class ProfileDAO(BaseDAO[Profile]):
    """
    Data Access Object for Profile model.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(Profile, session)

    async def get_by_email(self, email: str) -> Optional[Profile]:
        """
        Case-insensitive email lookup.

        WHY: Stripe customers type their email at checkout; casing rarely
        matches what they signed up with.
        """
        if not email:
            return None
        result = await self.session.execute(
            select(Profile)
            .where(func.lower(Profile.email) == email.strip().lower())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def set_role(self, user_id: str, role: ProfileRole) -> bool:
        """
        Change a user's role, never touching admins.

        Args:
            user_id: Profile ID
            role: New role

        Returns:
            True if a row changed (False for admins, unknown users, or no-op)
        """
        result = await self.session.execute(
            update(Profile)
            .where(
                Profile.id == user_id,
                Profile.role != ProfileRole.ADMIN,
                Profile.role != role,
            )
            .values(role=role)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount > 0

    async def grant_pro(self, user_id: str) -> bool:
        return await self.set_role(user_id, ProfileRole.PRO)

    async def revoke_pro(self, user_id: str) -> bool:
        return await self.set_role(user_id, ProfileRole.USER)

    async def list_by_role(self, role: ProfileRole) -> List[Profile]:
        result = await self.session.execute(select(Profile).where(Profile.role == role))
        return list(result.scalars().all())

    async def get_many(self, user_ids: List[str]) -> List[Profile]:
        if not user_ids:
            return []
        result = await self.session.execute(select(Profile).where(Profile.id.in_(user_ids)))
        return list(result.scalars().all())

    async def count_created_between(
        self,
        start: datetime,
        end: datetime,
        exclude_legacy: bool = False,
    ) -> int:
        query = select(func.count()).select_from(Profile).where(
            Profile.created_at >= start,
            Profile.created_at <= end,
        )
        if exclude_legacy:
            query = query.where(Profile.is_legacy_user.is_(False))
        result = await self.session.execute(query)
        return int(result.scalar_one())
