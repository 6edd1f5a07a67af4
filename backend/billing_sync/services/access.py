"""
Role changes that follow subscription state.

The grace rule lives here so the reconciler, webhooks and verification
all downgrade users the same way: only once the paid period is over, and
never an admin (ProfileDAO.set_role refuses to touch admins).
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.timeutils import utcnow
from billing_sync.dao.profile import ProfileDAO

logger = logging.getLogger(__name__)


def grace_period_over(period_end: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when access should end: unknown period end, or it has passed."""
    if period_end is None:
        return True
    return (now or utcnow()) > period_end


class AccessManager:
    def __init__(self, db: AsyncSession):
        self.profile_dao = ProfileDAO(db)

    async def grant(self, user_id: str) -> bool:
        changed = await self.profile_dao.grant_pro(user_id)
        if changed:
            logger.info(f"Granted pro to user {user_id}", extra={"user_id": user_id})
        return changed

    async def revoke_after_grace(
        self,
        user_id: str,
        period_end: Optional[datetime],
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Downgrade to user unless still inside the paid period.

        Returns:
            True if the grace period is over (the user should lose access),
            whether or not the role actually changed.
        """
        if not grace_period_over(period_end, now):
            logger.info(
                f"User {user_id} keeps access until {period_end}",
                extra={"user_id": user_id},
            )
            return False

        if await self.profile_dao.revoke_pro(user_id):
            logger.info(f"Revoked pro from user {user_id}", extra={"user_id": user_id})
        return True
