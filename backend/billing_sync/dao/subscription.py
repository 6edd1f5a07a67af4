"""
Subscription Data Access Object (DAO).

WHAT: Queries used by the reconciler, discovery pass, webhooks and
verification service.

WHY: Every writer goes through `upsert_by_provider_id`, which is keyed on
the (provider, provider_subscription_id) unique constraint. That is what
makes webhook redelivery, overlapping cron runs and manual re-runs safe.
"""

import logging
from typing import Optional, List, Iterable, Set, Tuple, Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.dao.base import BaseDAO
from billing_sync.models.subscription import (
    Subscription,
    SubscriptionProvider,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)


class SubscriptionDAO(BaseDAO[Subscription]):
    """
    Data Access Object for Subscription model.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(Subscription, session)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_by_provider_id(
        self,
        provider: SubscriptionProvider,
        provider_subscription_id: str,
    ) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.provider == provider,
                Subscription.provider_subscription_id == provider_subscription_id,
            )
        )
        return result.scalar_one_or_none()

    async def find_by_provider_subscription_id(
        self,
        provider_subscription_id: str,
        providers: Optional[Iterable[SubscriptionProvider]] = None,
    ) -> Optional[Subscription]:
        """
        Look up a subscription when the exact provider is unknown.

        WHY: A PayPal webhook does not say which of our two PayPal
        accounts the subscription was stored under (paypal vs
        paypal_legacy), only its I- ID.
        """
        query = select(Subscription).where(
            Subscription.provider_subscription_id == provider_subscription_id
        )
        if providers:
            query = query.where(Subscription.provider.in_(list(providers)))
        result = await self.session.execute(query.order_by(Subscription.id).limit(1))
        return result.scalar_one_or_none()

    async def get_active_for_user(self, user_id: str) -> Optional[Subscription]:
        """Most recently created active subscription for a user."""
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
            )
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_latest_for_user(self, user_id: str) -> Optional[Subscription]:
        """Most recently created subscription for a user, whatever its status."""
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def has_active_subscription(self, user_id: str) -> bool:
        return await self.get_active_for_user(user_id) is not None

    async def list_for_reconciliation(
        self,
        providers: Iterable[SubscriptionProvider],
        only_active: bool = False,
    ) -> List[Subscription]:
        """
        Rows the reconciler should compare with their provider.

        Lifetime rows are excluded: there is no provider subscription to
        re-verify for a one-time purchase.
        """
        query = select(Subscription).where(
            Subscription.provider.in_(list(providers)),
            Subscription.status != SubscriptionStatus.LIFETIME,
        )
        if only_active:
            query = query.where(Subscription.status == SubscriptionStatus.ACTIVE)
        result = await self.session.execute(query.order_by(Subscription.id))
        return list(result.scalars().all())

    async def list_active(
        self,
        providers: Optional[Iterable[SubscriptionProvider]] = None,
    ) -> List[Subscription]:
        query = select(Subscription).where(Subscription.status == SubscriptionStatus.ACTIVE)
        if providers:
            query = query.where(Subscription.provider.in_(list(providers)))
        result = await self.session.execute(query.order_by(Subscription.id))
        return list(result.scalars().all())

    async def list_paypal_needing_activation(self) -> List[Subscription]:
        """
        PayPal (new account) subscriptions with real I- IDs.

        The caller filters further on role; the query only narrows to rows
        that PayPal can answer for.
        """
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.provider == SubscriptionProvider.PAYPAL,
                Subscription.provider_subscription_id.like("I-%"),
            )
            .order_by(Subscription.id)
        )
        return list(result.scalars().all())

    async def existing_provider_ids(self, provider: SubscriptionProvider) -> Set[str]:
        result = await self.session.execute(
            select(Subscription.provider_subscription_id).where(
                Subscription.provider == provider
            )
        )
        return {row[0] for row in result.all()}

    async def active_user_ids(self) -> Set[str]:
        result = await self.session.execute(
            select(Subscription.user_id).where(Subscription.status == SubscriptionStatus.ACTIVE)
        )
        return {row[0] for row in result.all()}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert_by_provider_id(
        self,
        provider: SubscriptionProvider,
        provider_subscription_id: str,
        **fields: Any,
    ) -> Tuple[Subscription, bool]:
        """
        Insert or update on (provider, provider_subscription_id).

        HOW: Look up first; if absent, insert inside a SAVEPOINT. A
        concurrent writer that wins the race surfaces as IntegrityError,
        in which case we re-read and update instead.

        Args:
            provider: Provider enum
            provider_subscription_id: Provider's subscription/payment ID
            **fields: Column values to write

        Returns:
            (subscription, created)
        """
        existing = await self.get_by_provider_id(provider, provider_subscription_id)
        if existing is not None:
            await self.apply(existing, fields)
            return existing, False

        try:
            async with self.session.begin_nested():
                instance = Subscription(
                    provider=provider,
                    provider_subscription_id=provider_subscription_id,
                    **fields,
                )
                self.session.add(instance)
            await self.session.refresh(instance)
            return instance, True
        except IntegrityError:
            logger.info(
                f"Concurrent insert for {provider.value}:{provider_subscription_id}, updating instead"
            )
            existing = await self.get_by_provider_id(provider, provider_subscription_id)
            if existing is None:
                raise
            await self.apply(existing, fields)
            return existing, False

    async def update_by_provider_subscription_id(
        self,
        provider_subscription_id: str,
        providers: Optional[Iterable[SubscriptionProvider]] = None,
        **fields: Any,
    ) -> int:
        """
        Update every row with this provider ID (webhooks that only carry the ID).

        Returns:
            Number of rows updated
        """
        stmt = update(Subscription).where(
            Subscription.provider_subscription_id == provider_subscription_id
        )
        if providers:
            stmt = stmt.where(Subscription.provider.in_(list(providers)))
        result = await self.session.execute(
            stmt.values(**fields).execution_options(synchronize_session="fetch")
        )
        return result.rowcount

