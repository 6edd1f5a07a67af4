"""
Real-time subscription verification.

WHY: The periodic sync can be hours behind. Before granting something
valuable (or when support asks "is this user really paying?") we ask the
provider directly. has_premium_access() only pays for that round trip
once the stored period has lapsed, so the common case stays a DB read.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.exceptions import ExternalServiceError
from billing_sync.core.timeutils import utcnow
from billing_sync.dao.profile import ProfileDAO
from billing_sync.dao.subscription import SubscriptionDAO
from billing_sync.models.subscription import Subscription, SubscriptionProvider, SubscriptionStatus
from billing_sync.services.paypal_client import PayPalClient, client_for_provider
from billing_sync.services.status_mapper import STRIPE_ACTIVE_STATUSES, is_paypal_subscription_id
from billing_sync.services.stripe_client import StripeClient, get_stripe_client, stripe_period

logger = logging.getLogger(__name__)

# Extra day after current_period_end before re-verifying; renewals post late
RENEWAL_GRACE = timedelta(days=1)


@dataclass
class VerificationResult:
    is_active: bool
    provider_status: Optional[str]
    sync_needed: bool


class SubscriptionVerifier:
    def __init__(
        self,
        db: AsyncSession,
        stripe_client: Optional[StripeClient] = None,
        paypal_client_factory: Optional[Callable[[SubscriptionProvider], PayPalClient]] = None,
    ):
        self.db = db
        self.subscription_dao = SubscriptionDAO(db)
        self.profile_dao = ProfileDAO(db)
        self.stripe = stripe_client or get_stripe_client()
        self.paypal_for = paypal_client_factory or client_for_provider

    async def verify(self, user_id: str, force_sync: bool = False) -> VerificationResult:
        """
        Check a user's active subscription against its provider.

        Args:
            user_id: Profile ID
            force_sync: Write the provider's answer back (period end, cancellation)

        Returns:
            VerificationResult; sync_needed is True when our row and the
            provider disagree about whether the subscription is active
        """
        subscription = await self.subscription_dao.get_active_for_user(user_id)
        if subscription is None:
            return VerificationResult(is_active=False, provider_status=None, sync_needed=False)

        if subscription.is_lifetime:
            return VerificationResult(is_active=True, provider_status="lifetime", sync_needed=False)

        unverifiable = VerificationResult(
            is_active=subscription.status == SubscriptionStatus.ACTIVE,
            provider_status="unverifiable",
            sync_needed=False,
        )

        try:
            if subscription.provider == SubscriptionProvider.STRIPE:
                provider_status, provider_active = await self._check_stripe(subscription, force_sync)
            else:
                if not is_paypal_subscription_id(subscription.provider_subscription_id):
                    return unverifiable
                client = self.paypal_for(subscription.provider)
                remote = await client.get_subscription(subscription.provider_subscription_id)
                provider_status = remote.get("status") if remote else "not_found"
                provider_active = provider_status == "ACTIVE"
        except ExternalServiceError as e:
            logger.warning(f"Could not verify subscription for user {user_id}: {e.message}")
            return unverifiable

        ours_active = subscription.status == SubscriptionStatus.ACTIVE
        sync_needed = ours_active != provider_active

        if force_sync and sync_needed and not provider_active:
            logger.info(
                f"Provider reports {provider_status} for user {user_id}; cancelling local subscription",
                extra={"user_id": user_id, "subscription_id": subscription.id},
            )
            await self.subscription_dao.apply(
                subscription,
                {"status": SubscriptionStatus.CANCELED, "canceled_at": utcnow()},
            )
            await self.profile_dao.revoke_pro(user_id)

        return VerificationResult(
            is_active=provider_active,
            provider_status=provider_status,
            sync_needed=sync_needed,
        )

    async def _check_stripe(self, subscription: Subscription, force_sync: bool):
        remote = await self.stripe.get_subscription(subscription.provider_subscription_id)
        if remote is None:
            return "not_found", False

        if force_sync:
            _, period_end = stripe_period(remote)
            if period_end and period_end != subscription.current_period_end:
                await self.subscription_dao.apply(subscription, {"current_period_end": period_end})

        status = remote.get("status")
        return status, status in STRIPE_ACTIVE_STATUSES

    async def has_premium_access(self, user_id: str) -> bool:
        """
        Decide whether a user gets premium features right now.

        Admins always do. Otherwise trust the stored row until a day past
        its period end, then re-verify with the provider.
        """
        profile = await self.profile_dao.get_by_id(user_id)
        if profile is not None and profile.is_admin:
            return True

        subscription = await self.subscription_dao.get_active_for_user(user_id)
        if subscription is None:
            return False
        if subscription.is_lifetime:
            return True

        if subscription.current_period_end is not None:
            if utcnow() > subscription.current_period_end + RENEWAL_GRACE:
                return (await self.verify(user_id, force_sync=True)).is_active

        return True
