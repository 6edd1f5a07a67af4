"""
Fix PayPal subscriptions stuck before activation.

WHY: PayPal sends BILLING.SUBSCRIPTION.CREATED before the buyer approves,
and we store those rows as incomplete. If the ACTIVATED webhook is lost,
the customer is charged but the row (and their role) never moves. This
pass asks PayPal for the real state of every such row.
"""

import logging
from typing import Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.timeutils import parse_iso, utcnow
from billing_sync.dao.payment_history import PaymentHistoryDAO
from billing_sync.dao.profile import ProfileDAO
from billing_sync.dao.subscription import SubscriptionDAO
from billing_sync.models.payment_history import PaymentGateway, TransactionType
from billing_sync.models.plan import get_plan_by_paypal_plan
from billing_sync.models.profile import ProfileRole
from billing_sync.models.subscription import Subscription, SubscriptionProvider, SubscriptionStatus
from billing_sync.services.access import AccessManager
from billing_sync.services.payment_history import PaymentRecorder
from billing_sync.services.paypal_client import (
    PayPalClient,
    client_for_provider,
    paypal_next_billing,
)

logger = logging.getLogger(__name__)

PAYPAL_INACTIVE_STATUSES = ("CANCELLED", "SUSPENDED", "EXPIRED")
DEFAULT_PLAN_PRICE = 9.99


class PayPalActivationService:
    def __init__(
        self,
        db: AsyncSession,
        paypal_client_factory: Optional[Callable[[SubscriptionProvider], PayPalClient]] = None,
    ):
        self.db = db
        self.subscription_dao = SubscriptionDAO(db)
        self.profile_dao = ProfileDAO(db)
        self.payment_dao = PaymentHistoryDAO(db)
        self.recorder = PaymentRecorder(db)
        self.access = AccessManager(db)
        self.paypal_for = paypal_client_factory or client_for_provider

    async def fix_pending(self, dry_run: bool = False) -> Dict[str, int]:
        """
        Activate or cancel PayPal rows according to PayPal.

        A row is checked when it is not active, or when its owner is not
        pro/admin (active row but the role update was lost).

        Returns:
            {checked, activated, cancelled, errors}
        """
        stats = {"checked": 0, "activated": 0, "cancelled": 0, "errors": 0}
        client = self.paypal_for(SubscriptionProvider.PAYPAL)

        candidates = await self.subscription_dao.list_paypal_needing_activation()
        profiles = await self.profile_dao.get_many(list({s.user_id for s in candidates}))
        roles = {p.id: p.role for p in profiles}

        for subscription in candidates:
            role = roles.get(subscription.user_id, ProfileRole.USER)
            role_ok = role in (ProfileRole.PRO, ProfileRole.ADMIN)
            if subscription.status == SubscriptionStatus.ACTIVE and role_ok:
                continue

            stats["checked"] += 1
            provider_id = subscription.provider_subscription_id
            try:
                remote = await client.get_subscription(subscription.provider_subscription_id)
                if remote is None:
                    logger.warning(
                        f"PayPal subscription {subscription.provider_subscription_id} not found"
                    )
                    stats["errors"] += 1
                    continue

                status = remote.get("status")
                if status == "ACTIVE":
                    if not dry_run:
                        async with self.db.begin_nested():
                            await self._activate(subscription, remote)
                    stats["activated"] += 1
                elif status in PAYPAL_INACTIVE_STATUSES:
                    if subscription.status != SubscriptionStatus.CANCELED:
                        if not dry_run:
                            await self.subscription_dao.apply(
                                subscription,
                                {"status": SubscriptionStatus.CANCELED, "canceled_at": utcnow()},
                            )
                        stats["cancelled"] += 1
            except Exception as e:
                stats["errors"] += 1
                logger.error(
                    f"Failed to fix PayPal subscription {provider_id}: {e}"
                )

        logger.info(f"PayPal pending fix complete: {stats}", extra={"dry_run": dry_run})
        return stats

    async def _activate(self, subscription: Subscription, remote: Dict) -> None:
        plan = get_plan_by_paypal_plan(remote.get("plan_id"))
        fields = {
            "status": SubscriptionStatus.ACTIVE,
            "current_period_start": parse_iso(remote.get("start_time")),
            "current_period_end": paypal_next_billing(remote),
            "canceled_at": None,
        }
        payer_id = (remote.get("subscriber") or {}).get("payer_id")
        if payer_id:
            fields["provider_customer_id"] = payer_id
        await self.subscription_dao.apply(subscription, fields)

        already_paid = await self.payment_dao.exists_for(
            subscription.user_id,
            PaymentGateway.PAYPAL,
            subscription.provider_subscription_id,
            TransactionType.SUBSCRIPTION,
        )
        if not already_paid:
            last_payment = (remote.get("billing_info") or {}).get("last_payment") or {}
            value = (last_payment.get("amount") or {}).get("value")
            if value is not None:
                amount = float(value)
            elif plan is not None:
                amount = plan.price
            elif subscription.price_amount:
                amount = subscription.price_amount / 100
            else:
                amount = DEFAULT_PLAN_PRICE
            await self.recorder.record(
                user_id=subscription.user_id,
                transaction_type=TransactionType.SUBSCRIPTION,
                gateway=PaymentGateway.PAYPAL,
                gateway_identifier=subscription.provider_subscription_id,
                amount=amount,
                item_name=plan.name if plan else subscription.plan_name,
                extra_data={"source": "paypal_activation_fix"},
            )

        await self.access.grant(subscription.user_id)
        logger.info(
            f"Activated PayPal subscription {subscription.provider_subscription_id}",
            extra={"user_id": subscription.user_id},
        )
