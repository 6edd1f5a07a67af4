"""
Discovery pass: find provider-side subscriptions we never stored.

WHAT:
- discover_stripe(): insert active Stripe subscriptions missing locally
- heal_paypal_payments(): insert PayPal subscriptions that have a first
  payment recorded but no subscription row
- discover_stripe_plans() / sync_paypal_legacy_plans(): keep the plans
  table aware of every price customers are actually paying

WHY: The reconciler only fixes rows that exist. When a checkout webhook
never arrives, the customer pays and gets nothing. Discovery goes the
other way, from provider to database, and heals those accounts.

HOW: Every insert is an upsert on (provider, provider_subscription_id)
so running discovery twice, or alongside a late webhook, is harmless.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import timedelta
from typing import Any, Callable, Dict, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.timeutils import from_unix, utcnow
from billing_sync.dao.plan import PlanDAO
from billing_sync.dao.payment_history import PaymentHistoryDAO
from billing_sync.dao.profile import ProfileDAO
from billing_sync.dao.subscription import SubscriptionDAO
from billing_sync.models.subscription import SubscriptionProvider, SubscriptionStatus
from billing_sync.services.access import AccessManager
from billing_sync.services.paypal_client import (
    PayPalClient,
    client_for_provider,
    paypal_next_billing,
)
from billing_sync.services.stripe_client import StripeClient, get_stripe_client, stripe_period

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryResult:
    checked: int = 0
    created: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def infer_stripe_plan(unit_amount: Optional[int], interval: Optional[str]) -> Dict[str, str]:
    """
    Guess our plan from a Stripe price amount (cents).

    Up to $10 is Basic, up to $35 is Pro, anything above is a custom deal.
    """
    amount = unit_amount or 0
    if amount <= 1000:
        return {"plan_id": "monthly", "plan_name": "Basic Plan"}
    if amount <= 3500:
        return {"plan_id": "monthly_pro", "plan_name": "Pro Plan"}
    return {
        "plan_id": "custom",
        "plan_name": f"Custom Plan (${amount / 100:.2f}/{interval or 'month'})",
    }


class SubscriptionDiscovery:
    """
    Provider-to-database healing passes.
    """

    def __init__(
        self,
        db: AsyncSession,
        stripe_client: Optional[StripeClient] = None,
        paypal_client_factory: Optional[Callable[[SubscriptionProvider], PayPalClient]] = None,
    ):
        self.db = db
        self.subscription_dao = SubscriptionDAO(db)
        self.profile_dao = ProfileDAO(db)
        self.payment_dao = PaymentHistoryDAO(db)
        self.plan_dao = PlanDAO(db)
        self.access = AccessManager(db)
        self.stripe = stripe_client or get_stripe_client()
        self.paypal_for = paypal_client_factory or client_for_provider

    # =========================================================================
    # Stripe subscriptions
    # =========================================================================

    async def discover_stripe(self, dry_run: bool = False) -> DiscoveryResult:
        """
        Insert active Stripe subscriptions that have no local row.

        Skips subscriptions whose customer has no email or no matching
        profile, and users who already have an active subscription.
        """
        result = DiscoveryResult()
        known = await self.subscription_dao.existing_provider_ids(SubscriptionProvider.STRIPE)

        for remote in self.stripe.list_active_subscriptions():
            result.checked += 1
            subscription_id = remote["id"]
            if subscription_id in known:
                continue

            customer = remote.get("customer")
            email = customer.get("email") if isinstance(customer, dict) else None
            if not email:
                logger.info(f"Stripe subscription {subscription_id} has no customer email, skipping")
                result.skipped += 1
                continue

            profile = await self.profile_dao.get_by_email(email)
            if profile is None:
                logger.info(f"No profile for {email} (Stripe {subscription_id}), skipping")
                result.skipped += 1
                continue

            if await self.subscription_dao.has_active_subscription(profile.id):
                result.skipped += 1
                continue

            items = (remote.get("items") or {}).get("data") or []
            price = items[0].get("price") if items else None
            price = price or {}
            interval = (price.get("recurring") or {}).get("interval") or "month"
            plan = infer_stripe_plan(price.get("unit_amount"), interval)
            period_start, period_end = stripe_period(remote)

            logger.info(
                f"Discovered Stripe subscription {subscription_id} for {email} ({plan['plan_name']})",
                extra={"user_id": profile.id, "dry_run": dry_run},
            )
            result.created += 1
            if dry_run:
                continue

            try:
                async with self.db.begin_nested():
                    await self.subscription_dao.upsert_by_provider_id(
                        SubscriptionProvider.STRIPE,
                        subscription_id,
                        user_id=profile.id,
                        provider_customer_id=customer.get("id"),
                        status=SubscriptionStatus.ACTIVE,
                        price_amount=price.get("unit_amount"),
                        price_currency=(price.get("currency") or "usd").upper(),
                        billing_interval=interval,
                        current_period_start=period_start,
                        current_period_end=period_end,
                        cancel_at=from_unix(remote.get("cancel_at")),
                        **plan,
                    )
                    await self.access.grant(profile.id)
            except Exception as e:
                result.created -= 1
                result.errors += 1
                logger.error(f"Failed to store discovered subscription {subscription_id}: {e}")

            known.add(subscription_id)

        return result

    # =========================================================================
    # PayPal auto-heal
    # =========================================================================

    async def heal_paypal_payments(self, days: int = 7, dry_run: bool = False) -> Dict[str, int]:
        """
        Create subscription rows for recent PayPal first payments that lack one.

        Only subscriptions PayPal still reports as ACTIVE are created.

        Returns:
            {"created": n, "activated": n}
        """
        healed = {"created": 0, "activated": 0}
        since = utcnow() - timedelta(days=days)
        payments = await self.payment_dao.list_recent_paypal_subscription_payments(since)
        client = self.paypal_for(SubscriptionProvider.PAYPAL)
        seen: Set[str] = set()

        for payment in payments:
            subscription_id = payment.gateway_identifier
            if not subscription_id or not payment.user_id or subscription_id in seen:
                continue
            seen.add(subscription_id)

            if await self.subscription_dao.find_by_provider_subscription_id(subscription_id):
                continue

            logger.warning(f"Missing subscription for PayPal payment {subscription_id}")
            try:
                remote = await client.get_subscription(subscription_id)
                if not remote or remote.get("status") != "ACTIVE":
                    continue
                if dry_run:
                    healed["created"] += 1
                    continue

                async with self.db.begin_nested():
                    _, created = await self.subscription_dao.upsert_by_provider_id(
                        SubscriptionProvider.PAYPAL,
                        subscription_id,
                        user_id=payment.user_id,
                        status=SubscriptionStatus.ACTIVE,
                        plan_id="monthly",
                        plan_name="Basic Plan",
                        price_amount=999,
                        price_currency="USD",
                        billing_interval="month",
                        current_period_end=paypal_next_billing(remote),
                        is_legacy=False,
                    )
                    if created:
                        healed["created"] += 1
                    await self.access.grant(payment.user_id)
                    healed["activated"] += 1
                logger.info(f"Auto-healed PayPal subscription {subscription_id}")
            except Exception as e:
                logger.error(f"Error healing PayPal subscription {subscription_id}: {e}")

        return healed

    # =========================================================================
    # Plans
    # =========================================================================

    async def discover_stripe_plans(self) -> DiscoveryResult:
        """
        Upsert a plan for every Stripe price with active subscribers.

        Prices already present in the plans table are left alone.
        """
        result = DiscoveryResult()
        known = await self.plan_dao.known_stripe_price_ids()

        in_use: Set[str] = set()
        for remote in self.stripe.list_active_subscriptions():
            for item in (remote.get("items") or {}).get("data") or []:
                price = item.get("price") or {}
                if price.get("id"):
                    in_use.add(price["id"])

        for price_id in sorted(in_use - known):
            result.checked += 1
            try:
                price = await self.stripe.retrieve_price(price_id)
                if price is None:
                    result.skipped += 1
                    continue

                product = price.get("product")
                if isinstance(product, dict):
                    product_id, product_name = product["id"], product.get("name") or "Unknown Product"
                else:
                    product_id, product_name = str(product), "Unknown Product"
                interval = (price.get("recurring") or {}).get("interval") or "one_time"

                _, created = await self.plan_dao.upsert(
                    f"stripe_{product_id[:15]}_{interval}",
                    name=product_name,
                    price_amount=price.get("unit_amount") or 0,
                    currency=(price.get("currency") or "usd").upper(),
                    billing_interval=interval,
                    stripe_price_id=price_id,
                    stripe_product_id=product_id,
                    is_active=True,
                    is_legacy=False,
                    is_discovered=True,
                    extra_data={"stripe_product_id": product_id, "stripe_price_id": price_id},
                )
                if created:
                    result.created += 1
                logger.info(f"Discovered Stripe plan {product_name} ({price_id})")
            except Exception as e:
                result.errors += 1
                logger.error(f"Failed to sync Stripe price {price_id}: {e}")

        return result

    async def sync_paypal_legacy_plans(self) -> DiscoveryResult:
        """Mirror the legacy PayPal account's billing plans into the plans table."""
        result = DiscoveryResult()
        client = self.paypal_for(SubscriptionProvider.PAYPAL_LEGACY)

        for plan in await client.list_plans():
            result.checked += 1
            price_amount = 0.0
            interval = "month"
            for cycle in plan.get("billing_cycles") or []:
                if cycle.get("tenure_type") == "REGULAR":
                    fixed = (cycle.get("pricing_scheme") or {}).get("fixed_price") or {}
                    price_amount = float(fixed.get("value") or 0)
                    interval = ((cycle.get("frequency") or {}).get("interval_unit") or "MONTH").lower()
                    break

            _, created = await self.plan_dao.upsert(
                f"paypal_legacy_{plan['id']}",
                name=plan.get("name") or plan["id"],
                price_amount=round(price_amount * 100),
                currency="USD",
                billing_interval=interval,
                paypal_plan_id=plan["id"],
                is_active=plan.get("status") == "ACTIVE",
                is_legacy=True,
                extra_data={"paypal_status": plan.get("status")},
            )
            if created:
                result.created += 1

        logger.info(f"Synced {result.checked} legacy PayPal plans ({result.created} new)")
        return result
