"""
Subscription/role/payment mismatch report and repair.

WHAT: Cross-checks three tables that should agree:
- payment_history says a user paid
- subscriptions says a user has an active plan
- profiles.role says a user can use premium features

WHY: Migrated accounts and missed webhooks leave these out of step.
Support needs a report of who is affected, and a repair that grants
access to everyone who demonstrably paid.
"""

import logging
import time
from dataclasses import dataclass, asdict
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.timeutils import utcnow
from billing_sync.dao.payment_history import PaymentHistoryDAO
from billing_sync.dao.profile import ProfileDAO
from billing_sync.dao.subscription import SubscriptionDAO
from billing_sync.models.payment_history import PaymentHistory, PaymentGateway
from billing_sync.models.profile import Profile, ProfileRole
from billing_sync.models.subscription import SubscriptionProvider, SubscriptionStatus
from billing_sync.services.status_mapper import SYNTHETIC_ID_PREFIX

logger = logging.getLogger(__name__)

PRO_AMOUNT_THRESHOLD = 19
MULTI_MONTH_AMOUNT_THRESHOLD = 29
REPAIR_PERIOD = timedelta(days=30)


@dataclass
class MismatchEntry:
    user_id: str
    email: Optional[str]
    role: Optional[str]
    detail: Optional[str] = None


def infer_plan_from_payment(item_name: Optional[str], amount: float) -> Tuple[str, str, bool]:
    """
    Guess the plan a legacy payment bought.

    Returns:
        (plan_id, plan_name, is_lifetime)
    """
    item = (item_name or "").lower()
    if "lifetime" in item:
        return "lifetime", "Lifetime", True
    if "pro" in item or "standard" in item or amount >= PRO_AMOUNT_THRESHOLD:
        return "monthly_pro", "Pro Plan", False
    if "6 month" in item or "annual" in item or amount >= MULTI_MONTH_AMOUNT_THRESHOLD:
        return "basic_annual", "6 Month Package", False
    return "monthly", "Basic Plan", False


def repair_provider(payment: PaymentHistory, profile: Profile) -> SubscriptionProvider:
    """Provider for a synthetic row; legacy users' PayPal payments went to the legacy account."""
    gateway = payment.gateway or PaymentGateway.STRIPE
    provider = SubscriptionProvider(gateway.value)
    if profile.is_legacy_user and provider == SubscriptionProvider.PAYPAL:
        return SubscriptionProvider.PAYPAL_LEGACY
    return provider


class MismatchService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.subscription_dao = SubscriptionDAO(db)
        self.profile_dao = ProfileDAO(db)
        self.payment_dao = PaymentHistoryDAO(db)

    async def _profiles(self, user_ids) -> Dict[str, Profile]:
        return {p.id: p for p in await self.profile_dao.get_many(list(user_ids))}

    async def find_mismatches(self) -> Dict[str, List[Dict[str, Any]]]:
        """
        Report users whose payments, subscriptions and role disagree.

        Returns:
            Dict with paid_without_subscription, pro_without_subscription
            and active_without_pro lists
        """
        active_users = await self.subscription_dao.active_user_ids()

        payments_by_user: Dict[str, List[PaymentHistory]] = {}
        for payment in await self.payment_dao.list_paid():
            payments_by_user.setdefault(payment.user_id, []).append(payment)

        unpaid_access = [uid for uid in payments_by_user if uid not in active_users]
        active_subs = await self.subscription_dao.list_active()
        pro_profiles = await self.profile_dao.list_by_role(ProfileRole.PRO)
        profiles = await self._profiles(
            set(unpaid_access) | {s.user_id for s in active_subs}
        )

        paid_without_subscription = []
        for user_id in unpaid_access:
            profile = profiles.get(user_id)
            payments = payments_by_user[user_id]
            paid_without_subscription.append(
                asdict(
                    MismatchEntry(
                        user_id=user_id,
                        email=profile.email if profile else None,
                        role=profile.role.value if profile else None,
                        detail=", ".join(
                            f"{p.item_name or 'unknown'} ${p.amount:.2f} via {p.gateway.value}"
                            for p in payments
                        ),
                    )
                )
            )

        pro_without_subscription = []
        for profile in pro_profiles:
            if profile.id in active_users:
                continue
            latest = await self.subscription_dao.get_latest_for_user(profile.id)
            detail = (
                f"latest subscription {latest.plan_name} is {latest.status.value}"
                if latest
                else "no subscription record"
            )
            pro_without_subscription.append(
                asdict(MismatchEntry(profile.id, profile.email, profile.role.value, detail))
            )

        active_without_pro = []
        seen = set()
        for sub in active_subs:
            profile = profiles.get(sub.user_id)
            if profile is None or profile.has_paid_role or sub.user_id in seen:
                continue
            seen.add(sub.user_id)
            active_without_pro.append(
                asdict(
                    MismatchEntry(
                        sub.user_id,
                        profile.email,
                        profile.role.value,
                        f"{sub.plan_name} via {sub.provider.value}",
                    )
                )
            )

        logger.info(
            f"Mismatch report: {len(paid_without_subscription)} paid without subscription, "
            f"{len(pro_without_subscription)} pro without subscription, "
            f"{len(active_without_pro)} active without pro"
        )
        return {
            "paid_without_subscription": paid_without_subscription,
            "pro_without_subscription": pro_without_subscription,
            "active_without_pro": active_without_pro,
        }

    async def fix_mismatches(self, dry_run: bool = False) -> Dict[str, int]:
        """
        Grant access to everyone who paid or holds an active subscription.

        HOW:
        1. Active subscription but no paid role: set role to pro
        2. Latest qualifying payment but no active subscription:
           reactivate the user's most recent subscription, or insert a
           synthetic one inferred from the payment, then set role to pro

        Admin roles are never touched.

        Args:
            dry_run: Count what would change without writing

        Returns:
            Dict with roles_fixed, subscriptions_fixed, skipped
        """
        roles_fixed = 0
        subscriptions_fixed = 0
        skipped = 0

        active_subs = await self.subscription_dao.list_active()
        profiles = await self._profiles({s.user_id for s in active_subs})
        fixed_users = set()
        for sub in active_subs:
            profile = profiles.get(sub.user_id)
            if profile is None or profile.has_paid_role or sub.user_id in fixed_users:
                continue
            logger.info(f"{profile.email}: {profile.role.value} -> pro (has {sub.plan_name})")
            if not dry_run:
                await self.profile_dao.grant_pro(sub.user_id)
            fixed_users.add(sub.user_id)
            roles_fixed += 1

        # Newest payment per user
        latest_payment: Dict[str, PaymentHistory] = {}
        for payment in await self.payment_dao.list_paid(include_legacy_pending=True):
            latest_payment.setdefault(payment.user_id, payment)

        payer_profiles = await self._profiles(latest_payment.keys())
        for user_id, payment in latest_payment.items():
            if await self.subscription_dao.has_active_subscription(user_id):
                continue

            profile = payer_profiles.get(user_id)
            if profile is None:
                logger.warning(f"Skipping {user_id}: no profile found")
                skipped += 1
                continue

            plan_id, plan_name, lifetime = infer_plan_from_payment(payment.item_name, payment.amount)
            provider = repair_provider(payment, profile)
            logger.info(
                f"{profile.email}: activating {plan_name} via {provider.value} "
                f"(payment {payment.item_name} ${payment.amount:.2f})"
            )

            if not dry_run:
                async with self.db.begin_nested():
                    latest = await self.subscription_dao.get_latest_for_user(user_id)
                    if latest is not None:
                        await self.subscription_dao.apply(
                            latest,
                            {
                                "status": SubscriptionStatus.ACTIVE,
                                "plan_id": plan_id,
                                "plan_name": plan_name,
                            },
                        )
                    else:
                        now = utcnow()
                        await self.subscription_dao.create(
                            user_id=user_id,
                            provider=provider,
                            provider_subscription_id=(
                                f"{SYNTHETIC_ID_PREFIX}{user_id}_{int(time.time() * 1000)}"
                            ),
                            status=SubscriptionStatus.ACTIVE,
                            plan_id=plan_id,
                            plan_name=plan_name,
                            price_amount=round(payment.amount * 100),
                            price_currency="USD",
                            billing_interval=None if lifetime else "month",
                            current_period_start=payment.created_at,
                            current_period_end=None if lifetime else now + REPAIR_PERIOD,
                            is_legacy=bool(profile.is_legacy_user),
                        )
                    await self.profile_dao.grant_pro(user_id)
            subscriptions_fixed += 1

        logger.info(
            f"Mismatch fix{' (dry run)' if dry_run else ''}: {roles_fixed} roles, "
            f"{subscriptions_fixed} subscriptions, {skipped} skipped"
        )
        return {
            "roles_fixed": roles_fixed,
            "subscriptions_fixed": subscriptions_fixed,
            "skipped": skipped,
        }
