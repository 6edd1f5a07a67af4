"""
Subscription reconciler: correct local drift against provider truth.

WHAT: For every locally stored subscription, fetch the provider's copy,
compare status and billing period, and write the provider's version back
along with the role change it implies.

WHY: Webhooks get lost, arrive out of order, or fail mid-handler. The
reconciler is the safety net that makes the subscriptions table converge
on what Stripe and PayPal actually say, no matter what happened in
between. Two entry points share the rules:
- reconcile(): full pass over every non-lifetime row, with a dry-run mode
  and a mismatch report (admin endpoint, CLI)
- run_cron_sync(): the six-hourly job that only re-checks rows we believe
  are active, then runs the PayPal auto-heal pass

HOW: Each row is processed inside its own SAVEPOINT. A provider outage or
a bad row is counted in `errors` and the loop moves on.
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.exceptions import ReconciliationError
from billing_sync.core.timeutils import from_unix, utcnow
from billing_sync.dao.profile import ProfileDAO
from billing_sync.dao.subscription import SubscriptionDAO
from billing_sync.models.subscription import (
    Subscription,
    SubscriptionProvider,
    SubscriptionStatus,
)
from billing_sync.services.access import AccessManager
from billing_sync.services.discovery import SubscriptionDiscovery
from billing_sync.services.paypal_client import (
    PayPalClient,
    client_for_provider,
    paypal_next_billing,
)
from billing_sync.services.status_mapper import (
    STRIPE_ACTIVE_STATUSES,
    is_paypal_subscription_id,
    is_stripe_one_time_id,
    is_synthetic_id,
    map_provider_status,
)
from billing_sync.services.stripe_client import StripeClient, get_stripe_client, stripe_period

logger = logging.getLogger(__name__)

ALL_PROVIDERS = (
    SubscriptionProvider.STRIPE,
    SubscriptionProvider.PAYPAL,
    SubscriptionProvider.PAYPAL_LEGACY,
)
PAYPAL_PROVIDERS = (SubscriptionProvider.PAYPAL, SubscriptionProvider.PAYPAL_LEGACY)


# ============================================================================
# Results
# ============================================================================


@dataclass
class Mismatch:
    user_id: str
    email: Optional[str]
    provider: str
    subscription_id: str
    our_status: str
    provider_status: str
    action: str


@dataclass
class SyncResult:
    checked: int = 0
    updated: int = 0
    cancelled: int = 0
    created: int = 0
    errors: int = 0
    skipped: int = 0
    mismatches: List[Mismatch] = field(default_factory=list)
    cancelled_user_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================================
# Helpers
# ============================================================================


def _status_value(status: Any) -> str:
    return status.value if isinstance(status, SubscriptionStatus) else str(status)


def should_skip(subscription: Subscription) -> bool:
    """Rows no provider can answer for: one-time payments and synthetic fixes."""
    psid = subscription.provider_subscription_id
    if is_synthetic_id(psid):
        return True
    if subscription.provider == SubscriptionProvider.STRIPE:
        return is_stripe_one_time_id(psid)
    return not is_paypal_subscription_id(psid)


# ============================================================================
# Reconciler
# ============================================================================


class SubscriptionReconciler:
    """
    Compare local subscriptions with their providers and fix drift.
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
        self.access = AccessManager(db)
        self.stripe = stripe_client or get_stripe_client()
        self.paypal_for = paypal_client_factory or client_for_provider

    async def _fetch_remote(self, subscription: Subscription) -> Optional[Dict[str, Any]]:
        if subscription.provider == SubscriptionProvider.STRIPE:
            return await self.stripe.get_subscription(subscription.provider_subscription_id)
        client = self.paypal_for(subscription.provider)
        return await client.get_subscription(subscription.provider_subscription_id)

    # =========================================================================
    # Full reconciliation
    # =========================================================================

    async def reconcile(
        self,
        provider: Optional[SubscriptionProvider] = None,
        dry_run: bool = False,
    ) -> SyncResult:
        """
        Reconcile every non-lifetime subscription, optionally for one provider.

        Args:
            provider: Restrict to one provider; None means all three
            dry_run: Report mismatches without writing anything

        Returns:
            SyncResult with counts and the mismatch report

        Raises:
            ReconciliationError: If the rows to reconcile cannot be loaded
        """
        result = SyncResult()
        providers = [provider] if provider else list(ALL_PROVIDERS)
        try:
            subscriptions = await self.subscription_dao.list_for_reconciliation(providers)
            profiles = await self.profile_dao.get_many(list({s.user_id for s in subscriptions}))
        except SQLAlchemyError as e:
            logger.error(f"Could not load subscriptions to reconcile: {e}", exc_info=True)
            raise ReconciliationError(providers=[p.value for p in providers]) from e

        emails = {p.id: p.email for p in profiles}

        logger.info(
            f"Reconciling {len(subscriptions)} subscriptions"
            f"{' (dry run)' if dry_run else ''}",
            extra={"providers": [p.value for p in providers], "dry_run": dry_run},
        )

        for subscription in subscriptions:
            if should_skip(subscription):
                result.skipped += 1
                continue

            # A rolled-back SAVEPOINT expires the row, so log from copies
            provider_name = subscription.provider.value
            provider_id = subscription.provider_subscription_id
            row_id, user_id = subscription.id, subscription.user_id
            try:
                if dry_run:
                    await self._reconcile_one(subscription, emails, result, dry_run=True)
                else:
                    async with self.db.begin_nested():
                        await self._reconcile_one(subscription, emails, result, dry_run=False)
            except Exception as e:
                result.errors += 1
                logger.error(
                    f"Failed to reconcile {provider_name} subscription {provider_id}: {e}",
                    extra={"subscription_id": row_id, "user_id": user_id},
                )

        logger.info(
            f"Reconciliation complete: checked={result.checked} updated={result.updated} "
            f"cancelled={result.cancelled} errors={result.errors} skipped={result.skipped}"
        )
        return result

    async def _reconcile_one(
        self,
        subscription: Subscription,
        emails: Dict[str, str],
        result: SyncResult,
        dry_run: bool,
    ) -> None:
        remote = await self._fetch_remote(subscription)
        result.checked += 1
        now = utcnow()
        our_status = _status_value(subscription.status)

        def note(provider_status: str, action: str) -> None:
            result.mismatches.append(
                Mismatch(
                    user_id=subscription.user_id,
                    email=emails.get(subscription.user_id),
                    provider=subscription.provider.value,
                    subscription_id=subscription.provider_subscription_id,
                    our_status=our_status,
                    provider_status=provider_status,
                    action=action,
                )
            )

        if remote is None:
            if subscription.status == SubscriptionStatus.ACTIVE:
                note("not_found", "cancel")
                result.cancelled += 1
                if not dry_run:
                    await self.subscription_dao.apply(
                        subscription,
                        {"status": SubscriptionStatus.CANCELED, "canceled_at": now},
                    )
                    if await self.access.revoke_after_grace(
                        subscription.user_id, subscription.current_period_end, now
                    ):
                        result.cancelled_user_ids.append(subscription.user_id)
            return

        is_stripe = subscription.provider == SubscriptionProvider.STRIPE
        provider_status = remote.get("status") or ""
        mapped = map_provider_status(subscription.provider, provider_status)

        if is_stripe:
            _, period_end = stripe_period(remote)
            provider_canceled_at = from_unix(remote.get("canceled_at"))
            cancel_at = from_unix(remote.get("cancel_at"))
        else:
            period_end = paypal_next_billing(remote)
            provider_canceled_at = None
            cancel_at = None

        # Stripe scheduled cancellation: still active until the period ends
        if (
            is_stripe
            and mapped == SubscriptionStatus.ACTIVE
            and (remote.get("cancel_at_period_end") or cancel_at)
        ):
            fields = {
                "status": SubscriptionStatus.ACTIVE,
                "cancel_at": cancel_at or period_end,
                "canceled_at": provider_canceled_at or subscription.canceled_at or now,
            }
            if period_end:
                fields["current_period_end"] = period_end
            changes = self._changed(subscription, fields)
            if changes:
                if "status" in changes:
                    note(provider_status, "scheduled_cancel")
                result.updated += 1
                if not dry_run:
                    await self.subscription_dao.apply(subscription, changes)
            return

        if mapped != subscription.status:
            active = mapped == SubscriptionStatus.ACTIVE
            note(provider_status, "activate" if active else f"set_{_status_value(mapped)}")
            result.updated += 1
            if mapped == SubscriptionStatus.CANCELED:
                result.cancelled += 1
            if dry_run:
                return

            fields: Dict[str, Any] = {"status": mapped}
            if period_end:
                fields["current_period_end"] = period_end
            if active:
                fields["canceled_at"] = None
            else:
                fields["canceled_at"] = provider_canceled_at or now
            if is_stripe:
                fields["cancel_at"] = cancel_at
            await self.subscription_dao.apply(subscription, fields)

            if active:
                await self.access.grant(subscription.user_id)
            elif await self.access.revoke_after_grace(
                subscription.user_id, subscription.current_period_end, now
            ):
                result.cancelled_user_ids.append(subscription.user_id)
            return

        if period_end and period_end != subscription.current_period_end:
            result.updated += 1
            if not dry_run:
                await self.subscription_dao.apply(subscription, {"current_period_end": period_end})

    @staticmethod
    def _changed(subscription: Subscription, fields: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in fields.items() if getattr(subscription, k) != v}

    # =========================================================================
    # Cron variant
    # =========================================================================

    async def run_cron_sync(self) -> Dict[str, Any]:
        """
        The periodic job: re-check active rows, then heal PayPal payments.

        Returns:
            {stripe: {checked, synced, errors}, paypal: {...},
             healed: {created, activated}, cancelled: int}
        """
        results: Dict[str, Any] = {
            "stripe": {"checked": 0, "synced": 0, "errors": 0},
            "paypal": {"checked": 0, "synced": 0, "errors": 0},
            "healed": {"created": 0, "activated": 0},
        }
        cancelled_users: List[str] = []

        for subscription in await self.subscription_dao.list_active([SubscriptionProvider.STRIPE]):
            if should_skip(subscription):
                continue
            results["stripe"]["checked"] += 1
            provider_id = subscription.provider_subscription_id
            try:
                async with self.db.begin_nested():
                    if await self._cron_sync_stripe(subscription, cancelled_users):
                        results["stripe"]["synced"] += 1
            except Exception as e:
                results["stripe"]["errors"] += 1
                logger.error(f"Cron sync failed for {provider_id}: {e}")

        for subscription in await self.subscription_dao.list_active(PAYPAL_PROVIDERS):
            if not is_paypal_subscription_id(subscription.provider_subscription_id):
                continue
            results["paypal"]["checked"] += 1
            provider_id = subscription.provider_subscription_id
            try:
                async with self.db.begin_nested():
                    if await self._cron_sync_paypal(subscription, cancelled_users):
                        results["paypal"]["synced"] += 1
            except Exception as e:
                results["paypal"]["errors"] += 1
                logger.error(f"Cron sync failed for {provider_id}: {e}")

        discovery = SubscriptionDiscovery(
            self.db, stripe_client=self.stripe, paypal_client_factory=self.paypal_for
        )
        results["healed"] = await discovery.heal_paypal_payments()
        results["cancelled"] = len(cancelled_users)

        logger.info("Cron subscription sync complete", extra={"results": results})
        return results

    async def _cron_sync_stripe(self, subscription: Subscription, cancelled_users: List[str]) -> bool:
        now = utcnow()
        remote = await self.stripe.get_subscription(subscription.provider_subscription_id)

        if remote is None:
            await self.subscription_dao.apply(
                subscription, {"status": SubscriptionStatus.CANCELED, "canceled_at": now}
            )
            if await self.access.revoke_after_grace(
                subscription.user_id, subscription.current_period_end, now
            ):
                cancelled_users.append(subscription.user_id)
            return True

        _, period_end = stripe_period(remote)
        cancel_at = from_unix(remote.get("cancel_at"))
        canceled_at = from_unix(remote.get("canceled_at"))

        if remote.get("cancel_at_period_end") or cancel_at:
            fields: Dict[str, Any] = {}
            if cancel_at:
                fields["cancel_at"] = cancel_at
            if canceled_at:
                fields["canceled_at"] = canceled_at
            if period_end:
                fields["current_period_end"] = period_end
            if fields:
                await self.subscription_dao.apply(subscription, fields)
            return False

        if remote.get("status") not in STRIPE_ACTIVE_STATUSES:
            await self.subscription_dao.apply(
                subscription,
                {
                    "status": SubscriptionStatus.CANCELED,
                    "canceled_at": canceled_at or now,
                    "cancel_at": cancel_at,
                    "current_period_end": period_end,
                },
            )
            if await self.access.revoke_after_grace(subscription.user_id, period_end, now):
                cancelled_users.append(subscription.user_id)
            return True

        if period_end:
            await self.subscription_dao.apply(subscription, {"current_period_end": period_end})
        return False

    async def _cron_sync_paypal(self, subscription: Subscription, cancelled_users: List[str]) -> bool:
        now = utcnow()
        client = self.paypal_for(subscription.provider)
        remote = await client.get_subscription(subscription.provider_subscription_id)

        if remote is not None and remote.get("status") == "ACTIVE":
            return False

        grace_end = paypal_next_billing(remote)
        fields: Dict[str, Any] = {"status": SubscriptionStatus.CANCELED, "canceled_at": now}
        if grace_end:
            fields["current_period_end"] = grace_end
        await self.subscription_dao.apply(subscription, fields)

        if await self.access.revoke_after_grace(subscription.user_id, grace_end, now):
            cancelled_users.append(subscription.user_id)
        return True
