"""
PayPal webhook event handlers.

WHAT: Subscription lifecycle, renewal and one-time capture events from
either PayPal account.

WHY: PayPal does not tell us which of our accounts a subscription lives
on. New subscriptions arrive with custom_id (our user ID); renewals of
migrated subscriptions arrive with neither a local row nor a custom_id,
so the user is recovered from the first payment recorded at migration.

HOW: Dispatch on event_type. Unlike Stripe, a handler failure propagates
so the endpoint answers 500 and PayPal redelivers; every write is an
upsert or a deduplicated payment insert, so redelivery is safe.
"""

import calendar
import logging
from datetime import datetime, time
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.timeutils import parse_iso, utcnow
from billing_sync.dao.payment_history import PaymentHistoryDAO
from billing_sync.dao.subscription import SubscriptionDAO
from billing_sync.models.payment_history import PaymentGateway, TransactionType
from billing_sync.models.plan import get_plan_by_paypal_plan
from billing_sync.models.subscription import Subscription, SubscriptionProvider, SubscriptionStatus
from billing_sync.services.access import AccessManager
from billing_sync.services.payment_history import PaymentRecorder
from billing_sync.services.paypal_client import (
    PayPalClient,
    client_for_provider,
    paypal_next_billing,
)
from billing_sync.services.status_mapper import (
    is_paypal_subscription_id,
    paypal_cancellation_reason,
)

logger = logging.getLogger(__name__)

PAYPAL_PROVIDERS = (SubscriptionProvider.PAYPAL, SubscriptionProvider.PAYPAL_LEGACY)
PAYPAL_GATEWAYS = (PaymentGateway.PAYPAL, PaymentGateway.PAYPAL_LEGACY)

DEFAULT_RENEWAL_AMOUNT = 9.99
DEFAULT_LIFETIME_AMOUNT = 99.0


def _sale_amount(resource: Dict[str, Any]) -> Optional[float]:
    """Sale amount: amount.total (sale events) or amount.value (newer payloads)."""
    amount = resource.get("amount") or {}
    value = amount.get("total") or amount.get("value")
    return float(value) if value else None


def _add_month(value: datetime) -> datetime:
    month = value.month % 12 + 1
    year = value.year + (1 if value.month == 12 else 0)
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class PayPalWebhookHandler:
    """
    Dispatch verified PayPal events to their handlers.
    """

    def __init__(
        self,
        db: AsyncSession,
        paypal_client_factory: Optional[Callable[[SubscriptionProvider], PayPalClient]] = None,
    ):
        self.db = db
        self.subscription_dao = SubscriptionDAO(db)
        self.payment_dao = PaymentHistoryDAO(db)
        self.recorder = PaymentRecorder(db)
        self.access = AccessManager(db)
        self.paypal_for = paypal_client_factory or client_for_provider

        self._handlers = {
            "BILLING.SUBSCRIPTION.CREATED": self._subscription_created,
            "BILLING.SUBSCRIPTION.ACTIVATED": self._subscription_created,
            "BILLING.SUBSCRIPTION.CANCELLED": self._subscription_ended,
            "BILLING.SUBSCRIPTION.EXPIRED": self._subscription_ended,
            "BILLING.SUBSCRIPTION.SUSPENDED": self._subscription_ended,
            "BILLING.SUBSCRIPTION.RE-ACTIVATED": self._subscription_reactivated,
            "BILLING.SUBSCRIPTION.PAYMENT.FAILED": self._payment_failed,
            "BILLING.SUBSCRIPTION.RENEWED": self._renewal,
            "PAYMENT.SALE.COMPLETED": self._renewal,
            "PAYMENT.CAPTURE.COMPLETED": self._capture_completed,
        }

    async def handle(self, event: Dict[str, Any]) -> bool:
        event_type = event.get("event_type")
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled PayPal event type {event_type}", extra={"event_id": event.get("id")})
            return False

        await handler(event_type, event.get("resource") or {})
        return True

    async def _find(self, subscription_id: str) -> Optional[Subscription]:
        return await self.subscription_dao.find_by_provider_subscription_id(
            subscription_id, PAYPAL_PROVIDERS
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def _subscription_created(self, event_type: str, resource: Dict[str, Any]) -> None:
        """
        CREATED arrives before approval (stored incomplete); ACTIVATED after.
        """
        subscription_id = resource.get("id")
        user_id = resource.get("custom_id")
        if not subscription_id or not user_id:
            logger.error(
                f"PayPal {event_type} without subscription or user ID",
                extra={"subscription_id": subscription_id},
            )
            return

        active = (
            event_type == "BILLING.SUBSCRIPTION.ACTIVATED" or resource.get("status") == "ACTIVE"
        )
        plan = get_plan_by_paypal_plan(resource.get("plan_id"))
        payer_id = (resource.get("subscriber") or {}).get("payer_id")

        await self.subscription_dao.upsert_by_provider_id(
            SubscriptionProvider.PAYPAL,
            subscription_id,
            user_id=user_id,
            provider_customer_id=payer_id,
            status=SubscriptionStatus.ACTIVE if active else SubscriptionStatus.INCOMPLETE,
            plan_id=plan.id if plan else "monthly",
            plan_name=plan.name if plan else "Monthly",
            price_amount=plan.price_cents if plan else 0,
            price_currency="USD",
            billing_interval=plan.interval if plan else "month",
            current_period_start=parse_iso(resource.get("start_time")),
            current_period_end=paypal_next_billing(resource),
            is_legacy=False,
        )

        if not active:
            return

        await self.recorder.record(
            user_id=user_id,
            transaction_type=TransactionType.SUBSCRIPTION,
            gateway=PaymentGateway.PAYPAL,
            gateway_identifier=subscription_id,
            amount=plan.price if plan else 0,
            item_name=plan.name if plan else "Subscription",
            extra_data={
                "plan_id": plan.id if plan else None,
                "paypal_plan_id": resource.get("plan_id"),
                "payer_id": payer_id,
            },
        )
        await self.access.grant(user_id)

    async def _subscription_ended(self, event_type: str, resource: Dict[str, Any]) -> None:
        subscription_id = resource.get("id")
        if not subscription_id:
            return

        subscription = await self._find(subscription_id)
        if subscription is None:
            logger.info(f"PayPal {event_type} for unknown subscription {subscription_id}")
            return

        await self.subscription_dao.apply(
            subscription,
            {
                "status": SubscriptionStatus.CANCELED,
                "canceled_at": utcnow(),
                "cancellation_reason": paypal_cancellation_reason(event_type) or event_type,
            },
        )
        await self.access.revoke_after_grace(subscription.user_id, subscription.current_period_end)

    async def _subscription_reactivated(self, event_type: str, resource: Dict[str, Any]) -> None:
        subscription_id = resource.get("id")
        if not subscription_id:
            return

        subscription = await self._find(subscription_id)
        if subscription is not None:
            await self.subscription_dao.apply(
                subscription,
                {
                    "status": SubscriptionStatus.ACTIVE,
                    "canceled_at": None,
                    "cancellation_reason": None,
                },
            )

        user_id = resource.get("custom_id") or (subscription.user_id if subscription else None)
        if user_id:
            await self.access.grant(user_id)

    async def _payment_failed(self, event_type: str, resource: Dict[str, Any]) -> None:
        subscription_id = resource.get("id")
        if not subscription_id:
            return
        subscription = await self._find(subscription_id)
        if subscription is not None:
            await self.subscription_dao.apply(subscription, {"status": SubscriptionStatus.PAST_DUE})

    # =========================================================================
    # Payments
    # =========================================================================

    async def _renewal(self, event_type: str, resource: Dict[str, Any]) -> None:
        """
        Record a renewal and keep the subscription row alive.

        Sale events carry the subscription in billing_agreement_id; RENEWED
        events carry it in id.
        """
        subscription_id = resource.get("billing_agreement_id") or resource.get("id")
        if not is_paypal_subscription_id(subscription_id):
            return

        subscription = await self._find(subscription_id)
        if subscription is not None and subscription.provider == SubscriptionProvider.PAYPAL:
            remote = await self.paypal_for(SubscriptionProvider.PAYPAL).get_subscription(subscription_id)
            if remote is not None:
                await self.subscription_dao.apply(
                    subscription,
                    {
                        "status": SubscriptionStatus.ACTIVE,
                        "current_period_end": paypal_next_billing(remote),
                    },
                )

        user_id = subscription.user_id if subscription else None
        if user_id is None:
            user_id = await self.payment_dao.find_user_for_identifier(subscription_id, PAYPAL_GATEWAYS)
        if user_id is None:
            logger.warning(f"Could not find user for PayPal subscription {subscription_id}")
            return

        amount = _sale_amount(resource)
        if amount is None:
            amount = (
                subscription.price_amount / 100
                if subscription and subscription.price_amount
                else DEFAULT_RENEWAL_AMOUNT
            )

        now = utcnow()
        start_of_day = datetime.combine(now.date(), time.min)
        if await self.payment_dao.renewal_recorded_since(
            user_id, subscription_id, PAYPAL_GATEWAYS, start_of_day
        ):
            logger.info(f"Renewal for {subscription_id} already recorded today, skipping")
            return

        is_legacy = subscription is None or subscription.provider == SubscriptionProvider.PAYPAL_LEGACY
        sale_id = resource.get("id") or f"sale_{subscription_id}_{int(now.timestamp())}"
        await self.recorder.record(
            user_id=user_id,
            transaction_type=TransactionType.RENEWAL,
            gateway=PaymentGateway.PAYPAL_LEGACY if is_legacy else PaymentGateway.PAYPAL,
            gateway_identifier=sale_id,
            gateway_event_id=sale_id,
            amount=amount,
            item_name=(subscription.plan_name if subscription else None) or "Subscription Renewal",
            extra_data={
                "plan_id": subscription.plan_id if subscription else "monthly",
                "subscription_id": subscription_id,
                "event_type": event_type,
                "sale_id": sale_id,
            },
        )
        await self.access.grant(user_id)

        if is_legacy:
            await self.subscription_dao.upsert_by_provider_id(
                SubscriptionProvider.PAYPAL_LEGACY,
                subscription_id,
                user_id=user_id,
                status=SubscriptionStatus.ACTIVE,
                plan_id="monthly",
                plan_name="Basic Plan (Legacy)",
                price_amount=round(amount * 100),
                price_currency="USD",
                billing_interval="month",
                current_period_end=_add_month(now),
                is_legacy=True,
            )

    async def _capture_completed(self, event_type: str, resource: Dict[str, Any]) -> None:
        """
        One-time (lifetime) order captured.

        Backup for the checkout capture path: only acts when the user has
        no lifetime row yet.
        """
        capture_id = resource.get("id")
        purchase_units = resource.get("purchase_units") or [{}]
        user_id = (
            resource.get("custom_id")
            or purchase_units[0].get("custom_id")
            or purchase_units[0].get("reference_id")
        )
        if not capture_id or not user_id:
            return

        order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
        amount = _sale_amount(resource) or DEFAULT_LIFETIME_AMOUNT

        _, created = await self.subscription_dao.upsert_by_provider_id(
            SubscriptionProvider.PAYPAL,
            order_id or capture_id,
            user_id=user_id,
            status=SubscriptionStatus.ACTIVE,
            plan_id="lifetime",
            plan_name="Lifetime",
            price_amount=round(amount * 100),
            price_currency="USD",
            billing_interval=None,
            is_legacy=False,
        )
        if not created:
            return

        await self.recorder.record(
            user_id=user_id,
            transaction_type=TransactionType.ONE_TIME,
            gateway=PaymentGateway.PAYPAL,
            gateway_identifier=capture_id,
            amount=amount,
            item_name="Lifetime Package",
            extra_data={"plan_id": "lifetime", "order_id": order_id, "capture_id": capture_id},
        )
        await self.access.grant(user_id)
