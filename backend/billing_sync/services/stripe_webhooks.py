"""
Stripe webhook event handlers.

WHAT: Applies checkout, subscription lifecycle and invoice events to the
subscriptions and payment_history tables and adjusts the user's role.

WHY: Webhooks are the fast path; the reconciler catches whatever they
miss. Every write here is an upsert or a deduplicated insert, so Stripe
redelivering an event (which it does on any non-2xx or timeout) never
double-counts a payment.

HOW: StripeWebhookHandler.handle() dispatches on event["type"]. Handlers
raise AppException subclasses for malformed events; the API layer logs,
rolls back and still acknowledges so Stripe does not retry a bad payload
forever.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.exceptions import ValidationError
from billing_sync.core.timeutils import from_unix, utcnow
from billing_sync.dao.subscription import SubscriptionDAO
from billing_sync.models.payment_history import PaymentGateway, TransactionType
from billing_sync.models.plan import get_catalog_plan, get_plan_by_stripe_price
from billing_sync.models.subscription import SubscriptionProvider, SubscriptionStatus
from billing_sync.services.access import AccessManager
from billing_sync.services.payment_history import PaymentRecorder
from billing_sync.services.status_mapper import map_stripe_status
from billing_sync.services.stripe_client import StripeClient, get_stripe_client, stripe_period

logger = logging.getLogger(__name__)

def _metadata_user_id(obj: Dict[str, Any]) -> Optional[str]:
    metadata = obj.get("metadata") or {}
    return metadata.get("userId") or metadata.get("user_id") or obj.get("client_reference_id")


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """Subscription ID of an invoice (moved under parent.subscription_details in newer APIs)."""
    subscription = invoice.get("subscription")
    if subscription:
        return subscription if isinstance(subscription, str) else subscription.get("id")
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


class StripeWebhookHandler:
    """
    Dispatch verified Stripe events to their handlers.
    """

    def __init__(self, db: AsyncSession, stripe_client: Optional[StripeClient] = None):
        self.db = db
        self.subscription_dao = SubscriptionDAO(db)
        self.recorder = PaymentRecorder(db)
        self.access = AccessManager(db)
        self.stripe = stripe_client or get_stripe_client()

        self._handlers = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
            "customer.subscription.paused": self._subscription_paused,
            "customer.subscription.resumed": self._subscription_resumed,
            "invoice.paid": self._invoice_paid,
            "invoice.payment_failed": self._invoice_payment_failed,
        }

    async def handle(self, event: Dict[str, Any]) -> bool:
        """
        Apply one event.

        Returns:
            True if the event type is handled, False if it was only acknowledged
        """
        event_type = event.get("type")
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled Stripe event type {event_type}", extra={"event_id": event.get("id")})
            return False

        obj = (event.get("data") or {}).get("object") or {}
        await handler(event, obj)
        return True

    # =========================================================================
    # Checkout
    # =========================================================================

    async def _checkout_completed(self, event: Dict[str, Any], session: Dict[str, Any]) -> None:
        user_id = _metadata_user_id(session)
        if not user_id:
            raise ValidationError(
                message="Missing userId in checkout session metadata",
                session_id=session.get("id"),
            )

        plan_id = (session.get("metadata") or {}).get("planId")
        amount = (session.get("amount_total") or 0) / 100
        currency = (session.get("currency") or "usd").upper()
        customer_id = session.get("customer") if isinstance(session.get("customer"), str) else None

        if session.get("mode") == "subscription":
            await self._checkout_subscription(event, session, user_id, plan_id, amount, currency, customer_id)
        else:
            await self._checkout_lifetime(event, session, user_id, amount, currency, customer_id)

        await self.access.grant(user_id)

    async def _checkout_subscription(
        self,
        event: Dict[str, Any],
        session: Dict[str, Any],
        user_id: str,
        plan_id: Optional[str],
        amount: float,
        currency: str,
        customer_id: Optional[str],
    ) -> None:
        subscription_id = session.get("subscription")
        if not subscription_id:
            raise ValidationError(message="Subscription checkout without a subscription ID")

        remote = await self.stripe.get_subscription(subscription_id)
        if remote is None:
            raise ValidationError(
                message="Checkout subscription not found at Stripe",
                subscription_id=subscription_id,
            )

        items = (remote.get("items") or {}).get("data") or []
        price = (items[0].get("price") or {}) if items else {}
        catalog = get_plan_by_stripe_price(price.get("id")) or get_catalog_plan(plan_id)
        period_start, period_end = stripe_period(remote)

        await self.subscription_dao.upsert_by_provider_id(
            SubscriptionProvider.STRIPE,
            remote["id"],
            user_id=user_id,
            provider_customer_id=customer_id,
            status=map_stripe_status(remote.get("status")),
            plan_id=catalog.id if catalog else plan_id,
            plan_name=catalog.name if catalog else plan_id,
            price_amount=price.get("unit_amount") or 0,
            price_currency=(remote.get("currency") or currency).upper(),
            billing_interval=(price.get("recurring") or {}).get("interval"),
            current_period_start=period_start,
            current_period_end=period_end,
            is_legacy=False,
        )

        await self.recorder.record(
            user_id=user_id,
            transaction_type=TransactionType.SUBSCRIPTION,
            gateway=PaymentGateway.STRIPE,
            gateway_identifier=session.get("id"),
            gateway_event_id=event.get("id"),
            currency=currency,
            amount=amount,
            item_name=catalog.name if catalog else plan_id,
            extra_data={
                "plan_id": plan_id,
                "subscription_id": remote["id"],
                "customer_id": customer_id,
            },
        )

    async def _checkout_lifetime(
        self,
        event: Dict[str, Any],
        session: Dict[str, Any],
        user_id: str,
        amount: float,
        currency: str,
        customer_id: Optional[str],
    ) -> None:
        payment_intent = session.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")
        identifier = payment_intent or session.get("id")

        await self.subscription_dao.upsert_by_provider_id(
            SubscriptionProvider.STRIPE,
            identifier,
            user_id=user_id,
            provider_customer_id=customer_id,
            status=SubscriptionStatus.ACTIVE,
            plan_id="lifetime",
            plan_name="Lifetime",
            price_amount=session.get("amount_total") or 0,
            price_currency=currency,
            billing_interval=None,
            is_legacy=False,
        )

        await self.recorder.record(
            user_id=user_id,
            transaction_type=TransactionType.ONE_TIME,
            gateway=PaymentGateway.STRIPE,
            gateway_identifier=session.get("id"),
            gateway_event_id=event.get("id"),
            currency=currency,
            amount=amount,
            item_name="Lifetime Package",
            extra_data={
                "plan_id": "lifetime",
                "payment_intent": payment_intent,
                "customer_id": customer_id,
            },
        )

    # =========================================================================
    # Subscription lifecycle
    # =========================================================================

    async def _subscription_updated(self, event: Dict[str, Any], remote: Dict[str, Any]) -> None:
        subscription = await self.subscription_dao.get_by_provider_id(
            SubscriptionProvider.STRIPE, remote["id"]
        )
        if subscription is None:
            logger.info(f"Update for unknown Stripe subscription {remote['id']}; discovery will pick it up")
            return

        status = map_stripe_status(remote.get("status"))
        period_start, period_end = stripe_period(remote)
        await self.subscription_dao.apply(
            subscription,
            {
                "status": status,
                "current_period_start": period_start or subscription.current_period_start,
                "current_period_end": period_end or subscription.current_period_end,
                "cancel_at": from_unix(remote.get("cancel_at")),
                "canceled_at": from_unix(remote.get("canceled_at")),
            },
        )

        if status == SubscriptionStatus.ACTIVE:
            await self.access.grant(subscription.user_id)
        else:
            await self.access.revoke_after_grace(subscription.user_id, subscription.current_period_end)

    async def _subscription_deleted(self, event: Dict[str, Any], remote: Dict[str, Any]) -> None:
        subscription = await self.subscription_dao.get_by_provider_id(
            SubscriptionProvider.STRIPE, remote["id"]
        )
        if subscription is None:
            return

        reason = (remote.get("cancellation_details") or {}).get("reason")
        _, period_end = stripe_period(remote)
        await self.subscription_dao.apply(
            subscription,
            {
                "status": SubscriptionStatus.CANCELED,
                "canceled_at": utcnow(),
                "cancellation_reason": reason,
                "current_period_end": period_end or subscription.current_period_end,
            },
        )
        await self.access.revoke_after_grace(subscription.user_id, subscription.current_period_end)

    async def _subscription_paused(self, event: Dict[str, Any], remote: Dict[str, Any]) -> None:
        subscription = await self.subscription_dao.get_by_provider_id(
            SubscriptionProvider.STRIPE, remote["id"]
        )
        if subscription is None:
            return
        await self.subscription_dao.apply(subscription, {"status": SubscriptionStatus.PAUSED})
        await self.access.revoke_after_grace(subscription.user_id, None)

    async def _subscription_resumed(self, event: Dict[str, Any], remote: Dict[str, Any]) -> None:
        subscription = await self.subscription_dao.get_by_provider_id(
            SubscriptionProvider.STRIPE, remote["id"]
        )
        if subscription is None:
            return
        _, period_end = stripe_period(remote)
        await self.subscription_dao.apply(
            subscription,
            {
                "status": SubscriptionStatus.ACTIVE,
                "current_period_end": period_end or subscription.current_period_end,
            },
        )
        await self.access.grant(subscription.user_id)

    # =========================================================================
    # Invoices
    # =========================================================================

    async def _invoice_paid(self, event: Dict[str, Any], invoice: Dict[str, Any]) -> None:
        # Initial invoices are covered by checkout.session.completed
        if invoice.get("billing_reason") != "subscription_cycle":
            return

        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            return
        subscription = await self.subscription_dao.get_by_provider_id(
            SubscriptionProvider.STRIPE, subscription_id
        )
        if subscription is None:
            logger.warning(f"Renewal invoice {invoice.get('id')} for unknown subscription {subscription_id}")
            return

        await self.recorder.record(
            user_id=subscription.user_id,
            transaction_type=TransactionType.RENEWAL,
            gateway=PaymentGateway.STRIPE,
            gateway_identifier=invoice.get("id"),
            gateway_event_id=event.get("id"),
            currency=(invoice.get("currency") or "usd").upper(),
            amount=(invoice.get("amount_paid") or 0) / 100,
            item_name=subscription.plan_name or "Subscription Renewal",
            extra_data={
                "plan_id": subscription.plan_id,
                "subscription_id": subscription_id,
                "billing_reason": invoice.get("billing_reason"),
            },
        )

    async def _invoice_payment_failed(self, event: Dict[str, Any], invoice: Dict[str, Any]) -> None:
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            return
        subscription = await self.subscription_dao.get_by_provider_id(
            SubscriptionProvider.STRIPE, subscription_id
        )
        if subscription is None:
            return

        await self.subscription_dao.apply(subscription, {"status": SubscriptionStatus.PAST_DUE})
        await self.recorder.record(
            user_id=subscription.user_id,
            transaction_type=TransactionType.PAYMENT_FAILED,
            gateway=PaymentGateway.STRIPE,
            gateway_identifier=invoice.get("id"),
            gateway_event_id=event.get("id"),
            currency=(invoice.get("currency") or "usd").upper(),
            amount=(invoice.get("amount_due") or 0) / 100,
            item_name=subscription.plan_name or "Subscription",
            redirect_status="failed",
            callback_status="failed",
            extra_data={"subscription_id": subscription_id},
        )
