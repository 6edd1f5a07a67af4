"""
Unit tests for StripeWebhookHandler.

WHAT: Each handled event type against a real session, with Stripe
subscription lookups served by the mocked client.
"""

import calendar
from datetime import timedelta

import pytest
from sqlalchemy import select

from billing_sync.core.exceptions import ValidationError
from billing_sync.core.timeutils import utcnow
from billing_sync.dao.payment_history import PaymentHistoryDAO
from billing_sync.dao.subscription import SubscriptionDAO
from billing_sync.models.payment_history import PaymentHistory, TransactionType
from billing_sync.models.profile import ProfileRole
from billing_sync.models.subscription import SubscriptionProvider, SubscriptionStatus
from billing_sync.services.stripe_webhooks import StripeWebhookHandler
from tests.factories import ProfileFactory, SubscriptionFactory


def _ts(value):
    return calendar.timegm(value.utctimetuple())


def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


@pytest.fixture
def handler(db_session, stripe_client):
    return StripeWebhookHandler(db_session, stripe_client=stripe_client)


class TestDispatch:
    @pytest.mark.asyncio
    async def test_unknown_event_is_acknowledged_only(self, handler):
        assert await handler.handle(_event("customer.created", {"id": "cus_1"})) is False


class TestCheckoutCompleted:
    @pytest.mark.asyncio
    async def test_subscription_checkout(self, db_session, handler, stripe_client):
        profile = await ProfileFactory.create(db_session)
        period_end = (utcnow() + timedelta(days=30)).replace(microsecond=0)
        stripe_client.get_subscription.return_value = {
            "id": "sub_checkout",
            "status": "active",
            "currency": "usd",
            "current_period_end": _ts(period_end),
            "items": {
                "data": [
                    {
                        "price": {
                            "id": "price_unknown",
                            "unit_amount": 999,
                            "recurring": {"interval": "month"},
                        }
                    }
                ]
            },
        }
        session = {
            "id": "cs_test_1",
            "mode": "subscription",
            "subscription": "sub_checkout",
            "customer": "cus_9",
            "amount_total": 999,
            "currency": "usd",
            "metadata": {"userId": profile.id, "planId": "monthly"},
        }

        assert await handler.handle(_event("checkout.session.completed", session)) is True

        stored = await SubscriptionDAO(db_session).get_by_provider_id(
            SubscriptionProvider.STRIPE, "sub_checkout"
        )
        assert stored.user_id == profile.id
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.plan_id == "monthly"
        assert stored.provider_customer_id == "cus_9"
        assert stored.current_period_end == period_end

        payment = await PaymentHistoryDAO(db_session).get_by_gateway_identifier("cs_test_1")
        assert payment.amount == pytest.approx(9.99)
        assert payment.transaction_type == TransactionType.SUBSCRIPTION
        assert payment.gateway_event_id == "evt_1"

        await db_session.refresh(profile)
        assert profile.role == ProfileRole.PRO

    @pytest.mark.asyncio
    async def test_lifetime_checkout(self, db_session, handler):
        profile = await ProfileFactory.create(db_session)
        session = {
            "id": "cs_life",
            "mode": "payment",
            "payment_intent": "pi_life",
            "amount_total": 9900,
            "currency": "usd",
            "client_reference_id": profile.id,
        }

        await handler.handle(_event("checkout.session.completed", session))

        stored = await SubscriptionDAO(db_session).get_by_provider_id(
            SubscriptionProvider.STRIPE, "pi_life"
        )
        assert stored.plan_id == "lifetime"
        assert stored.billing_interval is None
        payment = await PaymentHistoryDAO(db_session).get_by_gateway_identifier("cs_life")
        assert payment.transaction_type == TransactionType.ONE_TIME
        assert payment.item_name == "Lifetime Package"

    @pytest.mark.asyncio
    async def test_redelivery_does_not_duplicate_payment(self, db_session, handler):
        profile = await ProfileFactory.create(db_session)
        session = {
            "id": "cs_twice",
            "mode": "payment",
            "payment_intent": "pi_twice",
            "amount_total": 9900,
            "metadata": {"user_id": profile.id},
        }

        await handler.handle(_event("checkout.session.completed", session))
        await handler.handle(_event("checkout.session.completed", session))

        result = await db_session.execute(
            select(PaymentHistory).where(PaymentHistory.user_id == profile.id)
        )
        assert len(result.scalars().all()) == 1

    @pytest.mark.asyncio
    async def test_missing_user_id_raises(self, handler):
        with pytest.raises(ValidationError):
            await handler.handle(_event("checkout.session.completed", {"id": "cs_x", "mode": "payment"}))

    @pytest.mark.asyncio
    async def test_unknown_remote_subscription_raises(self, db_session, handler):
        profile = await ProfileFactory.create(db_session)
        session = {
            "id": "cs_missing",
            "mode": "subscription",
            "subscription": "sub_missing",
            "metadata": {"userId": profile.id},
        }
        with pytest.raises(ValidationError):
            await handler.handle(_event("checkout.session.completed", session))


class TestSubscriptionLifecycle:
    @pytest.mark.asyncio
    async def test_updated_to_past_due_keeps_access_in_period(self, db_session, handler):
        profile = await ProfileFactory.create(db_session, role=ProfileRole.PRO)
        sub = await SubscriptionFactory.create(db_session, profile.id, provider_subscription_id="sub_up")

        await handler.handle(
            _event("customer.subscription.updated", {"id": "sub_up", "status": "past_due"})
        )

        await db_session.refresh(sub)
        await db_session.refresh(profile)
        assert sub.status == SubscriptionStatus.PAST_DUE
        assert profile.role == ProfileRole.PRO

    @pytest.mark.asyncio
    async def test_updated_for_unknown_subscription_is_ignored(self, handler):
        assert await handler.handle(
            _event("customer.subscription.updated", {"id": "sub_nobody", "status": "active"})
        ) is True

    @pytest.mark.asyncio
    async def test_deleted_after_period_revokes(self, db_session, handler):
        profile = await ProfileFactory.create(db_session, role=ProfileRole.PRO)
        sub = await SubscriptionFactory.create(
            db_session,
            profile.id,
            provider_subscription_id="sub_del",
            current_period_end=utcnow() - timedelta(hours=1),
        )

        await handler.handle(
            _event(
                "customer.subscription.deleted",
                {"id": "sub_del", "cancellation_details": {"reason": "cancellation_requested"}},
            )
        )

        await db_session.refresh(sub)
        await db_session.refresh(profile)
        assert sub.status == SubscriptionStatus.CANCELED
        assert sub.cancellation_reason == "cancellation_requested"
        assert profile.role == ProfileRole.USER

    @pytest.mark.asyncio
    async def test_paused_then_resumed(self, db_session, handler):
        profile = await ProfileFactory.create(db_session, role=ProfileRole.PRO)
        sub = await SubscriptionFactory.create(db_session, profile.id, provider_subscription_id="sub_p")

        await handler.handle(_event("customer.subscription.paused", {"id": "sub_p"}))
        await db_session.refresh(sub)
        await db_session.refresh(profile)
        assert sub.status == SubscriptionStatus.PAUSED
        assert profile.role == ProfileRole.USER

        await handler.handle(_event("customer.subscription.resumed", {"id": "sub_p"}))
        await db_session.refresh(sub)
        await db_session.refresh(profile)
        assert sub.status == SubscriptionStatus.ACTIVE
        assert profile.role == ProfileRole.PRO


class TestInvoices:
    @pytest.mark.asyncio
    async def test_cycle_invoice_records_renewal(self, db_session, handler):
        profile = await ProfileFactory.create(db_session, role=ProfileRole.PRO)
        await SubscriptionFactory.create(db_session, profile.id, provider_subscription_id="sub_inv")
        invoice = {
            "id": "in_1",
            "billing_reason": "subscription_cycle",
            "parent": {"subscription_details": {"subscription": "sub_inv"}},
            "amount_paid": 999,
            "currency": "usd",
        }

        await handler.handle(_event("invoice.paid", invoice))

        payment = await PaymentHistoryDAO(db_session).get_by_gateway_identifier("in_1")
        assert payment.transaction_type == TransactionType.RENEWAL
        assert payment.user_id == profile.id

    @pytest.mark.asyncio
    async def test_initial_invoice_is_skipped(self, db_session, handler):
        invoice = {"id": "in_first", "billing_reason": "subscription_create", "subscription": "sub_x"}

        await handler.handle(_event("invoice.paid", invoice))

        assert await PaymentHistoryDAO(db_session).get_by_gateway_identifier("in_first") is None

    @pytest.mark.asyncio
    async def test_payment_failed_marks_past_due(self, db_session, handler):
        profile = await ProfileFactory.create(db_session, role=ProfileRole.PRO)
        sub = await SubscriptionFactory.create(db_session, profile.id, provider_subscription_id="sub_fail")

        await handler.handle(
            _event("invoice.payment_failed", {"id": "in_fail", "subscription": "sub_fail", "amount_due": 999})
        )

        await db_session.refresh(sub)
        assert sub.status == SubscriptionStatus.PAST_DUE
        payment = await PaymentHistoryDAO(db_session).get_by_gateway_identifier("in_fail")
        assert payment.transaction_type == TransactionType.PAYMENT_FAILED
        assert payment.visible_for_user is True
        assert payment.redirect_status == "failed"
