"""
Unit tests for PayPalActivationService.fix_pending.
"""

from unittest.mock import AsyncMock

import pytest

from billing_sync.dao.payment_history import PaymentHistoryDAO
from billing_sync.models.payment_history import PaymentGateway
from billing_sync.models.profile import ProfileRole
from billing_sync.models.subscription import SubscriptionProvider, SubscriptionStatus
from billing_sync.services.paypal_activation import PayPalActivationService
from tests.factories import PaymentFactory, ProfileFactory, SubscriptionFactory


@pytest.fixture
def service(db_session, paypal_factory):
    return PayPalActivationService(db_session, paypal_client_factory=paypal_factory)


async def _pending_paypal(db_session, profile, subscription_id="I-PENDING1"):
    return await SubscriptionFactory.create(
        db_session,
        profile.id,
        provider=SubscriptionProvider.PAYPAL,
        provider_subscription_id=subscription_id,
        status=SubscriptionStatus.INCOMPLETE,
    )


class TestFixPending:
    @pytest.mark.asyncio
    async def test_activates_and_records_first_payment(self, db_session, service, paypal_client):
        profile = await ProfileFactory.create(db_session)
        sub = await _pending_paypal(db_session, profile)
        paypal_client.get_subscription.return_value = {
            "id": "I-PENDING1",
            "status": "ACTIVE",
            "start_time": "2030-01-01T00:00:00Z",
            "subscriber": {"payer_id": "PAYER1"},
            "billing_info": {
                "next_billing_time": "2030-02-01T00:00:00Z",
                "last_payment": {"amount": {"value": "9.99", "currency_code": "USD"}},
            },
        }

        stats = await service.fix_pending()

        assert stats == {"checked": 1, "activated": 1, "cancelled": 0, "errors": 0}
        await db_session.refresh(sub)
        await db_session.refresh(profile)
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.provider_customer_id == "PAYER1"
        assert sub.current_period_end.month == 2
        assert profile.role == ProfileRole.PRO

        payment = await PaymentHistoryDAO(db_session).get_by_gateway_identifier("I-PENDING1")
        assert payment.amount == pytest.approx(9.99)
        assert payment.gateway == PaymentGateway.PAYPAL

    @pytest.mark.asyncio
    async def test_existing_payment_is_not_duplicated(self, db_session, service, paypal_client):
        profile = await ProfileFactory.create(db_session)
        await _pending_paypal(db_session, profile, "I-PAIDALREADY")
        await PaymentFactory.create(
            db_session,
            profile.id,
            gateway=PaymentGateway.PAYPAL,
            gateway_identifier="I-PAIDALREADY",
        )
        paypal_client.get_subscription.return_value = {"status": "ACTIVE"}

        stats = await service.fix_pending()

        assert stats["activated"] == 1
        payment = await PaymentHistoryDAO(db_session).get_by_gateway_identifier("I-PAIDALREADY")
        assert payment.extra_data is None or payment.extra_data.get("source") != "paypal_activation_fix"

    @pytest.mark.asyncio
    async def test_cancels_inactive_rows(self, db_session, service, paypal_client):
        profile = await ProfileFactory.create(db_session)
        sub = await _pending_paypal(db_session, profile)
        paypal_client.get_subscription.return_value = {"status": "EXPIRED"}

        stats = await service.fix_pending()

        assert stats["cancelled"] == 1
        await db_session.refresh(sub)
        assert sub.status == SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_active_row_with_pro_role_is_not_checked(self, db_session, service, paypal_client):
        profile = await ProfileFactory.create(db_session, role=ProfileRole.PRO)
        await SubscriptionFactory.create(
            db_session, profile.id, provider=SubscriptionProvider.PAYPAL
        )

        stats = await service.fix_pending()

        assert stats["checked"] == 0
        paypal_client.get_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_found_counts_as_error(self, db_session, service, paypal_client):
        profile = await ProfileFactory.create(db_session)
        await _pending_paypal(db_session, profile)

        stats = await service.fix_pending()

        assert stats == {"checked": 1, "activated": 0, "cancelled": 0, "errors": 1}

    @pytest.mark.asyncio
    async def test_dry_run(self, db_session, service, paypal_client):
        profile = await ProfileFactory.create(db_session)
        sub = await _pending_paypal(db_session, profile)
        paypal_client.get_subscription.return_value = {"status": "ACTIVE"}

        stats = await service.fix_pending(dry_run=True)

        assert stats["activated"] == 1
        await db_session.refresh(sub)
        assert sub.status == SubscriptionStatus.INCOMPLETE

    @pytest.mark.asyncio
    async def test_failure_after_activation_write_is_isolated(
        self, db_session, service, paypal_client
    ):
        first = await _pending_paypal(db_session, await ProfileFactory.create(db_session), "I-FIRST")
        second = await _pending_paypal(db_session, await ProfileFactory.create(db_session), "I-SECOND")
        paypal_client.get_subscription.return_value = {"status": "ACTIVE"}
        service.access.grant = AsyncMock(side_effect=[RuntimeError("role update failed"), True])

        stats = await service.fix_pending()

        assert stats == {"checked": 2, "activated": 1, "cancelled": 0, "errors": 1}
        statuses = []
        for row in (first, second):
            await db_session.refresh(row)
            statuses.append(row.status)
        assert sorted(s.value for s in statuses) == ["active", "incomplete"]
