"""
Unit tests for SubscriptionReconciler.

WHAT: The reconciliation rules (cancel, reactivate, scheduled cancel,
period sync), dry runs, skips, per-row error isolation and the cron
variant.

HOW: Real SQLite session; Stripe and PayPal are replaced by mocks that
return plain dicts shaped like provider payloads.
"""

import calendar
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import SQLAlchemyError

from billing_sync.core.exceptions import ReconciliationError, StripeError
from billing_sync.core.timeutils import utcnow
from billing_sync.models.profile import ProfileRole
from billing_sync.models.subscription import SubscriptionProvider, SubscriptionStatus
from billing_sync.services.reconciler import SubscriptionReconciler, should_skip
from tests.factories import ProfileFactory, SubscriptionFactory


def _ts(value: datetime) -> int:
    return calendar.timegm(value.utctimetuple())


def _paypal_time(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


@pytest.fixture
def reconciler(db_session, stripe_client, paypal_factory):
    return SubscriptionReconciler(
        db_session, stripe_client=stripe_client, paypal_client_factory=paypal_factory
    )


class TestShouldSkip:
    @pytest.mark.asyncio
    async def test_skip_rules(self, db_session):
        profile = await ProfileFactory.create(db_session)
        one_time = await SubscriptionFactory.create(
            db_session, profile.id, provider_subscription_id="pi_123"
        )
        synthetic = await SubscriptionFactory.create(
            db_session, profile.id, provider_subscription_id="legacy_fix_x_1"
        )
        paypal_legacy_id = await SubscriptionFactory.create(
            db_session,
            profile.id,
            provider=SubscriptionProvider.PAYPAL_LEGACY,
            provider_subscription_id="S-OLD",
        )
        stripe_sub = await SubscriptionFactory.create(db_session, profile.id)

        assert should_skip(one_time)
        assert should_skip(synthetic)
        assert should_skip(paypal_legacy_id)
        assert not should_skip(stripe_sub)


class TestReconcile:
    @pytest.mark.asyncio
    async def test_missing_at_provider_cancels_and_revokes(self, db_session, reconciler):
        profile = await ProfileFactory.create(db_session, role=ProfileRole.PRO)
        sub = await SubscriptionFactory.create(
            db_session, profile.id, current_period_end=utcnow() - timedelta(days=1)
        )

        result = await reconciler.reconcile()

        assert result.checked == 1
        assert result.cancelled == 1
        assert result.cancelled_user_ids == [profile.id]
        assert result.mismatches[0].action == "cancel"
        assert result.mismatches[0].provider_status == "not_found"
        await db_session.refresh(sub)
        await db_session.refresh(profile)
        assert sub.status == SubscriptionStatus.CANCELED
        assert sub.canceled_at is not None
        assert profile.role == ProfileRole.USER

    @pytest.mark.asyncio
    async def test_cancel_keeps_access_during_grace(self, db_session, reconciler):
        profile = await ProfileFactory.create(db_session, role=ProfileRole.PRO)
        await SubscriptionFactory.create(
            db_session, profile.id, current_period_end=utcnow() + timedelta(days=10)
        )

        result = await reconciler.reconcile()

        assert result.cancelled == 1
        assert result.cancelled_user_ids == []
        await db_session.refresh(profile)
        assert profile.role == ProfileRole.PRO

    @pytest.mark.asyncio
    async def test_paypal_cancelled_status(self, db_session, reconciler, paypal_client):
        profile = await ProfileFactory.create(db_session, role=ProfileRole.PRO)
        sub = await SubscriptionFactory.create(
            db_session,
            profile.id,
            provider=SubscriptionProvider.PAYPAL,
            provider_subscription_id="I-CANCELLED",
            current_period_end=utcnow() - timedelta(days=2),
        )
        paypal_client.get_subscription.return_value = {"id": "I-CANCELLED", "status": "CANCELLED"}

        result = await reconciler.reconcile(provider=SubscriptionProvider.PAYPAL)

        assert result.updated == 1
        assert result.cancelled == 1
        assert result.mismatches[0].action == "set_canceled"
        await db_session.refresh(sub)
        assert sub.status == SubscriptionStatus.CANCELED
        paypal_client.get_subscription.assert_awaited_once_with("I-CANCELLED")

    @pytest.mark.asyncio
    async def test_reactivates_canceled_row(self, db_session, reconciler, stripe_client):
        profile = await ProfileFactory.create(db_session)
        period_end = (utcnow() + timedelta(days=20)).replace(microsecond=0)
        sub = await SubscriptionFactory.create(
            db_session,
            profile.id,
            provider_subscription_id="sub_back",
            status=SubscriptionStatus.CANCELED,
            canceled_at=utcnow() - timedelta(days=1),
        )
        stripe_client.get_subscription.return_value = {
            "id": "sub_back",
            "status": "active",
            "current_period_end": _ts(period_end),
        }

        result = await reconciler.reconcile()

        assert result.mismatches[0].action == "activate"
        await db_session.refresh(sub)
        await db_session.refresh(profile)
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.canceled_at is None
        assert sub.current_period_end == period_end
        assert profile.role == ProfileRole.PRO

    @pytest.mark.asyncio
    async def test_scheduled_cancellation_stays_active(self, db_session, reconciler, stripe_client):
        profile = await ProfileFactory.create(db_session, role=ProfileRole.PRO)
        period_end = (utcnow() + timedelta(days=5)).replace(microsecond=0)
        sub = await SubscriptionFactory.create(db_session, profile.id, provider_subscription_id="sub_sched")
        stripe_client.get_subscription.return_value = {
            "id": "sub_sched",
            "status": "active",
            "cancel_at_period_end": True,
            "cancel_at": _ts(period_end),
            "current_period_end": _ts(period_end),
        }

        result = await reconciler.reconcile()

        assert result.updated == 1
        assert result.cancelled == 0
        await db_session.refresh(sub)
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.cancel_at == period_end
        assert sub.canceled_at is not None

    @pytest.mark.asyncio
    async def test_syncs_period_end_when_status_matches(self, db_session, reconciler, paypal_client):
        profile = await ProfileFactory.create(db_session, role=ProfileRole.PRO)
        next_billing = datetime(2031, 1, 1, 0, 0, 0)
        sub = await SubscriptionFactory.create(
            db_session,
            profile.id,
            provider=SubscriptionProvider.PAYPAL_LEGACY,
            provider_subscription_id="I-LEG",
        )
        paypal_client.get_subscription.return_value = {
            "status": "ACTIVE",
            "billing_info": {"next_billing_time": _paypal_time(next_billing)},
        }

        result = await reconciler.reconcile()

        assert result.updated == 1
        assert result.mismatches == []
        await db_session.refresh(sub)
        assert sub.current_period_end == next_billing

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, db_session, reconciler):
        profile = await ProfileFactory.create(db_session, role=ProfileRole.PRO)
        sub = await SubscriptionFactory.create(
            db_session, profile.id, current_period_end=utcnow() - timedelta(days=1)
        )

        result = await reconciler.reconcile(dry_run=True)

        assert result.cancelled == 1
        assert len(result.mismatches) == 1
        await db_session.refresh(sub)
        await db_session.refresh(profile)
        assert sub.status == SubscriptionStatus.ACTIVE
        assert profile.role == ProfileRole.PRO

    @pytest.mark.asyncio
    async def test_provider_error_is_counted_and_run_continues(
        self, db_session, reconciler, stripe_client
    ):
        profile = await ProfileFactory.create(db_session)
        await SubscriptionFactory.create(db_session, profile.id, provider_subscription_id="sub_err")
        await SubscriptionFactory.create(
            db_session,
            profile.id,
            provider_subscription_id="sub_ok",
            status=SubscriptionStatus.CANCELED,
        )

        async def fake_get(subscription_id):
            if subscription_id == "sub_err":
                raise StripeError("boom")
            return {"id": subscription_id, "status": "canceled"}

        stripe_client.get_subscription.side_effect = fake_get

        result = await reconciler.reconcile()

        assert result.errors == 1
        assert result.checked == 1

    @pytest.mark.asyncio
    async def test_failure_after_write_rolls_back_row_and_run_continues(
        self, db_session, reconciler, stripe_client
    ):
        profile = await ProfileFactory.create(db_session, role=ProfileRole.PRO)
        first = await SubscriptionFactory.create(db_session, profile.id, provider_subscription_id="sub_one")
        second = await SubscriptionFactory.create(db_session, profile.id, provider_subscription_id="sub_two")
        stripe_client.get_subscription.side_effect = lambda sid: {"id": sid, "status": "canceled"}
        reconciler.access.revoke_after_grace = AsyncMock(
            side_effect=[RuntimeError("role update failed"), False]
        )

        result = await reconciler.reconcile()

        assert result.errors == 1
        assert result.checked == 2
        statuses = []
        for row in (first, second):
            await db_session.refresh(row)
            statuses.append(row.status)
        assert sorted(s.value for s in statuses) == ["active", "canceled"]

    @pytest.mark.asyncio
    async def test_unloadable_rows_abort_with_reconciliation_error(self, reconciler):
        reconciler.subscription_dao.list_for_reconciliation = AsyncMock(
            side_effect=SQLAlchemyError("connection lost")
        )

        with pytest.raises(ReconciliationError) as exc_info:
            await reconciler.reconcile(provider=SubscriptionProvider.STRIPE)

        assert exc_info.value.status_code == 500
        assert exc_info.value.context == {"providers": ["stripe"]}

    @pytest.mark.asyncio
    async def test_skipped_rows_are_not_fetched(self, db_session, reconciler, stripe_client):
        profile = await ProfileFactory.create(db_session)
        await SubscriptionFactory.create(
            db_session, profile.id, provider_subscription_id="cs_lifetime", billing_interval=None
        )

        result = await reconciler.reconcile()

        assert result.skipped == 1
        stripe_client.get_subscription.assert_not_awaited()


class TestCronSync:
    @pytest.mark.asyncio
    async def test_cancels_inactive_rows_and_reports(
        self, db_session, reconciler, stripe_client, paypal_client
    ):
        stripe_user = await ProfileFactory.create(db_session, role=ProfileRole.PRO)
        paypal_user = await ProfileFactory.create(db_session, role=ProfileRole.PRO)
        healthy_user = await ProfileFactory.create(db_session, role=ProfileRole.PRO)
        past = utcnow() - timedelta(days=1)

        stripe_sub = await SubscriptionFactory.create(
            db_session, stripe_user.id, provider_subscription_id="sub_gone", current_period_end=past
        )
        paypal_sub = await SubscriptionFactory.create(
            db_session,
            paypal_user.id,
            provider=SubscriptionProvider.PAYPAL,
            provider_subscription_id="I-GONE",
            current_period_end=past,
        )
        await SubscriptionFactory.create(
            db_session, healthy_user.id, provider_subscription_id="sub_fine"
        )

        async def stripe_get(subscription_id):
            if subscription_id == "sub_fine":
                return {"id": "sub_fine", "status": "active"}
            return {"id": subscription_id, "status": "canceled", "canceled_at": _ts(past)}

        stripe_client.get_subscription.side_effect = stripe_get
        paypal_client.get_subscription.return_value = {"status": "SUSPENDED"}

        results = await reconciler.run_cron_sync()

        assert results["stripe"] == {"checked": 2, "synced": 1, "errors": 0}
        assert results["paypal"] == {"checked": 1, "synced": 1, "errors": 0}
        assert results["healed"] == {"created": 0, "activated": 0}
        assert results["cancelled"] == 2
        for row in (stripe_sub, paypal_sub):
            await db_session.refresh(row)
            assert row.status == SubscriptionStatus.CANCELED
        await db_session.refresh(healthy_user)
        assert healthy_user.role == ProfileRole.PRO

    @pytest.mark.asyncio
    async def test_failure_after_write_is_counted_per_row(
        self, db_session, reconciler, stripe_client
    ):
        profile = await ProfileFactory.create(db_session, role=ProfileRole.PRO)
        await SubscriptionFactory.create(db_session, profile.id, provider_subscription_id="sub_a")
        await SubscriptionFactory.create(db_session, profile.id, provider_subscription_id="sub_b")
        stripe_client.get_subscription.side_effect = lambda sid: {"id": sid, "status": "canceled"}
        reconciler.access.revoke_after_grace = AsyncMock(
            side_effect=[RuntimeError("role update failed"), False]
        )

        results = await reconciler.run_cron_sync()

        assert results["stripe"] == {"checked": 2, "synced": 1, "errors": 1}
