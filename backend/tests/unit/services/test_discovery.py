"""
Unit tests for SubscriptionDiscovery.

WHAT: Stripe subscription discovery, the PayPal auto-heal pass and the
plan sync passes.
"""

import calendar
from datetime import timedelta

import pytest

from billing_sync.core.timeutils import utcnow
from billing_sync.dao.plan import PlanDAO
from billing_sync.dao.subscription import SubscriptionDAO
from billing_sync.models.payment_history import PaymentGateway
from billing_sync.models.profile import ProfileRole
from billing_sync.models.subscription import SubscriptionProvider, SubscriptionStatus
from billing_sync.services.discovery import SubscriptionDiscovery, infer_stripe_plan
from tests.factories import PaymentFactory, ProfileFactory, SubscriptionFactory


def _stripe_subscription(subscription_id, email, unit_amount=999, price_id="price_basic"):
    now = utcnow()
    return {
        "id": subscription_id,
        "status": "active",
        "customer": {"id": "cus_1", "email": email},
        "current_period_start": calendar.timegm(now.utctimetuple()),
        "current_period_end": calendar.timegm((now + timedelta(days=30)).utctimetuple()),
        "items": {
            "data": [
                {
                    "price": {
                        "id": price_id,
                        "unit_amount": unit_amount,
                        "currency": "usd",
                        "recurring": {"interval": "month"},
                    }
                }
            ]
        },
    }


@pytest.fixture
def discovery(db_session, stripe_client, paypal_factory):
    return SubscriptionDiscovery(
        db_session, stripe_client=stripe_client, paypal_client_factory=paypal_factory
    )


class TestInferStripePlan:
    def test_basic_up_to_ten_dollars(self):
        assert infer_stripe_plan(999, "month")["plan_id"] == "monthly"
        assert infer_stripe_plan(1000, "month")["plan_id"] == "monthly"

    def test_pro_up_to_thirty_five_dollars(self):
        assert infer_stripe_plan(1999, "month") == {"plan_id": "monthly_pro", "plan_name": "Pro Plan"}

    def test_custom_above(self):
        plan = infer_stripe_plan(9900, "year")
        assert plan["plan_id"] == "custom"
        assert plan["plan_name"] == "Custom Plan ($99.00/year)"

    def test_missing_amount_is_basic(self):
        assert infer_stripe_plan(None, None)["plan_id"] == "monthly"


class TestDiscoverStripe:
    @pytest.mark.asyncio
    async def test_creates_missing_subscription_and_grants(self, db_session, discovery, stripe_client):
        profile = await ProfileFactory.create(db_session, email="found@example.com")
        stripe_client.list_active_subscriptions.return_value = iter(
            [_stripe_subscription("sub_new", "found@example.com", unit_amount=1999)]
        )

        result = await discovery.discover_stripe()

        assert result.checked == 1
        assert result.created == 1
        stored = await SubscriptionDAO(db_session).find_by_provider_subscription_id("sub_new")
        assert stored.user_id == profile.id
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.plan_id == "monthly_pro"
        assert stored.price_currency == "USD"
        await db_session.refresh(profile)
        assert profile.role == ProfileRole.PRO

    @pytest.mark.asyncio
    async def test_skips_known_unmatched_and_already_active(self, db_session, discovery, stripe_client):
        known_user = await ProfileFactory.create(db_session, email="known@example.com")
        await SubscriptionFactory.create(db_session, known_user.id, provider_subscription_id="sub_known")
        active_user = await ProfileFactory.create(db_session, email="active@example.com")
        await SubscriptionFactory.create(db_session, active_user.id)

        stripe_client.list_active_subscriptions.return_value = iter(
            [
                _stripe_subscription("sub_known", "known@example.com"),
                _stripe_subscription("sub_stranger", "nobody@example.com"),
                _stripe_subscription("sub_second", "active@example.com"),
                {"id": "sub_noemail", "customer": "cus_only_id"},
            ]
        )

        result = await discovery.discover_stripe()

        assert result.checked == 4
        assert result.created == 0
        assert result.skipped == 3

    @pytest.mark.asyncio
    async def test_dry_run_counts_without_writing(self, db_session, discovery, stripe_client):
        await ProfileFactory.create(db_session, email="dry@example.com")
        stripe_client.list_active_subscriptions.return_value = iter(
            [_stripe_subscription("sub_dry", "dry@example.com")]
        )

        result = await discovery.discover_stripe(dry_run=True)

        assert result.created == 1
        assert await SubscriptionDAO(db_session).find_by_provider_subscription_id("sub_dry") is None


class TestHealPayPalPayments:
    @pytest.mark.asyncio
    async def test_creates_row_for_active_paypal_subscription(
        self, db_session, discovery, paypal_client
    ):
        profile = await ProfileFactory.create(db_session)
        await PaymentFactory.create(
            db_session,
            profile.id,
            gateway=PaymentGateway.PAYPAL,
            gateway_identifier="I-HEALME",
        )
        paypal_client.get_subscription.return_value = {
            "id": "I-HEALME",
            "status": "ACTIVE",
            "billing_info": {"next_billing_time": "2031-02-01T10:00:00Z"},
        }

        healed = await discovery.heal_paypal_payments()

        assert healed == {"created": 1, "activated": 1}
        stored = await SubscriptionDAO(db_session).find_by_provider_subscription_id("I-HEALME")
        assert stored.provider == SubscriptionProvider.PAYPAL
        assert stored.plan_name == "Basic Plan"
        assert stored.current_period_end.year == 2031
        await db_session.refresh(profile)
        assert profile.role == ProfileRole.PRO

    @pytest.mark.asyncio
    async def test_ignores_inactive_and_existing(self, db_session, discovery, paypal_client):
        profile = await ProfileFactory.create(db_session)
        await SubscriptionFactory.create(
            db_session,
            profile.id,
            provider=SubscriptionProvider.PAYPAL,
            provider_subscription_id="I-EXISTS",
        )
        for identifier in ("I-EXISTS", "I-PENDING"):
            await PaymentFactory.create(
                db_session,
                profile.id,
                gateway=PaymentGateway.PAYPAL,
                gateway_identifier=identifier,
            )
        paypal_client.get_subscription.return_value = {"status": "APPROVAL_PENDING"}

        healed = await discovery.heal_paypal_payments()

        assert healed == {"created": 0, "activated": 0}
        paypal_client.get_subscription.assert_awaited_once_with("I-PENDING")

    @pytest.mark.asyncio
    async def test_old_payments_are_out_of_window(self, db_session, discovery, paypal_client):
        profile = await ProfileFactory.create(db_session)
        await PaymentFactory.create(
            db_session,
            profile.id,
            gateway=PaymentGateway.PAYPAL,
            gateway_identifier="I-OLD",
            created_at=utcnow() - timedelta(days=30),
        )

        healed = await discovery.heal_paypal_payments(days=7)

        assert healed == {"created": 0, "activated": 0}
        paypal_client.get_subscription.assert_not_awaited()


class TestPlanSync:
    @pytest.mark.asyncio
    async def test_discovers_stripe_prices_in_use(self, db_session, discovery, stripe_client):
        stripe_client.list_active_subscriptions.return_value = iter(
            [_stripe_subscription("sub_a", "a@example.com", unit_amount=4900, price_id="price_team")]
        )
        stripe_client.retrieve_price.return_value = {
            "id": "price_team",
            "unit_amount": 4900,
            "currency": "usd",
            "recurring": {"interval": "month"},
            "product": {"id": "prod_team", "name": "Team"},
        }

        result = await discovery.discover_stripe_plans()

        assert result.created == 1
        plan = await PlanDAO(db_session).get_by_id("stripe_prod_team_month")
        assert plan.name == "Team"
        assert plan.stripe_price_id == "price_team"
        assert plan.is_discovered is True

    @pytest.mark.asyncio
    async def test_known_prices_are_not_fetched(self, db_session, discovery, stripe_client):
        await PlanDAO(db_session).create(
            id="monthly", name="Basic Plan", price_amount=999, stripe_price_id="price_basic"
        )
        stripe_client.list_active_subscriptions.return_value = iter(
            [_stripe_subscription("sub_a", "a@example.com")]
        )

        result = await discovery.discover_stripe_plans()

        assert result.checked == 0
        stripe_client.retrieve_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mirrors_legacy_paypal_plans(self, db_session, discovery, paypal_client):
        paypal_client.list_plans.return_value = [
            {
                "id": "P-LEGACY1",
                "name": "Old Pro",
                "status": "ACTIVE",
                "billing_cycles": [
                    {"tenure_type": "TRIAL"},
                    {
                        "tenure_type": "REGULAR",
                        "frequency": {"interval_unit": "MONTH"},
                        "pricing_scheme": {"fixed_price": {"value": "19.99"}},
                    },
                ],
            }
        ]

        result = await discovery.sync_paypal_legacy_plans()

        assert result.checked == 1
        assert result.created == 1
        plan = await PlanDAO(db_session).get_by_id("paypal_legacy_P-LEGACY1")
        assert plan.price_amount == 1999
        assert plan.billing_interval == "month"
        assert plan.is_legacy is True
