"""
Unit tests for provider status mapping.
"""

import pytest

from billing_sync.models.subscription import SubscriptionProvider, SubscriptionStatus
from billing_sync.services.status_mapper import (
    is_paypal_subscription_id,
    is_provider_active,
    is_stripe_one_time_id,
    is_synthetic_id,
    map_paypal_status,
    map_provider_status,
    map_stripe_status,
    paypal_cancellation_reason,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("active", SubscriptionStatus.ACTIVE),
        ("trialing", SubscriptionStatus.ACTIVE),
        ("canceled", SubscriptionStatus.CANCELED),
        ("unpaid", SubscriptionStatus.CANCELED),
        ("incomplete_expired", SubscriptionStatus.CANCELED),
        ("past_due", SubscriptionStatus.PAST_DUE),
        ("paused", SubscriptionStatus.PAUSED),
        ("incomplete", SubscriptionStatus.INCOMPLETE),
    ],
)
def test_map_stripe_status(raw, expected):
    assert map_stripe_status(raw) == expected


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("ACTIVE", SubscriptionStatus.ACTIVE),
        ("CANCELLED", SubscriptionStatus.CANCELED),
        ("EXPIRED", SubscriptionStatus.CANCELED),
        ("SUSPENDED", SubscriptionStatus.PAST_DUE),
        ("APPROVAL_PENDING", SubscriptionStatus.INCOMPLETE),
        ("active", SubscriptionStatus.ACTIVE),
    ],
)
def test_map_paypal_status(raw, expected):
    assert map_paypal_status(raw) == expected


def test_unknown_status_passes_through_lowercased():
    assert map_stripe_status("Frozen") == "frozen"
    assert map_paypal_status("ON_HOLD") == "on_hold"


def test_map_provider_status_dispatches_on_provider():
    assert map_provider_status(SubscriptionProvider.STRIPE, "trialing") == SubscriptionStatus.ACTIVE
    assert map_provider_status(SubscriptionProvider.PAYPAL_LEGACY, "EXPIRED") == SubscriptionStatus.CANCELED


def test_is_provider_active():
    assert is_provider_active(SubscriptionProvider.STRIPE, "trialing")
    assert not is_provider_active(SubscriptionProvider.PAYPAL, "SUSPENDED")


def test_paypal_cancellation_reason():
    assert paypal_cancellation_reason("BILLING.SUBSCRIPTION.CANCELLED") == "user_cancelled"
    assert paypal_cancellation_reason("BILLING.SUBSCRIPTION.SUSPENDED") == "payment_failed"
    assert paypal_cancellation_reason("BILLING.SUBSCRIPTION.RENEWED") is None


def test_id_predicates():
    assert is_stripe_one_time_id("pi_123")
    assert is_stripe_one_time_id("cs_live_123")
    assert not is_stripe_one_time_id("sub_123")
    assert is_paypal_subscription_id("I-ABC")
    assert not is_paypal_subscription_id("S-123")
    assert not is_paypal_subscription_id(None)
    assert is_synthetic_id("legacy_fix_u1_1700000000000")
    assert not is_synthetic_id("sub_123")
