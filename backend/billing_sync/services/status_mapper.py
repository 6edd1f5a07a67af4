"""
Provider status vocabulary -> internal SubscriptionStatus.

WHAT: Pure functions used by the reconciler, webhooks and verification.

WHY: Stripe speaks lowercase snake_case, PayPal speaks UPPERCASE, and
both have states we collapse (trialing counts as active, unpaid as
canceled). Keeping the mapping in one place means every sync path agrees
on what "active" means.
"""

from typing import Optional

from billing_sync.models.subscription import SubscriptionProvider, SubscriptionStatus

STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "past_due": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAUSED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
}

PAYPAL_STATUS_MAP = {
    "ACTIVE": SubscriptionStatus.ACTIVE,
    "CANCELLED": SubscriptionStatus.CANCELED,
    "EXPIRED": SubscriptionStatus.CANCELED,
    "SUSPENDED": SubscriptionStatus.PAST_DUE,
    "APPROVAL_PENDING": SubscriptionStatus.INCOMPLETE,
    "APPROVED": SubscriptionStatus.INCOMPLETE,
}

# Stripe statuses that still grant access
STRIPE_ACTIVE_STATUSES = ("active", "trialing")

PAYPAL_CANCELLATION_REASONS = {
    "BILLING.SUBSCRIPTION.CANCELLED": "user_cancelled",
    "BILLING.SUBSCRIPTION.EXPIRED": "subscription_expired",
    "BILLING.SUBSCRIPTION.SUSPENDED": "payment_failed",
}

SYNTHETIC_ID_PREFIX = "legacy_fix_"


def _coerce(value: str) -> "SubscriptionStatus | str":
    try:
        return SubscriptionStatus(value)
    except ValueError:
        return value


def map_stripe_status(status: Optional[str]) -> "SubscriptionStatus | str":
    """
    Map a Stripe subscription status.

    Unknown statuses pass through lowercased so they surface in mismatch
    reports instead of being silently coerced.
    """
    raw = (status or "").lower()
    return STRIPE_STATUS_MAP.get(raw) or _coerce(raw)


def map_paypal_status(status: Optional[str]) -> "SubscriptionStatus | str":
    """Map a PayPal subscription status (ACTIVE, CANCELLED, ...)."""
    raw = (status or "").upper()
    return PAYPAL_STATUS_MAP.get(raw) or _coerce(raw.lower())


def map_provider_status(
    provider: SubscriptionProvider,
    status: Optional[str],
) -> "SubscriptionStatus | str":
    if provider == SubscriptionProvider.STRIPE:
        return map_stripe_status(status)
    return map_paypal_status(status)


def is_provider_active(provider: SubscriptionProvider, status: Optional[str]) -> bool:
    return map_provider_status(provider, status) == SubscriptionStatus.ACTIVE


def paypal_cancellation_reason(event_type: str) -> Optional[str]:
    return PAYPAL_CANCELLATION_REASONS.get(event_type)


def is_stripe_one_time_id(provider_subscription_id: Optional[str]) -> bool:
    """pi_ (PaymentIntent) and cs_ (Checkout Session) IDs are one-time purchases."""
    return bool(provider_subscription_id) and provider_subscription_id.startswith(("pi_", "cs_"))


def is_paypal_subscription_id(provider_subscription_id: Optional[str]) -> bool:
    return bool(provider_subscription_id) and provider_subscription_id.startswith("I-")


def is_synthetic_id(provider_subscription_id: Optional[str]) -> bool:
    return bool(provider_subscription_id) and provider_subscription_id.startswith(
        SYNTHETIC_ID_PREFIX
    )
