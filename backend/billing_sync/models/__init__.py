"""
Database models package.

WHY: Importing every model here registers it on Base.metadata, which both
Alembic and the test fixtures rely on to create tables.
"""

from billing_sync.models.base import Base, TimestampMixin, PrimaryKeyMixin
from billing_sync.models.profile import Profile, ProfileRole
from billing_sync.models.subscription import (
    Subscription,
    SubscriptionProvider,
    SubscriptionStatus,
)
from billing_sync.models.payment_history import (
    PaymentHistory,
    PaymentGateway,
    TransactionType,
    SUCCESSFUL_PAYMENT_STATUSES,
)
from billing_sync.models.plan import (
    Plan,
    CatalogPlan,
    build_plan_catalog,
    get_catalog_plan,
    get_plan_by_stripe_price,
    get_plan_by_paypal_plan,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "PrimaryKeyMixin",
    "Profile",
    "ProfileRole",
    "Subscription",
    "SubscriptionProvider",
    "SubscriptionStatus",
    "PaymentHistory",
    "PaymentGateway",
    "TransactionType",
    "SUCCESSFUL_PAYMENT_STATUSES",
    "Plan",
    "CatalogPlan",
    "build_plan_catalog",
    "get_catalog_plan",
    "get_plan_by_stripe_price",
    "get_plan_by_paypal_plan",
]
