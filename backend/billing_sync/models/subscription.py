"""
Subscription model: our local mirror of provider billing state.

WHY: Stripe and both PayPal accounts each hold the truth for their own
subscriptions, but feature access, admin stats and support tooling all
read from one table. The sync services keep this mirror honest:
1. Webhooks write changes as they happen
2. The reconciler re-reads each row from its provider and corrects drift
3. The discovery pass inserts rows whose webhooks never arrived

ARCHITECTURE:
- A user may have several rows (history of resubscriptions); at most one
  should be active at a time
- (provider, provider_subscription_id) is unique and is the upsert key for
  every writer, which makes webhook retries and re-runs idempotent
- Lifetime purchases are stored as rows with billing_interval NULL and a
  one-time payment ID (pi_/cs_) that providers cannot re-verify
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    String,
    Enum,
    ForeignKey,
    DateTime,
    Boolean,
    JSON,
    UniqueConstraint,
)

from billing_sync.core.timeutils import utcnow
from billing_sync.models.base import Base, TimestampMixin, PrimaryKeyMixin, enum_values


class SubscriptionProvider(str, enum.Enum):
    """
    Payment providers.

    - STRIPE: card payments
    - PAYPAL: current PayPal merchant account
    - PAYPAL_LEGACY: merchant account of the previous product; subscriptions
      migrated from it still renew there and need its own credentials
    """

    STRIPE = "stripe"
    PAYPAL = "paypal"
    PAYPAL_LEGACY = "paypal_legacy"


class SubscriptionStatus(str, enum.Enum):
    """
    Internal subscription status.

    WHY: The reconciler only ever writes the five canonical values
    (active, canceled, past_due, paused, incomplete). The others exist
    because migrated rows and raw Stripe webhooks carry them.
    """

    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    TRIALING = "trialing"
    PAUSED = "paused"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    LIFETIME = "lifetime"


class Subscription(Base, PrimaryKeyMixin, TimestampMixin):
    """
    One subscription at one provider for one user.

    Money is stored in cents (price_amount). billing_interval is "month",
    "year" or "week"; NULL means lifetime or unknown, which the pricing
    heuristics resolve from plan_name.
    """

    __tablename__ = "subscriptions"

    user_id = Column(
        String(36),
        ForeignKey("profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Provider identity
    provider = Column(
        Enum(SubscriptionProvider, name="subscriptionprovider", values_callable=enum_values),
        nullable=False,
        index=True,
    )
    provider_subscription_id = Column(
        String(255),
        nullable=False,
        doc="sub_xxx (Stripe), I-xxx (PayPal), pi_/cs_ for one-time payments",
    )
    provider_customer_id = Column(
        String(255),
        nullable=True,
        doc="Stripe customer ID or PayPal payer ID",
    )

    status = Column(
        Enum(SubscriptionStatus, name="subscriptionstatus", values_callable=enum_values),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
        index=True,
    )

    # Plan snapshot at purchase time
    plan_id = Column(String(100), nullable=True)
    plan_name = Column(String(255), nullable=True)
    price_amount = Column(Integer, nullable=True, doc="Price in cents")
    price_currency = Column(String(3), nullable=False, default="USD")
    billing_interval = Column(String(20), nullable=True)

    # Billing period
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(
        DateTime,
        nullable=True,
        doc="End of paid period; also the grace-period end after cancellation",
    )

    # Cancellation
    cancel_at = Column(DateTime, nullable=True, doc="Scheduled cancellation date")
    canceled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(255), nullable=True)
    auto_renew = Column(Boolean, nullable=False, default=True)

    # Trial
    trial_start = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)

    # Legacy migration
    is_legacy = Column(Boolean, nullable=False, default=False)
    legacy_id = Column(String(100), nullable=True)
    legacy_data = Column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "provider",
            "provider_subscription_id",
            name="uq_subscriptions_provider_subscription_id",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"provider={self.provider}, status={self.status})>"
        )

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    @property
    def is_lifetime(self) -> bool:
        """
        Lifetime rows are never re-verified with a provider.

        Returns:
            True for the lifetime plan or rows without a billing interval
        """
        return self.plan_id == "lifetime" or self.billing_interval is None

    def in_grace_period(self, now: Optional[datetime] = None) -> bool:
        """
        Check whether a canceled subscription still grants access.

        WHY: Users who cancel keep access until the end of the period they
        paid for. An unknown period end means no grace.
        """
        if self.current_period_end is None:
            return False
        return (now or utcnow()) <= self.current_period_end
