"""
Payment history model: one row per money movement reported by a provider.

WHY: Subscriptions say who *should* have access; payment_history says who
actually paid. The aggregator derives revenue from it, the mismatch
report cross-checks it against subscriptions, and the PayPal auto-heal
pass uses it to find subscriptions whose webhook never arrived.

Amounts are stored in dollars (unlike subscriptions.price_amount, which
is cents) because that is how both providers report captured payments.
"""

import enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    Enum,
    ForeignKey,
    DateTime,
    Boolean,
    JSON,
    Numeric,
)

from billing_sync.core.timeutils import utcnow
from billing_sync.models.base import Base, PrimaryKeyMixin, enum_values


class TransactionType(str, enum.Enum):
    SUBSCRIPTION = "subscription"
    RENEWAL = "renewal"
    ONE_TIME = "one_time"
    PURCHASE = "purchase"
    REFUND = "refund"
    PAYMENT_FAILED = "payment_failed"


class PaymentGateway(str, enum.Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    PAYPAL_LEGACY = "paypal_legacy"


# redirect_status values that count as money received
SUCCESSFUL_PAYMENT_STATUSES = ("success", "completed")


class PaymentHistory(Base, PrimaryKeyMixin):
    """
    Immutable payment record.

    gateway_identifier is the provider's ID for the payment (invoice, sale,
    checkout session, or the PayPal subscription ID for first payments)
    and is unique, which makes webhook retries safe.
    """

    __tablename__ = "payment_history"

    user_id = Column(
        String(36),
        ForeignKey("profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    transaction_type = Column(
        Enum(TransactionType, name="transactiontype", values_callable=enum_values),
        nullable=False,
        index=True,
    )
    gateway = Column(
        Enum(PaymentGateway, name="paymentgateway", values_callable=enum_values),
        nullable=False,
        index=True,
    )
    gateway_identifier = Column(String(255), nullable=True, unique=True)
    gateway_event_id = Column(String(255), nullable=True)
    currency = Column(String(3), nullable=False, default="USD")
    amount = Column(Numeric(10, 2, asdecimal=False), nullable=False, default=0)
    item_name = Column(String(255), nullable=True)
    redirect_status = Column(String(50), nullable=True, index=True)
    callback_status = Column(String(50), nullable=True)
    visible_for_user = Column(Boolean, nullable=False, default=True)
    # "metadata" is reserved on declarative classes
    extra_data = Column("metadata", JSON, nullable=True)
    is_legacy = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    @property
    def is_successful(self) -> bool:
        return self.redirect_status in SUCCESSFUL_PAYMENT_STATUSES

    def __repr__(self) -> str:
        return (
            f"<PaymentHistory(id={self.id}, user_id={self.user_id}, "
            f"type={self.transaction_type}, amount={self.amount})>"
        )
