"""
Plan model and the static plan catalog.

WHY: Two sources of plans exist:
1. PLAN_CATALOG: the plans currently sold, with their provider price IDs
   from settings. Webhooks use it to turn a price/plan ID into a name.
2. The plans table: every plan ever seen at a provider, including legacy
   PayPal plans and Stripe prices created by hand in the dashboard. The
   discovery pass fills it so admin reports can label old subscriptions.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy import Column, Integer, String, Boolean, JSON

from billing_sync.core.config import settings
from billing_sync.models.base import Base, TimestampMixin


class Plan(Base, TimestampMixin):
    """
    A plan discovered at (or configured for) a provider.

    IDs are deterministic so discovery can upsert:
    - stripe_{product_id[:15]}_{interval}
    - paypal_legacy_{paypal_plan_id}
    """

    __tablename__ = "plans"

    id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=False)
    price_amount = Column(Integer, nullable=True, doc="Price in cents")
    currency = Column(String(3), nullable=False, default="USD")
    billing_interval = Column(String(20), nullable=True)
    stripe_price_id = Column(String(255), nullable=True, index=True)
    stripe_product_id = Column(String(255), nullable=True)
    paypal_plan_id = Column(String(255), nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_legacy = Column(Boolean, nullable=False, default=False)
    is_discovered = Column(Boolean, nullable=False, default=False)
    extra_data = Column("metadata", JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<Plan(id={self.id}, name={self.name}, price_amount={self.price_amount})>"


@dataclass(frozen=True)
class CatalogPlan:
    """A plan currently offered for sale. Price is in dollars."""

    id: str
    name: str
    price: float
    interval: Optional[str]
    stripe_price_id: Optional[str]
    paypal_plan_id: Optional[str]

    @property
    def price_cents(self) -> int:
        return int(round(self.price * 100))


def build_plan_catalog() -> Dict[str, CatalogPlan]:
    """Build the catalog from settings (re-read so tests can patch settings)."""
    return {
        "monthly": CatalogPlan(
            id="monthly",
            name="Basic Plan",
            price=9.99,
            interval="month",
            stripe_price_id=settings.STRIPE_PRICE_MONTHLY,
            paypal_plan_id=settings.PAYPAL_PLAN_MONTHLY,
        ),
        "monthly_pro": CatalogPlan(
            id="monthly_pro",
            name="Monthly Pro",
            price=29.99,
            interval="month",
            stripe_price_id=settings.STRIPE_PRICE_MONTHLY_PRO,
            paypal_plan_id=settings.PAYPAL_PLAN_MONTHLY_PRO,
        ),
        "lifetime": CatalogPlan(
            id="lifetime",
            name="Lifetime",
            price=99.0,
            interval=None,
            stripe_price_id=settings.STRIPE_PRICE_LIFETIME,
            paypal_plan_id=None,
        ),
    }


def get_catalog_plan(plan_id: Optional[str]) -> Optional[CatalogPlan]:
    if not plan_id:
        return None
    return build_plan_catalog().get(plan_id)


def get_plan_by_stripe_price(price_id: Optional[str]) -> Optional[CatalogPlan]:
    if not price_id:
        return None
    for plan in build_plan_catalog().values():
        if plan.stripe_price_id and plan.stripe_price_id == price_id:
            return plan
    return None


def get_plan_by_paypal_plan(paypal_plan_id: Optional[str]) -> Optional[CatalogPlan]:
    if not paypal_plan_id:
        return None
    for plan in build_plan_catalog().values():
        if plan.paypal_plan_id and plan.paypal_plan_id == paypal_plan_id:
            return plan
    return None
