"""
Admin statistics response schemas.
"""

from typing import List, Optional

from pydantic import BaseModel, Field


class PlanBreakdown(BaseModel):
    plan_id: str
    plan_name: str
    provider: str
    count: int
    mrr: float


class ProviderBreakdown(BaseModel):
    provider: str
    count: int
    mrr: float


class MRRStatsResponse(BaseModel):
    mrr: float
    active_subscriptions: int
    monthly_subscriptions: int
    lifetime_subscriptions: int
    churn_rate: float = Field(description="Percent of subscriptions cancelled in the last 30 days")
    cancelled_last_30_days: int
    by_plan: List[PlanBreakdown]
    by_provider: List[ProviderBreakdown]
    stripe_mrr: float
    paypal_mrr: float
    paypal_legacy_mrr: float


class PeriodRange(BaseModel):
    start: str
    end: str


class BusinessStatsResponse(BaseModel):
    new_users: int
    new_paid_users: int
    revenue: float
    period: PeriodRange


class MonthlyStats(BaseModel):
    month: str = Field(description="YYYY-MM")
    label: str = Field(description="Display label, e.g. 'Jan 2025'")
    mrr: float
    revenue: float
    new_subscribers: int
    renewals: int
    churned: int
    total_active_subscribers: int
    revenue_from_new_subs: float
    revenue_from_renewals: float
    revenue_from_lifetime: float
    stripe_revenue: float
    paypal_revenue: float
    paypal_legacy_revenue: float


class HistoricalStatsResponse(BaseModel):
    monthly_data: List[MonthlyStats]
    mrr_growth_rate: float
    subscriber_growth_rate: float
    avg_churn_rate: float
    arpu: float
    ltv: float


class DailyStats(BaseModel):
    date: str
    new_signups: int
    new_paid_users: int
    revenue: float


class DailyStatsResponse(BaseModel):
    daily_data: List[DailyStats]


# ============================================================================
# Mismatch report
# ============================================================================


class MismatchEntry(BaseModel):
    user_id: str
    email: Optional[str] = None
    role: Optional[str] = None
    detail: Optional[str] = None


class MismatchReportResponse(BaseModel):
    paid_without_subscription: List[MismatchEntry]
    pro_without_subscription: List[MismatchEntry]
    active_without_pro: List[MismatchEntry]


class MismatchFixResponse(BaseModel):
    dry_run: bool
    roles_fixed: int
    subscriptions_fixed: int
    skipped: int
