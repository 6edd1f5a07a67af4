"""
Admin dashboard statistics: MRR, churn, revenue and growth.

WHAT: Read-only aggregations over subscriptions, payment_history and
profiles.

WHY: Revenue metrics must come from our own tables, not from provider
dashboards, because customers are split across Stripe and two PayPal
accounts. The pricing heuristics in services.pricing fill the gaps that
legacy rows leave.

HOW: Each method loads the narrow set of rows it needs and aggregates
in Python, which keeps the heuristics in one place and the SQL portable
between PostgreSQL and SQLite.
"""

import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.exceptions import ValidationError
from billing_sync.core.timeutils import parse_iso, utcnow
from billing_sync.dao.profile import ProfileDAO
from billing_sync.models.profile import Profile
from billing_sync.models.payment_history import (
    PaymentHistory,
    TransactionType,
    SUCCESSFUL_PAYMENT_STATUSES,
)
from billing_sync.models.subscription import Subscription, SubscriptionStatus
from billing_sync.services.pricing import historical_monthly_price, is_lifetime, monthly_price

logger = logging.getLogger(__name__)

PERIODS = ("today", "yesterday", "week", "month", "custom")
CHURN_WINDOW = timedelta(days=30)
DEFAULT_LTV_MONTHS = 24
LIFETIME_TRANSACTION_TYPES = (TransactionType.PURCHASE, TransactionType.ONE_TIME)


def _end_of_day(day: date) -> datetime:
    return datetime.combine(day, time.max)


def _parse_bound(value: Optional[str], is_end: bool) -> Optional[datetime]:
    if not value:
        return None
    parsed = parse_iso(value)
    if parsed is None:
        raise ValidationError(message=f"Invalid date: {value}")
    # A bare date as the end bound covers the whole day
    if is_end and len(value) == 10:
        return _end_of_day(parsed.date())
    return parsed


def resolve_period(
    period: str,
    start: Optional[str] = None,
    end: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[datetime, datetime]:
    """
    Date range for a named period (UTC).

    Raises:
        ValidationError: Unknown period or unparseable custom bounds
    """
    if period not in PERIODS:
        raise ValidationError(message=f"Unknown period '{period}'", allowed=list(PERIODS))

    today = (now or utcnow()).date()
    today_start = datetime.combine(today, time.min)
    today_end = _end_of_day(today)

    if period == "today":
        return today_start, today_end
    if period == "yesterday":
        return today_start - timedelta(days=1), today_start - timedelta(microseconds=1)
    if period == "week":
        return today_start - timedelta(days=7), today_end
    if period == "month":
        return today_start - timedelta(days=30), today_end

    return (
        _parse_bound(start, is_end=False) or today_start,
        _parse_bound(end, is_end=True) or today_end,
    )


def _month_starts(months: int, now: datetime) -> List[datetime]:
    """First instant of each of the last `months` calendar months, oldest first."""
    starts = []
    year, month = now.year, now.month
    for _ in range(months):
        starts.append(datetime(year, month, 1))
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(starts))


def _next_month(value: datetime) -> datetime:
    if value.month == 12:
        return datetime(value.year + 1, 1, 1)
    return datetime(value.year, value.month + 1, 1)


def _pct_change(first: float, last: float) -> float:
    return (last - first) / first * 100 if first > 0 else 0.0


class StatsService:
    """
    Aggregations for the admin dashboard.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.profile_dao = ProfileDAO(db)

    # =========================================================================
    # MRR
    # =========================================================================

    async def get_mrr_stats(self) -> Dict[str, Any]:
        """
        Current MRR with plan and provider breakdowns.

        Active means status active and a period end in the future (or
        none, which covers lifetime rows). Churn compares cancellations in
        the last 30 days to active + cancelled.
        """
        now = utcnow()
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.status == SubscriptionStatus.ACTIVE,
                or_(
                    Subscription.current_period_end > now,
                    Subscription.current_period_end.is_(None),
                ),
            )
        )
        subscriptions = list(result.scalars().all())

        cancelled_recent = (
            await self.db.execute(
                select(func.count())
                .select_from(Subscription)
                .where(
                    Subscription.status == SubscriptionStatus.CANCELED,
                    Subscription.updated_at >= now - CHURN_WINDOW,
                )
            )
        ).scalar_one()

        total_mrr = 0.0
        monthly_count = 0
        lifetime_count = 0
        providers = {
            name: {"provider": name, "count": 0, "mrr": 0.0}
            for name in ("stripe", "paypal", "paypal_legacy")
        }
        plans: Dict[str, Dict[str, Any]] = {}

        for sub in subscriptions:
            provider = sub.provider.value
            plan_key = f"{(sub.plan_id or 'unknown').lower()}_{provider}"
            plan = plans.setdefault(
                plan_key,
                {
                    "plan_id": (sub.plan_id or "unknown").lower(),
                    "plan_name": sub.plan_name or sub.plan_id or "Unknown Plan",
                    "provider": provider,
                    "count": 0,
                    "mrr": 0.0,
                },
            )
            plan["count"] += 1

            if is_lifetime(sub):
                lifetime_count += 1
                continue

            price = monthly_price(sub)
            monthly_count += 1
            total_mrr += price
            plan["mrr"] += price
            providers[provider]["count"] += 1
            providers[provider]["mrr"] += price

        in_period = len(subscriptions) + cancelled_recent
        churn_rate = cancelled_recent / in_period * 100 if in_period else 0.0

        return {
            "mrr": round(total_mrr, 2),
            "active_subscriptions": len(subscriptions),
            "monthly_subscriptions": monthly_count,
            "lifetime_subscriptions": lifetime_count,
            "churn_rate": round(churn_rate, 2),
            "cancelled_last_30_days": cancelled_recent,
            "by_plan": sorted(plans.values(), key=lambda p: p["mrr"], reverse=True),
            "by_provider": sorted(
                (p for p in providers.values() if p["count"] > 0),
                key=lambda p: p["mrr"],
                reverse=True,
            ),
            "stripe_mrr": round(providers["stripe"]["mrr"], 2),
            "paypal_mrr": round(providers["paypal"]["mrr"], 2),
            "paypal_legacy_mrr": round(providers["paypal_legacy"]["mrr"], 2),
        }

    # =========================================================================
    # Period stats
    # =========================================================================

    async def _revenue_between(self, start: datetime, end: datetime) -> float:
        result = await self.db.execute(
            select(func.coalesce(func.sum(PaymentHistory.amount), 0)).where(
                PaymentHistory.redirect_status.in_(SUCCESSFUL_PAYMENT_STATUSES),
                PaymentHistory.created_at >= start,
                PaymentHistory.created_at <= end,
            )
        )
        return float(result.scalar_one() or 0)

    async def get_business_stats(
        self,
        period: str = "today",
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> Dict[str, Any]:
        """New users, new paid users and revenue for a period."""
        range_start, range_end = resolve_period(period, start, end)

        new_users = await self.profile_dao.count_created_between(range_start, range_end)
        new_paid = (
            await self.db.execute(
                select(func.count())
                .select_from(Subscription)
                .where(
                    Subscription.status == SubscriptionStatus.ACTIVE,
                    Subscription.created_at >= range_start,
                    Subscription.created_at <= range_end,
                )
            )
        ).scalar_one()

        return {
            "new_users": new_users,
            "new_paid_users": new_paid,
            "revenue": round(await self._revenue_between(range_start, range_end), 2),
            "period": {
                "start": range_start.date().isoformat(),
                "end": range_end.date().isoformat(),
            },
        }

    # =========================================================================
    # Historical
    # =========================================================================

    async def get_historical_stats(self, months: int = 12) -> Dict[str, Any]:
        """
        Month-by-month MRR, revenue and churn, plus growth/LTV totals.
        """
        if months < 1:
            raise ValidationError(message="months must be at least 1")

        now = utcnow()
        starts = _month_starts(months, now)
        period_start = starts[0]
        period_end = _next_month(starts[-1])

        payments = list(
            (
                await self.db.execute(
                    select(PaymentHistory).where(
                        PaymentHistory.redirect_status.in_(SUCCESSFUL_PAYMENT_STATUSES),
                        PaymentHistory.created_at >= period_start,
                        PaymentHistory.created_at < period_end,
                    )
                )
            ).scalars().all()
        )
        cancelled = list(
            (
                await self.db.execute(
                    select(Subscription).where(
                        Subscription.status == SubscriptionStatus.CANCELED,
                        Subscription.updated_at >= period_start,
                    )
                )
            ).scalars().all()
        )
        active = list(
            (
                await self.db.execute(
                    select(Subscription).where(Subscription.status == SubscriptionStatus.ACTIVE)
                )
            ).scalars().all()
        )

        monthly_data = []
        for month_start in starts:
            month_end = _next_month(month_start)

            row = {
                "month": month_start.strftime("%Y-%m"),
                "label": month_start.strftime("%b %Y"),
                "revenue_from_new_subs": 0.0,
                "revenue_from_renewals": 0.0,
                "revenue_from_lifetime": 0.0,
                "stripe_revenue": 0.0,
                "paypal_revenue": 0.0,
                "paypal_legacy_revenue": 0.0,
            }
            new_subscribers = set()
            renewals = 0

            for payment in payments:
                if not (month_start <= payment.created_at < month_end):
                    continue
                amount = payment.amount or 0.0
                if payment.transaction_type == TransactionType.SUBSCRIPTION:
                    row["revenue_from_new_subs"] += amount
                    new_subscribers.add(payment.user_id)
                elif payment.transaction_type == TransactionType.RENEWAL:
                    row["revenue_from_renewals"] += amount
                    renewals += 1
                elif payment.transaction_type in LIFETIME_TRANSACTION_TYPES:
                    row["revenue_from_lifetime"] += amount
                row[f"{payment.gateway.value}_revenue"] += amount

            churned = sum(
                1
                for sub in cancelled
                if (sub.canceled_at or sub.updated_at)
                and month_start <= (sub.canceled_at or sub.updated_at) < month_end
            )

            active_at_month = [s for s in active if s.created_at and s.created_at < month_end]
            mrr = sum(
                historical_monthly_price(s)
                for s in active_at_month
                if "lifetime" not in (s.plan_name or "").lower()
                and "lifetime" not in (s.plan_id or "").lower()
            )

            row.update(
                {
                    "mrr": round(mrr, 2),
                    "new_subscribers": len(new_subscribers),
                    "renewals": renewals,
                    "churned": churned,
                    "total_active_subscribers": len(active_at_month),
                    "revenue": round(
                        row["revenue_from_new_subs"]
                        + row["revenue_from_renewals"]
                        + row["revenue_from_lifetime"],
                        2,
                    ),
                }
            )
            monthly_data.append(row)

        first, last = monthly_data[0], monthly_data[-1]
        total_churned = sum(m["churned"] for m in monthly_data)
        total_revenue = sum(m["revenue"] for m in monthly_data)
        avg_active = sum(m["total_active_subscribers"] for m in monthly_data) / len(monthly_data)

        avg_churn_rate = total_churned / avg_active / months * 100 if avg_active else 0.0
        arpu = total_revenue / avg_active / months if avg_active else 0.0
        ltv = arpu / (avg_churn_rate / 100) if avg_churn_rate > 0 else arpu * DEFAULT_LTV_MONTHS

        return {
            "monthly_data": monthly_data,
            "mrr_growth_rate": round(_pct_change(first["mrr"], last["mrr"]), 2),
            "subscriber_growth_rate": round(
                _pct_change(first["total_active_subscribers"], last["total_active_subscribers"]), 2
            ),
            "avg_churn_rate": round(avg_churn_rate, 2),
            "arpu": round(arpu, 2),
            "ltv": round(ltv, 2),
        }

    # =========================================================================
    # Daily
    # =========================================================================

    async def get_daily_stats(self, days: int = 30) -> Dict[str, Any]:
        """Per-UTC-day signups (non-legacy), new paid users and first-payment revenue."""
        if days < 1:
            raise ValidationError(message="days must be at least 1")

        today = utcnow().date()
        first_day = today - timedelta(days=days - 1)
        since = datetime.combine(first_day, time.min)

        signup_rows = await self.db.execute(
            select(Profile.created_at).where(
                Profile.created_at >= since,
                Profile.is_legacy_user.is_(False),
            )
        )
        signups_by_day: Dict[date, int] = defaultdict(int)
        for (created_at,) in signup_rows.all():
            signups_by_day[created_at.date()] += 1

        payments = (
            await self.db.execute(
                select(PaymentHistory).where(
                    PaymentHistory.redirect_status.in_(SUCCESSFUL_PAYMENT_STATUSES),
                    PaymentHistory.transaction_type == TransactionType.SUBSCRIPTION,
                    PaymentHistory.created_at >= since,
                )
            )
        ).scalars().all()
        payers_by_day: Dict[date, set] = defaultdict(set)
        revenue_by_day: Dict[date, float] = defaultdict(float)
        for payment in payments:
            day = payment.created_at.date()
            payers_by_day[day].add(payment.user_id)
            revenue_by_day[day] += payment.amount or 0.0

        daily = []
        for offset in range(days):
            day = first_day + timedelta(days=offset)
            daily.append(
                {
                    "date": day.isoformat(),
                    "new_signups": signups_by_day.get(day, 0),
                    "new_paid_users": len(payers_by_day.get(day, ())),
                    "revenue": round(revenue_by_day.get(day, 0.0), 2),
                }
            )
        return {"daily_data": daily}
