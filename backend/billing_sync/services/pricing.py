"""
Pricing heuristics for MRR under incomplete legacy data.

WHY: Rows migrated from the previous product often have no price and no
billing interval, only a free-text plan name ("Basic Monthly", "6 Month
Package (50% off)"). These lookups turn such rows into a best-estimate
monthly price. Current plans have real prices and skip the guesswork.
"""

from typing import Optional, Protocol

DEFAULT_MONTHLY_PRICE = 9.99
PRO_PRICE = 29.99

# Lowercased plan name or plan ID -> monthly price (dollars)
MONTHLY_PLAN_PRICES = {
    "monthly": 9.99,
    "basic plan": 9.99,
    "basic monthly": 9.99,
    "basic": 9.99,
    "monthly plan": 9.99,
    "monthly_pro": 29.99,
    "pro plan": 29.99,
    "premium plan": 29.99,
    "monthly pro": 29.99,
    "monthly pro package": 29.99,
    "pro": 29.99,
    "pro monthly": 29.99,
    "standard plan": 19.99,
    "elite plan": 49.99,
    "extra plan": 99.99,
    "ultimate plan": 149.99,
    "unlimited plan": 14.99,
    "voice cloning": 5.00,
}

# Legacy "annual" plans actually billed every six months
MULTI_MONTH_PLANS = {
    "pro annual": (PRO_PRICE, 6),
    "6 month package": (PRO_PRICE, 6),
    "6 month package (50% off)": (PRO_PRICE, 6),
}

LIFETIME_MARKERS = ("lifetime", "one_time", "one-time")


class PricedSubscription(Protocol):
    plan_name: Optional[str]
    plan_id: Optional[str]
    price_amount: Optional[int]
    billing_interval: Optional[str]


def _names(sub: PricedSubscription):
    return (sub.plan_name or "unknown").lower(), (sub.plan_id or "unknown").lower()


def infer_interval(sub: PricedSubscription) -> Optional[str]:
    """Stored interval, or one guessed from the plan name/ID."""
    if sub.billing_interval:
        return sub.billing_interval
    name, plan_id = _names(sub)
    if "monthly" in name or "monthly" in plan_id:
        return "month"
    if any(word in text for word in ("annual", "yearly") for text in (name, plan_id)):
        return "year"
    return None


def is_lifetime(sub: PricedSubscription) -> bool:
    name, plan_id = _names(sub)
    if "lifetime" in name or "lifetime" in plan_id:
        return True
    if "one_time" in name or "one-time" in name:
        return True
    return infer_interval(sub) is None


def lookup_monthly_price(name: str, plan_id: str) -> float:
    return MONTHLY_PLAN_PRICES.get(name) or MONTHLY_PLAN_PRICES.get(plan_id) or DEFAULT_MONTHLY_PRICE


def monthly_price(sub: PricedSubscription) -> float:
    """
    Normalized monthly price (dollars) of a recurring subscription.

    HOW:
    1. Start from price_amount (cents)
    2. Missing price: multi-month table, then yearly default, then name lookup
    3. Multi-month plans are divided by their month count
    4. Yearly divided by 12, weekly multiplied by 4
    """
    name, plan_id = _names(sub)
    interval = infer_interval(sub)
    multi = MULTI_MONTH_PLANS.get(name) or MULTI_MONTH_PLANS.get(plan_id)

    price = (sub.price_amount or 0) / 100
    if price == 0:
        if multi:
            price = multi[0] / multi[1]
        elif interval == "year":
            price = PRO_PRICE if "pro" in name else DEFAULT_MONTHLY_PRICE
        else:
            price = lookup_monthly_price(name, plan_id)
    elif multi:
        price = price / multi[1]

    if interval == "year":
        price = price / 12
    elif interval == "week":
        price = price * 4
    return price


def historical_monthly_price(sub: PricedSubscription) -> float:
    """
    Monthly price used for the month-by-month MRR history.

    Unlike monthly_price(), a NULL interval named "annual" is treated as a
    six-month plan.
    """
    name, plan_id = _names(sub)
    months = 1
    if not sub.billing_interval:
        if "annual" in name or "annual" in plan_id:
            months = 6
    elif sub.billing_interval == "year":
        months = 12

    price = (sub.price_amount or 0) / 100
    if price == 0:
        price = PRO_PRICE if months == 6 else lookup_monthly_price(name, plan_id)
    return price / months
