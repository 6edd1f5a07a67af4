"""
Unit tests for MRR pricing heuristics.
"""

from dataclasses import dataclass
from typing import Optional

import pytest

from billing_sync.services.pricing import (
    historical_monthly_price,
    infer_interval,
    is_lifetime,
    monthly_price,
)


@dataclass
class Sub:
    plan_name: Optional[str] = None
    plan_id: Optional[str] = None
    price_amount: Optional[int] = None
    billing_interval: Optional[str] = None


class TestInferInterval:
    def test_stored_interval_wins(self):
        assert infer_interval(Sub(plan_name="Pro Annual", billing_interval="month")) == "month"

    def test_from_name(self):
        assert infer_interval(Sub(plan_name="Basic Monthly")) == "month"
        assert infer_interval(Sub(plan_name="Yearly Plan")) == "year"
        assert infer_interval(Sub(plan_id="pro_annual")) == "year"

    def test_unknown(self):
        assert infer_interval(Sub(plan_name="Basic Plan")) is None


class TestIsLifetime:
    def test_lifetime_names(self):
        assert is_lifetime(Sub(plan_id="lifetime", billing_interval="month"))
        assert is_lifetime(Sub(plan_name="One-Time Purchase", billing_interval="month"))

    def test_no_interval_means_lifetime(self):
        assert is_lifetime(Sub(plan_name="Basic Plan"))

    def test_recurring(self):
        assert not is_lifetime(Sub(plan_name="Basic Plan", billing_interval="month"))


class TestMonthlyPrice:
    def test_uses_stored_price(self):
        assert monthly_price(Sub(price_amount=999, billing_interval="month")) == pytest.approx(9.99)

    def test_yearly_is_divided(self):
        assert monthly_price(Sub(price_amount=11988, billing_interval="year")) == pytest.approx(9.99)

    def test_weekly_is_multiplied(self):
        assert monthly_price(Sub(price_amount=500, billing_interval="week")) == pytest.approx(20.0)

    def test_missing_price_uses_name_table(self):
        sub = Sub(plan_name="Elite Plan", price_amount=0, billing_interval="month")
        assert monthly_price(sub) == pytest.approx(49.99)

    def test_missing_price_falls_back_to_plan_id(self):
        sub = Sub(plan_name="Something", plan_id="monthly_pro", billing_interval="month")
        assert monthly_price(sub) == pytest.approx(29.99)

    def test_missing_price_unknown_plan_defaults(self):
        sub = Sub(plan_name="Mystery", billing_interval="month")
        assert monthly_price(sub) == pytest.approx(9.99)

    def test_multi_month_stored_price_is_spread(self):
        sub = Sub(plan_name="6 Month Package", price_amount=5994, billing_interval="month")
        assert monthly_price(sub) == pytest.approx(9.99)


class TestHistoricalMonthlyPrice:
    def test_null_interval_annual_is_six_months(self):
        sub = Sub(plan_name="Pro Annual")
        assert historical_monthly_price(sub) == pytest.approx(29.99 / 6)

    def test_yearly_stored_price(self):
        sub = Sub(price_amount=11988, billing_interval="year")
        assert historical_monthly_price(sub) == pytest.approx(9.99)

    def test_monthly_table_lookup(self):
        sub = Sub(plan_name="Standard Plan", billing_interval="month")
        assert historical_monthly_price(sub) == pytest.approx(19.99)
