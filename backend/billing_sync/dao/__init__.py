"""
Data Access Object (DAO) package.

WHY: DAOs provide a clean separation between database operations and the
reconciliation rules, making the services testable against a real session.
"""

from billing_sync.dao.base import BaseDAO
from billing_sync.dao.profile import ProfileDAO
from billing_sync.dao.subscription import SubscriptionDAO
from billing_sync.dao.payment_history import PaymentHistoryDAO
from billing_sync.dao.plan import PlanDAO

__all__ = [
    "BaseDAO",
    "ProfileDAO",
    "SubscriptionDAO",
    "PaymentHistoryDAO",
    "PlanDAO",
]
