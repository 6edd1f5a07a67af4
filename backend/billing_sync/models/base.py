"""
Base model class for all SQLAlchemy models.

WHY: Centralizing common model functionality (timestamps, ID) in a base class
ensures consistency across all models and reduces code duplication.
"""

import enum
from typing import List, Type

from sqlalchemy import Column, Integer, DateTime
from sqlalchemy.orm import DeclarativeBase

from billing_sync.core.timeutils import utcnow


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    WHY: DeclarativeBase provides the foundation for SQLAlchemy 2.0 models
    with improved type hints and async support.
    """

    pass


def enum_values(enum_cls: Type[enum.Enum]) -> List[str]:
    """
    Persist enum *values* ("past_due") rather than member names ("PAST_DUE").

    WHY: Provider payloads, admin filters and the migration all speak in
    lowercase values, so the database should too.
    """
    return [member.value for member in enum_cls]


class TimestampMixin:
    """
    Mixin to add created_at and updated_at timestamps to models.

    WHY: updated_at doubles as the cancellation date for rows canceled
    before canceled_at was tracked, so it must move on every write.
    """

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class PrimaryKeyMixin:
    """
    Mixin to add an integer primary key to models.
    """

    id = Column(Integer, primary_key=True, index=True)
