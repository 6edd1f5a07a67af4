"""
Profile model: the billing-relevant view of a user account.

WHY: Access to premium features is decided by `role`. Every sync path
flips this role as a side effect of subscription state, so it lives next
to the billing tables rather than in the auth system.
"""

import enum
import uuid

from sqlalchemy import Column, String, Enum, Boolean

from billing_sync.models.base import Base, TimestampMixin, enum_values


class ProfileRole(str, enum.Enum):
    """
    Access roles.

    - USER: free tier
    - PRO: paying subscriber (or in grace period)
    - ADMIN: staff; never downgraded by any sync path
    """

    USER = "user"
    PRO = "pro"
    ADMIN = "admin"


class Profile(Base, TimestampMixin):
    """
    User profile keyed by the auth provider's UUID.

    is_legacy_user marks accounts migrated from the previous product.
    They are excluded from signup statistics.
    """

    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, index=True, nullable=False)
    role = Column(
        Enum(ProfileRole, name="profilerole", values_callable=enum_values),
        nullable=False,
        default=ProfileRole.USER,
    )
    is_legacy_user = Column(Boolean, nullable=False, default=False)

    @property
    def is_admin(self) -> bool:
        return self.role == ProfileRole.ADMIN

    @property
    def has_paid_role(self) -> bool:
        return self.role in (ProfileRole.PRO, ProfileRole.ADMIN)

    def __repr__(self) -> str:
        return f"<Profile(id={self.id}, email={self.email}, role={self.role})>"
