"""
Payment history Data Access Object (DAO).

WHY: Duplicate detection for payments needs three different lookups
(by provider ID, by user+amount window, by user+identifier+type). They
live here so PaymentRecorder stays a readable list of rules.
"""

from datetime import datetime
from typing import Optional, List, Iterable

from sqlalchemy import select, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.dao.base import BaseDAO
from billing_sync.models.payment_history import (
    PaymentHistory,
    PaymentGateway,
    TransactionType,
    SUCCESSFUL_PAYMENT_STATUSES,
)


class PaymentHistoryDAO(BaseDAO[PaymentHistory]):
    """
    Data Access Object for PaymentHistory model.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(PaymentHistory, session)

    async def get_by_gateway_identifier(self, gateway_identifier: str) -> Optional[PaymentHistory]:
        return await self.get_by_field("gateway_identifier", gateway_identifier)

    async def find_recent_same_amount(
        self,
        user_id: str,
        amount: float,
        since: datetime,
    ) -> Optional[PaymentHistory]:
        """
        Same user and amount within a short window.

        WHY: A checkout redirect and its webhook may report the same charge
        under different identifiers (session ID vs subscription ID).
        """
        result = await self.session.execute(
            select(PaymentHistory)
            .where(
                PaymentHistory.user_id == user_id,
                PaymentHistory.amount == amount,
                PaymentHistory.created_at >= since,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def exists_for(
        self,
        user_id: str,
        gateway: PaymentGateway,
        gateway_identifier: str,
        transaction_type: TransactionType,
    ) -> bool:
        return await self.exists(
            user_id=user_id,
            gateway=gateway,
            gateway_identifier=gateway_identifier,
            transaction_type=transaction_type,
        )

    async def renewal_recorded_since(
        self,
        user_id: str,
        subscription_id: str,
        gateways: Iterable[PaymentGateway],
        since: datetime,
    ) -> bool:
        """Whether a renewal for this provider subscription was stored since `since`."""
        result = await self.session.execute(
            select(PaymentHistory.id)
            .where(
                PaymentHistory.user_id == user_id,
                PaymentHistory.extra_data["subscription_id"].as_string() == subscription_id,
                PaymentHistory.gateway.in_(list(gateways)),
                PaymentHistory.transaction_type == TransactionType.RENEWAL,
                PaymentHistory.created_at >= since,
            )
            .limit(1)
        )
        return result.first() is not None

    async def find_user_for_identifier(
        self,
        gateway_identifier: str,
        gateways: Iterable[PaymentGateway],
    ) -> Optional[str]:
        """User who paid for a given provider subscription ID, if any."""
        result = await self.session.execute(
            select(PaymentHistory.user_id)
            .where(
                PaymentHistory.gateway_identifier == gateway_identifier,
                PaymentHistory.gateway.in_(list(gateways)),
            )
            .limit(1)
        )
        row = result.first()
        return row[0] if row else None

    async def list_recent_paypal_subscription_payments(self, since: datetime) -> List[PaymentHistory]:
        """
        First payments of PayPal subscriptions since a cutoff.

        The auto-heal pass checks each against the subscriptions table.
        """
        result = await self.session.execute(
            select(PaymentHistory)
            .where(
                PaymentHistory.gateway == PaymentGateway.PAYPAL,
                PaymentHistory.transaction_type == TransactionType.SUBSCRIPTION,
                PaymentHistory.gateway_identifier.like("I-%"),
                PaymentHistory.created_at >= since,
            )
            .order_by(PaymentHistory.created_at)
        )
        return list(result.scalars().all())

    async def list_paid(self, include_legacy_pending: bool = False) -> List[PaymentHistory]:
        """
        Payments that represent money received, newest first.

        WHY: Migrated PayPal payments were often left "pending" because the
        old product's callback failed after the customer was charged.
        """
        condition = PaymentHistory.redirect_status.in_(SUCCESSFUL_PAYMENT_STATUSES)
        if include_legacy_pending:
            condition = or_(
                condition,
                and_(
                    PaymentHistory.redirect_status == "pending",
                    PaymentHistory.is_legacy.is_(True),
                ),
            )
        result = await self.session.execute(
            select(PaymentHistory)
            .where(condition)
            .order_by(PaymentHistory.created_at.desc(), PaymentHistory.id.desc())
        )
        return list(result.scalars().all())
