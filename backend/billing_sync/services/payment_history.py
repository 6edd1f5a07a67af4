"""
Idempotent payment history recording.

WHY: The same payment reaches us from several directions: a Stripe
checkout webhook, an invoice webhook for the same charge, a PayPal
activation webhook followed by the auto-heal pass. Every writer goes
through PaymentRecorder so a payment is stored once.

HOW: Three layers of protection:
1. Exact match on gateway_identifier
2. Same user and amount within DUPLICATE_WINDOW
3. The unique constraint on gateway_identifier, caught inside a SAVEPOINT
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.timeutils import utcnow
from billing_sync.dao.payment_history import PaymentHistoryDAO
from billing_sync.models.payment_history import (
    PaymentGateway,
    PaymentHistory,
    TransactionType,
)

logger = logging.getLogger(__name__)

DUPLICATE_WINDOW = timedelta(minutes=5)


@dataclass
class RecordResult:
    inserted: bool
    duplicate: bool
    payment: Optional[PaymentHistory] = None


class PaymentRecorder:
    """
    Insert payment_history rows unless they duplicate an existing payment.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.payment_dao = PaymentHistoryDAO(db)

    async def record(
        self,
        user_id: str,
        transaction_type: TransactionType,
        gateway: PaymentGateway,
        amount: float,
        gateway_identifier: Optional[str] = None,
        gateway_event_id: Optional[str] = None,
        currency: str = "USD",
        item_name: Optional[str] = None,
        redirect_status: str = "success",
        callback_status: str = "success",
        extra_data: Optional[Dict[str, Any]] = None,
        is_legacy: bool = False,
        visible_for_user: bool = True,
    ) -> RecordResult:
        """
        Record a payment.

        Returns:
            RecordResult(inserted, duplicate). duplicate=True means an
            existing row already represents this payment.
        """
        if gateway_identifier:
            existing = await self.payment_dao.get_by_gateway_identifier(gateway_identifier)
            if existing is not None:
                logger.info(f"Payment {gateway_identifier} already recorded, skipping")
                return RecordResult(inserted=False, duplicate=True, payment=existing)

        recent = await self.payment_dao.find_recent_same_amount(
            user_id, amount, utcnow() - DUPLICATE_WINDOW
        )
        if recent is not None:
            logger.info(
                f"Payment of {amount} for user {user_id} matches payment {recent.id} "
                f"from {recent.created_at}, skipping",
                extra={"user_id": user_id, "gateway_identifier": gateway_identifier},
            )
            return RecordResult(inserted=False, duplicate=True, payment=recent)

        payment = PaymentHistory(
            user_id=user_id,
            transaction_type=transaction_type,
            gateway=gateway,
            gateway_identifier=gateway_identifier,
            gateway_event_id=gateway_event_id,
            currency=(currency or "USD").upper(),
            amount=round(float(amount), 2),
            item_name=item_name,
            redirect_status=redirect_status,
            callback_status=callback_status,
            visible_for_user=visible_for_user,
            extra_data=extra_data,
            is_legacy=is_legacy,
        )

        try:
            async with self.db.begin_nested():
                self.db.add(payment)
        except IntegrityError:
            logger.info(f"Payment {gateway_identifier} inserted concurrently, treating as duplicate")
            return RecordResult(inserted=False, duplicate=True)

        logger.info(
            f"Recorded {transaction_type.value} payment of {payment.amount} {payment.currency} "
            f"for user {user_id} via {gateway.value}",
            extra={"user_id": user_id, "gateway_identifier": gateway_identifier},
        )
        return RecordResult(inserted=True, duplicate=False, payment=payment)
