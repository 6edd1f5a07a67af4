"""
Provider webhook endpoints.

WHAT: Receives Stripe and PayPal event deliveries and applies them to
subscriptions, payment_history and profile roles.

WHY: Webhooks are the fast path; the reconciler only catches what they
miss. Both endpoints verify the delivery before touching the database.

Error contract:
- Bad or missing signature: 400, so the provider does not retry a forgery
- Stripe handler failure: rolled back and acknowledged with 200. Stripe
  retries for days and the reconciler will repair the row anyway.
- PayPal handler failure: 500, so PayPal retries the delivery
"""

import json
import logging
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.deps import get_paypal_factory, get_stripe
from billing_sync.core.exceptions import AppException, ValidationError, WebhookSignatureError
from billing_sync.db.session import get_db
from billing_sync.models.subscription import SubscriptionProvider
from billing_sync.schemas.webhook import WebhookResponse
from billing_sync.services.paypal_webhooks import PayPalWebhookHandler
from billing_sync.services.stripe_client import StripeClient
from billing_sync.services.stripe_webhooks import StripeWebhookHandler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook",
)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    stripe_client: StripeClient = Depends(get_stripe),
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> WebhookResponse:
    """
    Handle a Stripe event.

    SECURITY: the raw body is verified against STRIPE_WEBHOOK_SECRET before
    it is parsed.
    """
    payload = await request.body()
    event = stripe_client.construct_event(payload, stripe_signature)

    event_type = event["type"]
    logger.info(
        f"Processing Stripe webhook: {event_type}",
        extra={"event_id": event.get("id"), "event_type": event_type},
    )

    try:
        handled = await StripeWebhookHandler(db, stripe_client=stripe_client).handle(event)
        await db.commit()
    except Exception as e:
        logger.error(
            f"Error processing Stripe webhook {event_type}: {e}",
            extra={"event_id": event.get("id")},
            exc_info=True,
        )
        await db.rollback()
        return WebhookResponse(received=True, handled=False)

    return WebhookResponse(received=True, handled=handled)


@router.post(
    "/paypal",
    response_model=WebhookResponse,
    summary="PayPal webhook",
)
async def paypal_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    paypal_factory: Callable = Depends(get_paypal_factory),
) -> WebhookResponse:
    """
    Handle a PayPal event.

    SECURITY: PayPal's verify-webhook-signature API must answer SUCCESS
    for the transmission headers and body. Webhooks are registered on the
    current account only, so its credentials do the verification.
    """
    raw = await request.body()
    try:
        event = json.loads(raw)
    except ValueError:
        raise ValidationError(message="Webhook body is not valid JSON")
    if not isinstance(event, dict):
        raise ValidationError(message="Webhook body must be a JSON object")

    verifier = paypal_factory(SubscriptionProvider.PAYPAL)
    if not await verifier.verify_webhook_signature(request.headers, event):
        logger.warning(
            "PayPal webhook signature verification failed",
            extra={"event_id": event.get("id"), "event_type": event.get("event_type")},
        )
        raise WebhookSignatureError()

    event_type = event.get("event_type")
    logger.info(
        f"Processing PayPal webhook: {event_type}",
        extra={"event_id": event.get("id"), "event_type": event_type},
    )

    handler = PayPalWebhookHandler(db, paypal_client_factory=paypal_factory)
    try:
        handled = await handler.handle(event)
    except Exception as e:
        logger.error(
            f"Error processing PayPal webhook {event_type}: {e}",
            extra={"event_id": event.get("id")},
            exc_info=True,
        )
        raise AppException(message="Webhook processing failed", event_type=event_type) from e
    return WebhookResponse(received=True, handled=handled)
