"""
Stripe client for subscription reconciliation.

WHAT: Thin wrapper over the Stripe SDK for the handful of calls the sync
services make: retrieve a subscription, page through active
subscriptions, retrieve a price, and verify webhook signatures.

WHY: Wrapping the SDK gives us:
1. One place that turns "No such subscription" into None
2. StripeError (our exception) instead of SDK exceptions leaking upward
3. A seam that tests patch with MagicMock

HOW: Uses the module-level Stripe SDK configured once by configure_stripe().
SDK calls are synchronous; they are short and are made from async
methods, so the service layer does not care.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterator, Optional, Tuple

import stripe

from billing_sync.core.config import settings
from billing_sync.core.exceptions import StripeError, WebhookSignatureError
from billing_sync.core.timeutils import from_unix

logger = logging.getLogger(__name__)

# Stripe's page size cap
LIST_PAGE_SIZE = 100


# ============================================================================
# Stripe Configuration
# ============================================================================


def configure_stripe() -> None:
    """
    Configure Stripe SDK with API key from settings.

    WHY: Must be called before any Stripe API operations. The API version
    is pinned so webhook payload shapes do not change under us.
    """
    stripe.api_key = settings.STRIPE_SECRET_KEY
    stripe.api_version = settings.STRIPE_API_VERSION


configure_stripe()


def stripe_period(remote: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """
    Billing period from a Stripe subscription.

    Newer API versions moved the period onto subscription items, so fall
    back to the first item when the top-level fields are absent.
    """
    start = remote.get("current_period_start")
    end = remote.get("current_period_end")
    if end is None:
        items = (remote.get("items") or {}).get("data") or []
        if items:
            start = items[0].get("current_period_start")
            end = items[0].get("current_period_end")
    return from_unix(start), from_unix(end)


def _is_resource_missing(error: stripe.StripeError) -> bool:
    return getattr(error, "code", None) == "resource_missing"


# ============================================================================
# Client
# ============================================================================


class StripeClient:
    """
    Read-mostly Stripe operations used by the sync services.
    """

    def __init__(self, api_key: Optional[str] = None):
        if api_key:
            stripe.api_key = api_key

    async def get_subscription(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve a subscription by ID.

        Returns:
            Stripe subscription object, or None if Stripe has no such subscription

        Raises:
            StripeError: For any other Stripe failure (auth, network, rate limit)
        """
        try:
            return stripe.Subscription.retrieve(subscription_id)
        except stripe.InvalidRequestError as e:
            if _is_resource_missing(e):
                logger.info(f"Stripe subscription {subscription_id} not found")
                return None
            logger.error(f"Stripe retrieve failed for {subscription_id}: {e}")
            raise StripeError(
                message="Failed to retrieve Stripe subscription",
                stripe_error=str(e),
                subscription_id=subscription_id,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe retrieve failed for {subscription_id}: {e}")
            raise StripeError(
                message="Failed to retrieve Stripe subscription",
                stripe_error=str(e),
                subscription_id=subscription_id,
            )

    def list_active_subscriptions(self) -> Iterator[Dict[str, Any]]:
        """
        Yield every active subscription, following pagination.

        HOW: Requests pages of 100 with the customer expanded (discovery
        needs the email) and advances with starting_after until has_more
        is false.
        """
        starting_after: Optional[str] = None

        while True:
            params: Dict[str, Any] = {
                "status": "active",
                "limit": LIST_PAGE_SIZE,
                "expand": ["data.customer"],
            }
            if starting_after:
                params["starting_after"] = starting_after

            try:
                page = stripe.Subscription.list(**params)
            except stripe.StripeError as e:
                logger.error(f"Stripe subscription listing failed: {e}")
                raise StripeError(
                    message="Failed to list Stripe subscriptions",
                    stripe_error=str(e),
                )

            data = page.get("data") or []
            for subscription in data:
                yield subscription

            if not page.get("has_more") or not data:
                break
            starting_after = data[-1]["id"]

    async def retrieve_price(self, price_id: str) -> Optional[Dict[str, Any]]:
        """Retrieve a price with its product expanded; None if it no longer exists."""
        try:
            return stripe.Price.retrieve(price_id, expand=["product"])
        except stripe.InvalidRequestError as e:
            if _is_resource_missing(e):
                return None
            raise StripeError(message="Failed to retrieve Stripe price", stripe_error=str(e))
        except stripe.StripeError as e:
            raise StripeError(message="Failed to retrieve Stripe price", stripe_error=str(e))

    def construct_event(
        self,
        payload: bytes,
        signature: Optional[str],
        webhook_secret: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Verify a webhook signature and parse the event.

        Raises:
            WebhookSignatureError: If the header is missing or the signature is invalid
        """
        if not signature:
            raise WebhookSignatureError(message="Missing Stripe-Signature header")

        secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        try:
            event = stripe.Webhook.construct_event(payload, signature, secret)
        except (stripe.SignatureVerificationError, ValueError) as e:
            logger.warning(f"Stripe webhook signature verification failed: {e}")
            raise WebhookSignatureError(message="Invalid webhook signature")

        logger.info(
            f"Verified Stripe webhook {event['id']} type {event['type']}",
            extra={"event_id": event["id"], "event_type": event["type"]},
        )
        return event


# ============================================================================
# Module-level convenience functions
# ============================================================================


_stripe_client: Optional[StripeClient] = None


def get_stripe_client() -> StripeClient:
    """
    Get or create the global Stripe client instance.

    Returns:
        StripeClient instance
    """
    global _stripe_client

    if _stripe_client is None:
        _stripe_client = StripeClient()

    return _stripe_client
