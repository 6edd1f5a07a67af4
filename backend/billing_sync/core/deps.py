"""
FastAPI dependencies: endpoint protection and provider clients.

WHY: The cron and admin endpoints trigger writes against billing state.
They are called by machines (the cron runner, the admin dashboard backend)
rather than end users, so a shared bearer secret per caller is enough.
"""

import hmac
import logging
from typing import Callable, Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from billing_sync.core.config import settings
from billing_sync.core.exceptions import AuthenticationError
from billing_sync.models.subscription import SubscriptionProvider
from billing_sync.services.paypal_client import PayPalClient, client_for_provider
from billing_sync.services.stripe_client import StripeClient, get_stripe_client

logger = logging.getLogger(__name__)

# auto_error=False so a missing header becomes our 401 instead of FastAPI's 403
security = HTTPBearer(auto_error=False)


def _secret_matches(credentials: Optional[HTTPAuthorizationCredentials], expected: str) -> bool:
    if credentials is None:
        return False
    return hmac.compare_digest(credentials.credentials.encode(), expected.encode())


async def verify_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """
    Require `Authorization: Bearer <CRON_SECRET>`.

    WHY: When CRON_SECRET is unset the endpoint stays open, which keeps
    local development simple. Production deployments always set it.

    Raises:
        AuthenticationError: If the secret is configured and does not match
    """
    if not settings.CRON_SECRET:
        return

    if not _secret_matches(credentials, settings.CRON_SECRET):
        logger.warning("Rejected cron request with missing or invalid secret")
        raise AuthenticationError(message="Unauthorized")


async def require_admin_key(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """
    Require `Authorization: Bearer <ADMIN_API_KEY>`.

    Unlike the cron secret, an unset ADMIN_API_KEY closes the admin API
    entirely: stats expose revenue and user emails.

    Raises:
        AuthenticationError: If the key is not configured or does not match
    """
    if not settings.ADMIN_API_KEY:
        raise AuthenticationError(message="Admin API is not configured")

    if not _secret_matches(credentials, settings.ADMIN_API_KEY):
        logger.warning("Rejected admin request with missing or invalid key")
        raise AuthenticationError(message="Invalid admin credentials")


# ============================================================================
# Provider clients
# ============================================================================


def get_stripe() -> StripeClient:
    """Stripe client dependency; tests override it with a mock."""
    return get_stripe_client()


def get_paypal_factory() -> Callable[[SubscriptionProvider], PayPalClient]:
    """PayPal client factory dependency (picks the account per provider)."""
    return client_for_provider
