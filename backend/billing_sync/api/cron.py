"""
Cron endpoint for the external scheduler.

WHAT: GET /api/cron/sync-subscriptions runs the periodic sync once.

WHY: Hosted deployments without a long-lived process (serverless, or a
replica set where only one pod should sync) call this from their cron
runner instead of relying on the in-process APScheduler job.
"""

import logging
from typing import Callable

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.deps import get_paypal_factory, get_stripe, verify_cron_secret
from billing_sync.db.session import get_db
from billing_sync.schemas.sync import CronSyncResponse
from billing_sync.services.reconciler import SubscriptionReconciler
from billing_sync.services.stripe_client import StripeClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


@router.get(
    "/sync-subscriptions",
    response_model=CronSyncResponse,
    dependencies=[Depends(verify_cron_secret)],
    summary="Run the subscription sync",
)
async def sync_subscriptions(
    db: AsyncSession = Depends(get_db),
    stripe_client: StripeClient = Depends(get_stripe),
    paypal_factory: Callable = Depends(get_paypal_factory),
) -> CronSyncResponse:
    """
    Re-check active subscriptions with Stripe and PayPal, then heal PayPal
    payments that never got a subscription row.

    Per-subscription failures are counted in the response; only a failure
    of the whole run produces a 500.
    """
    reconciler = SubscriptionReconciler(
        db, stripe_client=stripe_client, paypal_client_factory=paypal_factory
    )
    results = await reconciler.run_cron_sync()
    logger.info("Cron sync finished", extra={"results": results})
    return CronSyncResponse(success=True, **results)
