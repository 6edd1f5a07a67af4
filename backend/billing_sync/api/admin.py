"""
Admin API endpoints.

WHAT: Revenue statistics, mismatch diagnostics and manual sync/repair
triggers for the admin dashboard.

WHY: Support staff need to see and fix billing drift without shell
access. Every write endpoint accepts dry_run so a repair can be previewed
first.

HOW: FastAPI router protected by the ADMIN_API_KEY bearer secret. Each
endpoint delegates to one service and returns its result as a schema.
"""

import logging
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.deps import get_paypal_factory, get_stripe, require_admin_key
from billing_sync.core.exceptions import ProfileNotFoundError
from billing_sync.dao.profile import ProfileDAO
from billing_sync.db.session import get_db
from billing_sync.models.subscription import SubscriptionProvider
from billing_sync.schemas.stats import (
    BusinessStatsResponse,
    DailyStatsResponse,
    HistoricalStatsResponse,
    MismatchFixResponse,
    MismatchReportResponse,
    MRRStatsResponse,
)
from billing_sync.schemas.sync import (
    DiscoveryResultResponse,
    FullSyncResponse,
    PayPalFixResponse,
    PlanSyncResponse,
    PremiumAccessResponse,
    SyncResultResponse,
    VerificationResponse,
)
from billing_sync.services.diagnostics import MismatchService
from billing_sync.services.discovery import SubscriptionDiscovery
from billing_sync.services.paypal_activation import PayPalActivationService
from billing_sync.services.reconciler import SubscriptionReconciler
from billing_sync.services.stats_service import StatsService
from billing_sync.services.stripe_client import StripeClient
from billing_sync.services.verification import SubscriptionVerifier

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin_key)],
)


# ============================================================================
# Statistics
# ============================================================================


@router.get("/stats/mrr", response_model=MRRStatsResponse)
async def mrr_stats(db: AsyncSession = Depends(get_db)) -> MRRStatsResponse:
    """Current MRR, churn and plan/provider breakdowns."""
    return MRRStatsResponse(**await StatsService(db).get_mrr_stats())


@router.get("/stats/business", response_model=BusinessStatsResponse)
async def business_stats(
    period: str = Query("today", description="today | yesterday | week | month | custom"),
    start: Optional[str] = Query(None, description="ISO date, custom period only"),
    end: Optional[str] = Query(None, description="ISO date, custom period only"),
    db: AsyncSession = Depends(get_db),
) -> BusinessStatsResponse:
    return BusinessStatsResponse(
        **await StatsService(db).get_business_stats(period=period, start=start, end=end)
    )


@router.get("/stats/historical", response_model=HistoricalStatsResponse)
async def historical_stats(
    months: int = Query(12, ge=1, le=60),
    db: AsyncSession = Depends(get_db),
) -> HistoricalStatsResponse:
    return HistoricalStatsResponse(**await StatsService(db).get_historical_stats(months=months))


@router.get("/stats/daily", response_model=DailyStatsResponse)
async def daily_stats(
    days: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
) -> DailyStatsResponse:
    return DailyStatsResponse(**await StatsService(db).get_daily_stats(days=days))


# ============================================================================
# Mismatch diagnostics
# ============================================================================


@router.get("/subscriptions/mismatches", response_model=MismatchReportResponse)
async def list_mismatches(db: AsyncSession = Depends(get_db)) -> MismatchReportResponse:
    """Users whose payments, subscriptions and role disagree."""
    return MismatchReportResponse(**await MismatchService(db).find_mismatches())


@router.post("/subscriptions/mismatches/fix", response_model=MismatchFixResponse)
async def fix_mismatches(
    dry_run: bool = Query(True),
    db: AsyncSession = Depends(get_db),
) -> MismatchFixResponse:
    """
    Grant access to paying users who lack it.

    Defaults to a dry run; pass dry_run=false to write.
    """
    result = await MismatchService(db).fix_mismatches(dry_run=dry_run)
    logger.info(f"Admin mismatch fix (dry_run={dry_run})", extra={"result": result})
    return MismatchFixResponse(dry_run=dry_run, **result)


# ============================================================================
# Sync and repair
# ============================================================================


@router.post("/sync", response_model=FullSyncResponse)
async def full_sync(
    dry_run: bool = Query(False),
    provider: Optional[SubscriptionProvider] = Query(None),
    db: AsyncSession = Depends(get_db),
    stripe_client: StripeClient = Depends(get_stripe),
    paypal_factory: Callable = Depends(get_paypal_factory),
) -> FullSyncResponse:
    """
    Reconcile every subscription with its provider, then discover Stripe
    subscriptions missing locally.

    Discovery only runs when Stripe is in scope.
    """
    reconciler = SubscriptionReconciler(
        db, stripe_client=stripe_client, paypal_client_factory=paypal_factory
    )
    reconciliation = await reconciler.reconcile(provider=provider, dry_run=dry_run)

    discovery = DiscoveryResultResponse()
    if provider in (None, SubscriptionProvider.STRIPE):
        discovered = await SubscriptionDiscovery(
            db, stripe_client=stripe_client, paypal_client_factory=paypal_factory
        ).discover_stripe(dry_run=dry_run)
        discovery = DiscoveryResultResponse(**discovered.to_dict())

    return FullSyncResponse(
        dry_run=dry_run,
        reconciliation=SyncResultResponse(**reconciliation.to_dict()),
        discovery=discovery,
    )


@router.post("/discovery", response_model=DiscoveryResultResponse)
async def discover_subscriptions(
    dry_run: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    stripe_client: StripeClient = Depends(get_stripe),
    paypal_factory: Callable = Depends(get_paypal_factory),
) -> DiscoveryResultResponse:
    """Insert active Stripe subscriptions that have no local row."""
    result = await SubscriptionDiscovery(
        db, stripe_client=stripe_client, paypal_client_factory=paypal_factory
    ).discover_stripe(dry_run=dry_run)
    return DiscoveryResultResponse(**result.to_dict())


@router.post("/paypal/fix-pending", response_model=PayPalFixResponse)
async def fix_pending_paypal(
    dry_run: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    paypal_factory: Callable = Depends(get_paypal_factory),
) -> PayPalFixResponse:
    """Activate PayPal subscriptions whose ACTIVATED webhook never arrived."""
    result = await PayPalActivationService(db, paypal_client_factory=paypal_factory).fix_pending(
        dry_run=dry_run
    )
    return PayPalFixResponse(**result)


@router.post("/plans/sync", response_model=PlanSyncResponse)
async def sync_plans(
    db: AsyncSession = Depends(get_db),
    stripe_client: StripeClient = Depends(get_stripe),
    paypal_factory: Callable = Depends(get_paypal_factory),
) -> PlanSyncResponse:
    """Import Stripe prices in use and legacy PayPal plans into the catalog."""
    discovery = SubscriptionDiscovery(
        db, stripe_client=stripe_client, paypal_client_factory=paypal_factory
    )
    stripe_result = await discovery.discover_stripe_plans()
    paypal_result = await discovery.sync_paypal_legacy_plans()
    return PlanSyncResponse(
        stripe=DiscoveryResultResponse(**stripe_result.to_dict()),
        paypal_legacy=DiscoveryResultResponse(**paypal_result.to_dict()),
    )


# ============================================================================
# Per-user verification
# ============================================================================


async def _require_profile(db: AsyncSession, user_id: str) -> None:
    if await ProfileDAO(db).get_by_id(user_id) is None:
        raise ProfileNotFoundError(user_id=user_id)


@router.get("/users/{user_id}/verify", response_model=VerificationResponse)
async def verify_user(
    user_id: str,
    force_sync: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    stripe_client: StripeClient = Depends(get_stripe),
    paypal_factory: Callable = Depends(get_paypal_factory),
) -> VerificationResponse:
    """Check a user's active subscription against its provider right now."""
    await _require_profile(db, user_id)
    verifier = SubscriptionVerifier(
        db, stripe_client=stripe_client, paypal_client_factory=paypal_factory
    )
    result = await verifier.verify(user_id, force_sync=force_sync)
    return VerificationResponse(
        user_id=user_id,
        is_active=result.is_active,
        provider_status=result.provider_status,
        sync_needed=result.sync_needed,
    )


@router.get("/users/{user_id}/premium", response_model=PremiumAccessResponse)
async def premium_access(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    stripe_client: StripeClient = Depends(get_stripe),
    paypal_factory: Callable = Depends(get_paypal_factory),
) -> PremiumAccessResponse:
    await _require_profile(db, user_id)
    verifier = SubscriptionVerifier(
        db, stripe_client=stripe_client, paypal_client_factory=paypal_factory
    )
    return PremiumAccessResponse(
        user_id=user_id,
        has_premium_access=await verifier.has_premium_access(user_id),
    )
