"""
Sync and repair response schemas.

WHAT: Pydantic v2 models for the reconciliation, discovery, PayPal
activation, plan sync and verification endpoints.

WHY: The services return plain dataclasses/dicts so the CLI and the
scheduler can use them without FastAPI. These schemas pin the JSON
shape the admin dashboard and the cron runner rely on.
"""

from typing import List, Optional

from pydantic import BaseModel, Field


# ============================================================================
# Reconciliation
# ============================================================================


class MismatchResponse(BaseModel):
    """One subscription whose local status disagreed with its provider."""

    user_id: str
    email: Optional[str] = None
    provider: str
    subscription_id: str
    our_status: str
    provider_status: str
    action: str = Field(description="What the reconciler did (or would do in a dry run)")


class SyncResultResponse(BaseModel):
    checked: int = 0
    updated: int = 0
    cancelled: int = 0
    created: int = 0
    errors: int = 0
    skipped: int = 0
    mismatches: List[MismatchResponse] = Field(default_factory=list)
    cancelled_user_ids: List[str] = Field(default_factory=list)


class DiscoveryResultResponse(BaseModel):
    checked: int = 0
    created: int = 0
    skipped: int = 0
    errors: int = 0


class FullSyncResponse(BaseModel):
    """Reconciliation plus Stripe discovery, as run by the admin sync endpoint."""

    dry_run: bool
    reconciliation: SyncResultResponse
    discovery: DiscoveryResultResponse


# ============================================================================
# Cron
# ============================================================================


class CronProviderCounts(BaseModel):
    checked: int = 0
    synced: int = 0
    errors: int = 0


class HealCounts(BaseModel):
    created: int = 0
    activated: int = 0


class CronSyncResponse(BaseModel):
    success: bool = True
    stripe: CronProviderCounts
    paypal: CronProviderCounts
    healed: HealCounts
    cancelled: int = 0


# ============================================================================
# Repairs
# ============================================================================


class PayPalFixResponse(BaseModel):
    checked: int = 0
    activated: int = 0
    cancelled: int = 0
    errors: int = 0


class PlanSyncResponse(BaseModel):
    stripe: DiscoveryResultResponse
    paypal_legacy: DiscoveryResultResponse


# ============================================================================
# Verification
# ============================================================================


class VerificationResponse(BaseModel):
    user_id: str
    is_active: bool
    provider_status: Optional[str] = None
    sync_needed: bool = False


class PremiumAccessResponse(BaseModel):
    user_id: str
    has_premium_access: bool
