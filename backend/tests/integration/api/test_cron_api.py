"""
Integration tests for the cron sync endpoint and /health.
"""

from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.config import settings
from billing_sync.core.timeutils import utcnow
from billing_sync.models.profile import ProfileRole
from billing_sync.models.subscription import SubscriptionStatus
from tests.factories import ProfileFactory, SubscriptionFactory


class TestCronSync:
    @pytest.mark.asyncio
    async def test_requires_secret(self, client: AsyncClient):
        response = await client.get("/api/cron/sync-subscriptions")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_open_when_secret_unset(self, client: AsyncClient, monkeypatch):
        monkeypatch.setattr(settings, "CRON_SECRET", None)

        response = await client.get("/api/cron/sync-subscriptions")

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_runs_sync(
        self, client: AsyncClient, db_session: AsyncSession, cron_headers
    ):
        profile = await ProfileFactory.create(db_session, role=ProfileRole.PRO)
        sub = await SubscriptionFactory.create(
            db_session, profile.id, current_period_end=utcnow() - timedelta(days=2)
        )

        response = await client.get("/api/cron/sync-subscriptions", headers=cron_headers)

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "stripe": {"checked": 1, "synced": 1, "errors": 0},
            "paypal": {"checked": 0, "synced": 0, "errors": 0},
            "healed": {"created": 0, "activated": 0},
            "cancelled": 1,
        }
        await db_session.refresh(sub)
        await db_session.refresh(profile)
        assert sub.status == SubscriptionStatus.CANCELED
        assert profile.role == ProfileRole.USER


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert "scheduler" in body
