"""Super-admin data maintenance endpoints."""

from __future__ import annotations

from datetime import date, datetime, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from jerkyrank.db.models import CustomerOrderItem, ProductRanking, Streak, User
from jerkyrank.services import Services
from tests.conftest import create_session, create_user

CONFIRM = {"confirmation": "delete all data"}


async def _super_admin(services: Services) -> dict[str, str]:
    boss = await create_user(services.session_factory, "boss@jerky.com", first_name="Bo", last_name="Ss")
    session_id = await create_session(services.session_factory, boss.id, "sess-boss")
    return {"X-Session-Id": session_id}


async def _count(services: Services, model: type) -> int:
    async with services.session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


class TestClearCache:
    @pytest.mark.asyncio
    async def test_super_admin_clears_every_cache(self, client: AsyncClient, services: Services) -> None:
        headers = await _super_admin(services)
        await services.caches.home_stats.set({"totalRankings": 3})

        response = await client.post("/admin/data/clear-cache", headers=headers)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert "recent_achievements" in body["clearedCaches"]
        assert await services.caches.home_stats.get() is None

    @pytest.mark.asyncio
    async def test_employee_without_allow_listed_email_forbidden(
        self, client: AsyncClient, services: Services
    ) -> None:
        sam = await create_user(services.session_factory, "sam@jerky.com", first_name="Sam", last_name="Lee")
        await create_session(services.session_factory, sam.id, "sess-sam")

        response = await client.post("/admin/data/clear-cache", headers={"X-Session-Id": "sess-sam"})

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_anonymous_rejected(self, client: AsyncClient) -> None:
        response = await client.post("/admin/data/clear-cache")
        assert response.status_code == 401


class TestClearAll:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [None, {"confirmation": "delete everything"}])
    async def test_requires_typed_confirmation(
        self, client: AsyncClient, services: Services, body: dict[str, str] | None
    ) -> None:
        headers = await _super_admin(services)

        response = await client.request("DELETE", "/admin/data/clear-all", json=body, headers=headers)

        assert response.status_code == 400
        assert response.json()["detail"] == 'Type "delete all data" to confirm'

    @pytest.mark.asyncio
    async def test_deletes_engagement_rows_only(self, client: AsyncClient, services: Services) -> None:
        headers = await _super_admin(services)
        jane = await create_user(services.session_factory, shopify_customer_id="5001")
        async with services.session_factory() as db:
            db.add(ProductRanking(user_id=jane.id, shopify_product_id="P1", ranking=1, product_data={}))
            db.add(Streak(
                user_id=jane.id,
                streak_type="daily_rank",
                current_streak=2,
                longest_streak=2,
                last_activity_date=date(2025, 1, 10),
            ))
            db.add(CustomerOrderItem(
                order_number="#1001",
                order_date=datetime(2024, 5, 1, tzinfo=timezone.utc),
                shopify_product_id="P1",
                sku="",
                quantity=1,
                user_id=jane.id,
                customer_email="jane@example.com",
                line_item_data={},
            ))
            await db.commit()
        await services.caches.ranking_stats.set({"P1": {"count": 1}})

        response = await client.request("DELETE", "/admin/data/clear-all", json=CONFIRM, headers=headers)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["deleted"]["product_rankings"] == 1
        assert body["deleted"]["streaks"] == 1
        assert await _count(services, ProductRanking) == 0
        assert await _count(services, Streak) == 0
        assert await _count(services, User) == 2
        assert await _count(services, CustomerOrderItem) == 1
        assert await services.caches.ranking_stats.get() is None


class TestCheckAccess:
    @pytest.mark.asyncio
    async def test_reports_super_admin(self, client: AsyncClient, services: Services) -> None:
        headers = await _super_admin(services)
        response = await client.get("/admin/data/check-access", headers=headers)
        assert response.json() == {"hasSuperAdminAccess": True}

    @pytest.mark.asyncio
    async def test_reports_customer(self, client: AsyncClient, services: Services) -> None:
        jane = await create_user(services.session_factory)
        await create_session(services.session_factory, jane.id, "sess-jane")
        response = await client.get("/admin/data/check-access", headers={"X-Session-Id": "sess-jane"})
        assert response.status_code == 200
        assert response.json() == {"hasSuperAdminAccess": False}
