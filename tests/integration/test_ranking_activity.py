"""Ranking writes, aggregates and leaderboards."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from jerkyrank.auth.sessions import SessionUser
from jerkyrank.db.models import Achievement, CustomerOrderItem, ProductMetadata, ProductRanking, UserAchievement
from jerkyrank.rankings.aggregates import assign_community_ranks, empty_stats
from jerkyrank.rankings.leaderboard import period_start
from jerkyrank.services import Services
from tests.conftest import create_user, make_ws, sent_events


async def _grant(services: Services, user_id: int, code: str, tier: str) -> None:
    async with services.session_factory() as db:
        achievement = Achievement(code=code, name=code.replace("_", " ").title(), tier=tier, points=50)
        db.add(achievement)
        await db.flush()
        db.add(UserAchievement(
            user_id=user_id,
            achievement_id=achievement.id,
            tier=tier,
            earned_at=datetime.now(timezone.utc),
        ))
        await db.commit()


async def _listen(services: Services, user_id: int) -> MagicMock:
    ws = make_ws()
    client = await services.bus.connect(ws, f"user-{user_id}")
    services.bus.attach_user(
        client, SessionUser(user_id, "jane@example.com", "Jane", "Doe", "Jane Doe", "user", False, False)
    )
    return ws


class TestRecordRanking:
    @pytest.mark.asyncio
    async def test_rapid_rankings_deliver_achievement_once(self, services: Services) -> None:
        user = await create_user(services.session_factory)
        await _grant(services, user.id, "original_master", "diamond")
        ws = await _listen(services, user.id)

        for n in range(1, 6):
            await services.rankings.record_ranking(user.id, f"P{n}", n, {"title": f"Jerky {n}"})
        await services.bus.drain()

        earned = [m for m in sent_events(ws) if m["event"] == "achievements:earned"]
        assert len(earned) == 1
        [achievement] = earned[0]["data"]["achievements"]
        assert achievement["code"] == "original_master"
        assert achievement["tier"] == "diamond"

    @pytest.mark.asyncio
    async def test_ranking_updates_stats_and_streak(self, services: Services) -> None:
        user = await create_user(services.session_factory)
        await services.caches.ranking_stats.set({"P9": {"count": 2}})
        await services.caches.home_stats.set({"stale": True})

        streak = await services.rankings.record_ranking(user.id, "P1", 2)

        assert streak.streak_type == "daily_rank"
        assert streak.current_streak == 1
        stats = await services.caches.ranking_stats.get()
        assert stats["P1"]["count"] == 1
        assert stats["P1"]["distribution"]["count_2nd"] == 1
        assert stats["P9"] == {"count": 2}
        assert await services.caches.home_stats.get() is None

    @pytest.mark.asyncio
    async def test_reranking_moves_position(self, services: Services) -> None:
        user = await create_user(services.session_factory)
        await services.rankings.record_ranking(user.id, "P1", 3)
        await services.rankings.record_ranking(user.id, "P1", 1)

        async with services.session_factory() as db:
            rows = (await db.execute(select(ProductRanking))).scalars().all()
        assert [(r.shopify_product_id, r.ranking) for r in rows] == [("P1", 1)]

    @pytest.mark.asyncio
    async def test_non_positive_rank_rejected(self, services: Services) -> None:
        user = await create_user(services.session_factory)
        with pytest.raises(ValueError):
            await services.rankings.record_ranking(user.id, "P1", 0)


class TestAggregates:
    @pytest.mark.asyncio
    async def test_recompute_touched_products(self, services: Services) -> None:
        a = await create_user(services.session_factory, "a@example.com")
        b = await create_user(services.session_factory, "b@example.com")
        async with services.session_factory() as db:
            db.add_all([
                ProductRanking(user_id=a.id, shopify_product_id="P1", ranking=1, product_data={}),
                ProductRanking(user_id=b.id, shopify_product_id="P1", ranking=3, product_data={}),
                ProductRanking(user_id=a.id, shopify_product_id="P2", ranking=2, product_data={}),
            ])
            await db.commit()

        stats, missing = await services.recomputer.recompute(["P1", "P3"])

        assert missing == ["P3"]
        assert set(stats) == {"P1"}
        p1 = stats["P1"]
        assert p1["count"] == 2
        assert p1["unique_rankers"] == 2
        assert p1["avg_rank"] == 2.0
        assert (p1["best_rank"], p1["worst_rank"]) == (1, 3)
        assert p1["distribution"]["pct_1st"] == 50.0
        assert p1["distribution"]["pct_3rd"] == 50.0

    @pytest.mark.asyncio
    async def test_all_stats_reads_through(self, services: Services) -> None:
        user = await create_user(services.session_factory)
        async with services.session_factory() as db:
            db.add(ProductRanking(user_id=user.id, shopify_product_id="P4", ranking=1, product_data={}))
            await db.commit()

        stats = await services.recomputer.all_stats()

        assert set(stats) == {"P4"}
        assert await services.caches.ranking_stats.get() == stats
        await services.caches.ranking_stats.set({"P9": {"count": 7}})
        assert await services.recomputer.all_stats() == {"P9": {"count": 7}}

    @pytest.mark.asyncio
    async def test_purchased_products_read_through(self, services: Services) -> None:
        user = await create_user(services.session_factory)
        async with services.session_factory() as db:
            for order_number, product_id in (("#1001", "P2"), ("#1001", "P1"), ("#1002", "P2")):
                db.add(CustomerOrderItem(
                    order_number=order_number,
                    order_date=datetime(2024, 5, 1, tzinfo=timezone.utc),
                    shopify_product_id=product_id,
                    sku="",
                    quantity=1,
                    user_id=user.id,
                    customer_email=user.email,
                    line_item_data={},
                ))
            await db.commit()

        assert await services.recomputer.purchased_products(user.id) == ["P1", "P2"]
        assert await services.caches.purchase_history.get(user.id) == ["P1", "P2"]

    def test_empty_stats(self) -> None:
        stats = empty_stats()
        assert stats["count"] == 0
        assert stats["avg_rank"] is None

    def test_community_ranks(self) -> None:
        stats = {
            "P1": {"count": 2, "avg_rank": 2.5},
            "P2": {"count": 1, "avg_rank": 1.0},
            "P3": {"count": 0, "avg_rank": None},
            "P4": {"count": 3, "avg_rank": 2.5},
        }
        assert assign_community_ranks(stats) == {"P1": 2, "P2": 1, "P3": None, "P4": 3}


class TestLeaderboard:
    def test_period_start(self) -> None:
        now = datetime(2025, 1, 31, tzinfo=timezone.utc)
        assert period_start("all_time", now) is None
        assert period_start("week", now) == datetime(2025, 1, 24, tzinfo=timezone.utc)
        with pytest.raises(ValueError):
            period_start("decade", now)

    @pytest.mark.asyncio
    async def test_top_rankers_cached(self, services: Services) -> None:
        busy = await create_user(services.session_factory, "busy@example.com", first_name="Busy", last_name="Bee")
        quiet = await create_user(services.session_factory, "quiet@example.com", first_name="Quiet", last_name="Q")
        await create_user(services.session_factory, "idle@example.com", first_name="Idle", last_name="I")
        async with services.session_factory() as db:
            db.add_all([
                ProductRanking(user_id=busy.id, shopify_product_id="P1", ranking=1, product_data={}),
                ProductRanking(user_id=busy.id, shopify_product_id="P2", ranking=2, product_data={}),
                ProductRanking(user_id=quiet.id, shopify_product_id="P1", ranking=1, product_data={}),
            ])
            await db.commit()

        board = await services.leaderboard.get_top_rankers(10)

        assert [(e["userId"], e["rank"], e["engagementScore"]) for e in board] == [(busy.id, 1, 2), (quiet.id, 2, 1)]
        assert board[0]["uniqueProducts"] == 2
        assert await services.caches.leaderboard.get("all_time", 10) == board

    @pytest.mark.asyncio
    async def test_home_stats(self, services: Services) -> None:
        user = await create_user(services.session_factory)
        async with services.session_factory() as db:
            db.add(ProductMetadata(shopify_product_id="P1", title="Beef"))
            db.add(ProductRanking(user_id=user.id, shopify_product_id="P1", ranking=1, product_data={}))
            await db.commit()

        home = await services.leaderboard.get_home_stats()

        community = home["communityStats"]
        assert community["totalRankings"] == 1
        assert community["totalRankers"] == 1
        assert community["totalProducts"] == 1
        assert community["avgRankingsPerUser"] == 1.0
        assert home["topRankers"][0]["userId"] == user.id
        assert await services.caches.home_stats.get() == home
