"""Top rankers and home-page stats, read through their caches."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jerkyrank.cache.named import LEADERBOARD_PERIODS, NamedCaches
from jerkyrank.db.models import (
    Achievement,
    PageView,
    ProductMetadata,
    ProductRanking,
    User,
    UserAchievement,
    UserProductSearch,
)

logger = logging.getLogger(__name__)

PERIOD_DAYS = {"week": 7, "month": 30}


def period_start(period: str, now: datetime | None = None) -> datetime | None:
    if period not in LEADERBOARD_PERIODS:
        raise ValueError(f"Invalid leaderboard period: {period!r}")
    days = PERIOD_DAYS.get(period)
    if days is None:
        return None
    return (now or datetime.now(timezone.utc)) - timedelta(days=days)


def _per_user_count(column: Any, user_column: Any, ts_column: Any, since: datetime | None) -> Any:  # noqa: ANN401
    query = select(func.count(column)).where(user_column == User.id)
    if since is not None:
        query = query.where(ts_column >= since)
    return query.scalar_subquery()


async def _recent_badges(db: AsyncSession, user_id: int, limit: int = 3) -> list[dict[str, Any]]:
    result = await db.execute(
        select(Achievement.code, Achievement.name, Achievement.icon, Achievement.tier)
        .join(UserAchievement, UserAchievement.achievement_id == Achievement.id)
        .where(UserAchievement.user_id == user_id)
        .order_by(UserAchievement.earned_at.desc())
        .limit(limit)
    )
    return [{"code": r.code, "name": r.name, "icon": r.icon, "tier": r.tier} for r in result]


async def compute_top_rankers(db: AsyncSession, limit: int = 50, period: str = "all_time") -> list[dict[str, Any]]:
    """Users ordered by engagement: achievements + page views + rankings + searches."""
    since = period_start(period)
    score = (
        _per_user_count(UserAchievement.id, UserAchievement.user_id, UserAchievement.earned_at, since)
        + _per_user_count(PageView.id, PageView.user_id, PageView.created_at, since)
        + _per_user_count(ProductRanking.id, ProductRanking.user_id, ProductRanking.created_at, since)
        + _per_user_count(UserProductSearch.id, UserProductSearch.user_id, UserProductSearch.created_at, since)
    )
    unique_products = (
        select(func.count(distinct(ProductRanking.shopify_product_id)))
        .where(ProductRanking.user_id == User.id)
        .scalar_subquery()
        .label("unique_products")
    )
    rows = await db.execute(
        select(
            User.id,
            User.first_name,
            User.last_name,
            User.display_name,
            unique_products,
            score.label("engagement_score"),
        )
        .where(score > 0)
        .order_by(score.desc(), User.id)
        .limit(limit)
    )

    leaderboard = []
    for position, row in enumerate(rows.all(), start=1):
        leaderboard.append({
            "userId": row.id,
            "firstName": row.first_name,
            "lastName": row.last_name,
            "displayName": row.display_name,
            "uniqueProducts": int(row.unique_products or 0),
            "engagementScore": int(row.engagement_score or 0),
            "rank": position,
            "badges": await _recent_badges(db, row.id),
        })
    return leaderboard


async def compute_community_stats(db: AsyncSession, now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

    total_rankings = await db.scalar(select(func.count(ProductRanking.id)))
    total_rankers = await db.scalar(select(func.count(distinct(ProductRanking.user_id))))
    total_products = await db.scalar(select(func.count(ProductMetadata.id)))
    active_today = await db.scalar(
        select(func.count(distinct(ProductRanking.user_id))).where(ProductRanking.created_at >= midnight)
    )
    per_user = select(func.count(ProductRanking.id).label("n")).group_by(ProductRanking.user_id).subquery()
    avg_per_user = await db.scalar(select(func.avg(per_user.c.n)))

    return {
        "totalRankings": int(total_rankings or 0),
        "totalRankers": int(total_rankers or 0),
        "totalProducts": int(total_products or 0),
        "activeToday": int(active_today or 0),
        "avgRankingsPerUser": round(float(avg_per_user or 0), 1),
    }


class LeaderboardService:
    """Cached reads of the leaderboards and home stats."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], caches: NamedCaches) -> None:
        self._session_factory = session_factory
        self.caches = caches

    async def get_top_rankers(self, limit: int = 50, period: str = "all_time", refresh: bool = False) -> list[dict[str, Any]]:
        if not refresh:
            cached = await self.caches.leaderboard.get(period, limit)
            if cached is not None:
                return cached
        async with self._session_factory() as db:
            board = await compute_top_rankers(db, limit, period)
        await self.caches.leaderboard.set(period, limit, board)
        return board

    async def get_home_stats(self, refresh: bool = False) -> dict[str, Any]:
        if not refresh:
            cached = await self.caches.home_stats.get()
            if cached is not None:
                return cached
        async with self._session_factory() as db:
            stats = {
                "communityStats": await compute_community_stats(db),
                "topRankers": await compute_top_rankers(db, 5, "all_time"),
            }
        await self.caches.home_stats.set(stats)
        return stats
