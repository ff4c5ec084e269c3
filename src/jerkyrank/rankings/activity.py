"""Ranking writes and their side effects.

A ranking moves the user's daily streak, the product's aggregates, the
leaderboards and possibly the user's achievements. Every side effect runs
after the ranking is committed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jerkyrank.cache.named import NamedCaches
from jerkyrank.db.models import ProductRanking
from jerkyrank.db.upsert import insert_for
from jerkyrank.gamification.repository import recent_user_achievements
from jerkyrank.gamification.streak_service import StreakEngine, StreakResult
from jerkyrank.rankings.aggregates import AggregateRecomputer

if TYPE_CHECKING:
    from jerkyrank.ws.manager import NotificationBus

logger = logging.getLogger(__name__)

RANK_STREAK = "daily_rank"


async def upsert_ranking(
    db: AsyncSession,
    user_id: int,
    product_id: str,
    ranking: int,
    product_data: dict[str, Any] | None = None,
    ranking_list_id: str = "default",
) -> None:
    now = datetime.now(timezone.utc)
    stmt = insert_for(db, ProductRanking).values(
        user_id=user_id,
        shopify_product_id=product_id,
        ranking=ranking,
        product_data=product_data or {},
        ranking_list_id=ranking_list_id,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "shopify_product_id", "ranking_list_id"],
        set_={
            "ranking": stmt.excluded.ranking,
            "product_data": stmt.excluded.product_data,
            "updated_at": now,
        },
    )
    await db.execute(stmt)


class RankingActivityService:
    """Records a ranking and fans out its consequences."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        caches: NamedCaches,
        recomputer: AggregateRecomputer,
        streaks: StreakEngine,
        bus: NotificationBus | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.caches = caches
        self.recomputer = recomputer
        self.streaks = streaks
        self._bus = bus

    async def record_ranking(
        self,
        user_id: int,
        product_id: str,
        ranking: int,
        product_data: dict[str, Any] | None = None,
        ranking_list_id: str = "default",
    ) -> StreakResult:
        if ranking < 1:
            raise ValueError(f"ranking must be positive, got {ranking}")

        async with self._session_factory() as db:
            await upsert_ranking(db, user_id, product_id, ranking, product_data, ranking_list_id)
            await db.commit()
        logger.info("User %d ranked product %s at %d", user_id, product_id, ranking)

        streak = await self.streaks.update_streak(user_id, RANK_STREAK)

        await self.recomputer.refresh_products([product_id])
        await self.caches.leaderboard.invalidate()
        await self.caches.leaderboard_position.invalidate_user(user_id)
        await self.caches.home_stats.invalidate()
        await self.caches.invalidate_user(user_id)

        if self._bus is not None:
            self._bus.broadcast_product_ranked(user_id, product_data or {"id": product_id}, ranking)
            async with self._session_factory() as db:
                earned = await recent_user_achievements(db, user_id)
            # Re-evaluation reports the same recent achievements on every
            # ranking; the bus drops repeats.
            self._bus.emit_achievements(user_id, earned)
        return streak
