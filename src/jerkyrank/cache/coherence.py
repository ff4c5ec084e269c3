"""Apply the narrowest cache action for each processor outcome.

Single-entity mutations update or drop single keys. Whole namespaces are
only cleared for data whose every entry may have moved (leaderboards, home
stats) or on the admin clear.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jerkyrank.cache.named import NamedCaches
from jerkyrank.products.repository import get_all_metadata
from jerkyrank.rankings.aggregates import AggregateRecomputer
from jerkyrank.webhooks.outcome import ProcessOutcome

if TYPE_CHECKING:
    from jerkyrank.gamification.recent_achievements import RecentAchievementTracker
    from jerkyrank.ws.manager import NotificationBus

logger = logging.getLogger(__name__)


class CoherenceController:
    """Keeps the named caches consistent with committed webhook mutations."""

    def __init__(
        self,
        caches: NamedCaches,
        recomputer: AggregateRecomputer,
        session_factory: async_sessionmaker[AsyncSession],
        suppressor: RecentAchievementTracker | None = None,
        bus: NotificationBus | None = None,
    ) -> None:
        self.caches = caches
        self.recomputer = recomputer
        self._session_factory = session_factory
        self._suppressor = suppressor
        self._bus = bus

    async def apply(self, outcome: ProcessOutcome) -> list[str]:
        """Run the cache actions for one outcome. Returns what was done."""
        if outcome.skipped or not outcome.success:
            return []
        if outcome.kind == "orders":
            return await self._order_changed(outcome)
        if outcome.kind == "products":
            return await self._product_changed(outcome)
        if outcome.kind == "customers":
            return await self._customer_changed(outcome)
        logger.warning("No cache policy for outcome kind %s", outcome.kind)
        return []

    async def _order_changed(self, outcome: ProcessOutcome) -> list[str]:
        actions: list[str] = []
        if outcome.user_id is not None:
            await self.caches.purchase_history.invalidate(outcome.user_id)
            actions.append(f"purchase_history:user:{outcome.user_id}")

        if outcome.affected_product_ids:
            refreshed = await self.recomputer.refresh_products(outcome.affected_product_ids)
            actions.append(f"ranking_stats:{refreshed}")

        await self.caches.home_stats.invalidate()
        await self.caches.leaderboard.invalidate()
        actions.extend(["home_stats:cleared", "leaderboard:cleared"])

        if outcome.details.get("rankings_deleted") and outcome.user_id is not None:
            await self.caches.leaderboard_position.invalidate_user(outcome.user_id)
            actions.append(f"leaderboard_position:user:{outcome.user_id}")
            if self._bus is not None:
                self._bus.broadcast_leaderboard_update()

        logger.debug("Order %s cache actions: %s", outcome.order_number, actions)
        return actions

    async def _product_changed(self, outcome: ProcessOutcome) -> list[str]:
        if outcome.action in ("created", "updated") and outcome.product_id and outcome.metadata is not None:
            merged = await self.caches.metadata.update_product(outcome.product_id, outcome.metadata)
            return [f"metadata:product:{outcome.product_id}" + (":merged" if merged else "")]
        if outcome.action == "swept":
            return await self.on_orphan_sweep(outcome.affected_product_ids)
        return []

    async def on_orphan_sweep(self, removed_product_ids: list[str]) -> list[str]:
        """Drop removed products and rebuild the full metadata map from the database."""
        metadata = self.caches.metadata
        for product_id in removed_product_ids:
            await metadata.invalidate_product(product_id)
        async with self._session_factory() as db:
            full = await get_all_metadata(db)
        await metadata.set_all(full)
        logger.info("Rebuilt metadata cache after sweep (%d products, %d removed)", len(full), len(removed_product_ids))
        return ["metadata:rebuilt"]

    async def _customer_changed(self, outcome: ProcessOutcome) -> list[str]:
        if outcome.user_id is None or outcome.action == "no_changes":
            return []
        await self.caches.invalidate_user(outcome.user_id)
        actions = [f"user_caches:user:{outcome.user_id}"]
        if await self._on_top_leaderboard(outcome.user_id):
            await self.caches.leaderboard.invalidate()
            actions.append("leaderboard:cleared")
        return actions

    async def _on_top_leaderboard(self, user_id: int) -> bool:
        """Whether the user appears in the cached all-time top 50, where names are shown."""
        board: Any = await self.caches.leaderboard.get("all_time", 50)
        if not board:
            return False
        entries = board.get("users", board) if isinstance(board, dict) else board
        if not isinstance(entries, list):
            return False
        return any(isinstance(e, dict) and e.get("userId") == user_id for e in entries)

    async def clear_all(self) -> list[str]:
        """Admin clear: every named cache plus the notification suppressor."""
        cleared = await self.caches.clear_all()
        if self._suppressor is not None:
            await self._suppressor.clear_all()
            cleared.append("recent_achievements")
        logger.info("Cleared all caches: %s", ", ".join(cleared))
        return cleared
