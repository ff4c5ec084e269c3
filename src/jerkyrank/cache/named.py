"""Typed caches on top of the substrate.

Each cache owns a namespace, a TTL policy and its key shapes. Values are
JSON-encoded here; the substrate only sees strings. Read failures and
corrupt entries behave as misses.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterable
from typing import Any

from jerkyrank.cache.substrate import CacheSubstrate
from jerkyrank.gamification.streak_service import VALID_STREAK_TYPES

logger = logging.getLogger(__name__)

LEADERBOARD_PERIODS = ("all_time", "week", "month")
LEADERBOARD_LIMITS = (5, 10, 50)
GUIDANCE_PAGES = ("general", "rank", "community", "products", "coinbook")


class NamedCache:
    """Base class: JSON encoding plus whole-namespace invalidation."""

    name: str = ""
    namespace: str = ""
    ttl: int | None = None

    def __init__(self, substrate: CacheSubstrate) -> None:
        self.substrate = substrate

    async def _get_json(self, key: str) -> Any:  # noqa: ANN401
        raw = await self.substrate.get(self.namespace, key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Corrupt %s cache entry %s, treating as miss", self.name, key)
            await self.substrate.delete(self.namespace, key)
            return None

    async def _set_json(self, key: str, value: Any, ttl: int | None = None) -> bool:  # noqa: ANN401
        try:
            raw = json.dumps(value, default=str)
        except (TypeError, ValueError):
            logger.warning("Unserializable value for %s cache key %s", self.name, key, exc_info=True)
            return False
        return await self.substrate.set(self.namespace, key, raw, ttl if ttl is not None else self.ttl)

    async def _delete(self, *keys: str) -> None:
        for key in keys:
            await self.substrate.delete(self.namespace, key)

    async def invalidate(self) -> None:
        """Drop every entry of this cache."""
        removed = await self.substrate.clear(self.namespace)
        logger.info("Cleared %s cache (%d keys)", self.name, removed)

    def get_stats(self) -> dict[str, Any]:
        return {"name": self.name, "namespace": self.namespace, "ttl_seconds": self.ttl, "tier": self.substrate.tier}


class UserScopedCache(NamedCache):
    """One entry per user under ``user:<id>``."""

    @staticmethod
    def user_key(user_id: int) -> str:
        return f"user:{user_id}"

    async def get(self, user_id: int) -> Any:  # noqa: ANN401
        return await self._get_json(self.user_key(user_id))

    async def set(self, user_id: int, value: Any) -> bool:  # noqa: ANN401
        return await self._set_json(self.user_key(user_id), value)

    async def invalidate_user(self, user_id: int) -> None:
        await self._delete(self.user_key(user_id))


# ---------------------------------------------------------------------------
# Product caches
# ---------------------------------------------------------------------------


class ProductMetadataCache(NamedCache):
    """Full metadata map plus per-product entries.

    Product webhooks update a single product; the full map is only rebuilt
    when it expires or an admin clears it.
    """

    name = "metadata"
    namespace = "metadata"
    ttl = 30 * 60

    ALL_KEY = "all_metadata"
    TIMESTAMP_KEY = "timestamp"

    @staticmethod
    def product_key(product_id: str) -> str:
        return f"product:{product_id}"

    async def get_all(self) -> dict[str, Any] | None:
        return await self._get_json(self.ALL_KEY)

    async def set_all(self, metadata_map: dict[str, Any]) -> bool:
        ok = await self._set_json(self.ALL_KEY, metadata_map)
        await self._set_json(self.TIMESTAMP_KEY, time.time())
        return ok

    async def get_product(self, product_id: str) -> dict[str, Any] | None:
        cached = await self._get_json(self.product_key(product_id))
        if cached is not None:
            return cached
        full = await self.get_all()
        if full is not None:
            return full.get(product_id)
        return None

    async def update_product(self, product_id: str, metadata: dict[str, Any]) -> bool:
        """Write one product without touching any other entry.

        The full map is merged in place only when it is already cached;
        otherwise the next full load picks the row up from the database.
        """
        await self._set_json(self.product_key(product_id), metadata)
        full = await self.get_all()
        if full is None:
            return False
        full[product_id] = metadata
        await self._set_json(self.ALL_KEY, full)
        return True

    async def invalidate_product(self, product_id: str) -> None:
        await self._delete(self.product_key(product_id))

    async def get_timestamp(self) -> float | None:
        return await self._get_json(self.TIMESTAMP_KEY)


class RankingStatsCache(NamedCache):
    """Per-product ranking aggregates.

    No TTL: the order pipeline keeps it current by merging recomputed
    entries, and only the admin clear drops it.
    """

    name = "ranking_stats"
    namespace = "ranking_stats"
    ttl = None

    ALL_KEY = "all_stats"
    TIMESTAMP_KEY = "timestamp"

    async def get(self) -> dict[str, Any] | None:
        return await self._get_json(self.ALL_KEY)

    async def set(self, stats: dict[str, Any]) -> bool:
        ok = await self._set_json(self.ALL_KEY, stats)
        await self._set_json(self.TIMESTAMP_KEY, time.time())
        return ok

    async def update_products(self, stats: dict[str, Any], removed: Iterable[str] = ()) -> bool:
        """Merge recomputed entries; drop products that no longer have rankings.

        Returns False when there is no cached map to merge into.
        """
        current = await self.get()
        if current is None:
            return False
        for product_id in removed:
            current.pop(product_id, None)
        current.update(stats)
        ok = await self._set_json(self.ALL_KEY, current)
        await self._set_json(self.TIMESTAMP_KEY, time.time())
        return ok

    async def get_stats_summary(self) -> dict[str, Any]:
        current = await self.get()
        ts = await self._get_json(self.TIMESTAMP_KEY)
        return {
            **self.get_stats(),
            "has_data": current is not None,
            "item_count": len(current) if current else 0,
            "age_seconds": round(time.time() - ts) if ts else None,
        }


# ---------------------------------------------------------------------------
# Leaderboards & home
# ---------------------------------------------------------------------------


class LeaderboardCache(NamedCache):
    name = "leaderboard"
    namespace = "leaderboard"
    ttl = 5 * 60

    @staticmethod
    def key(period: str, limit: int) -> str:
        return f"{period}:{limit}"

    async def get(self, period: str = "all_time", limit: int = 50) -> Any:  # noqa: ANN401
        return await self._get_json(self.key(period, limit))

    async def set(self, period: str, limit: int, data: Any) -> bool:  # noqa: ANN401
        return await self._set_json(self.key(period, limit), data)

    async def invalidate(self, period: str | None = None) -> None:  # type: ignore[override]
        """Drop one period's standard limits, or the whole namespace."""
        if period is None:
            await super().invalidate()
            return
        await self._delete(*(self.key(period, limit) for limit in LEADERBOARD_LIMITS))


class LeaderboardPositionCache(NamedCache):
    name = "leaderboard_position"
    namespace = "leaderboard_position"
    ttl = 5 * 60

    @staticmethod
    def key(user_id: int, period: str) -> str:
        return f"user_{user_id}_{period}"

    async def get(self, user_id: int, period: str = "all_time") -> Any:  # noqa: ANN401
        return await self._get_json(self.key(user_id, period))

    async def set(self, user_id: int, period: str, position: Any) -> bool:  # noqa: ANN401
        return await self._set_json(self.key(user_id, period), position)

    async def invalidate_user(self, user_id: int) -> None:
        await self._delete(*(self.key(user_id, period) for period in LEADERBOARD_PERIODS))


class HomeStatsCache(NamedCache):
    name = "home_stats"
    namespace = "home_stats"
    ttl = 5 * 60

    KEY = "stats"

    async def get(self) -> Any:  # noqa: ANN401
        return await self._get_json(self.KEY)

    async def set(self, stats: Any) -> bool:  # noqa: ANN401
        return await self._set_json(self.KEY, stats)


# ---------------------------------------------------------------------------
# Per-user caches
# ---------------------------------------------------------------------------


class PurchaseHistoryCache(UserScopedCache):
    """Purchased product ids per user."""

    name = "purchase_history"
    namespace = "purchase_history"
    ttl = 30 * 60

    async def invalidate(self, user_id: int | None = None) -> None:  # type: ignore[override]
        if user_id is None:
            await super().invalidate()
            return
        await self.invalidate_user(user_id)


class UserProfileCache(UserScopedCache):
    name = "user_profile"
    namespace = "user_profile"
    ttl = 10 * 60


class UserClassificationCache(UserScopedCache):
    name = "user_classification"
    namespace = "user_classification"
    ttl = 10 * 60


class JourneyCache(UserScopedCache):
    name = "journey"
    namespace = "journey"
    ttl = 10 * 60


class GuidanceCache(NamedCache):
    """Guidance messages per user and page context."""

    name = "guidance"
    namespace = "guidance"
    ttl = 5 * 60

    @staticmethod
    def key(user_id: int, page: str) -> str:
        return f"user:{user_id}:{page}"

    async def get(self, user_id: int, page: str = "general") -> Any:  # noqa: ANN401
        return await self._get_json(self.key(user_id, page))

    async def set(self, user_id: int, page: str, guidance: Any) -> bool:  # noqa: ANN401
        return await self._set_json(self.key(user_id, page), guidance)

    async def set_all(self, user_id: int, guidance_by_page: dict[str, Any]) -> bool:
        ok = await self._set_json(self.key(user_id, "all"), guidance_by_page)
        for page, guidance in guidance_by_page.items():
            await self._set_json(self.key(user_id, page), guidance)
        return ok

    async def invalidate_user(self, user_id: int) -> None:
        await self._delete(self.key(user_id, "all"), *(self.key(user_id, page) for page in GUIDANCE_PAGES))


class StreakCache(NamedCache):
    name = "streak"
    namespace = "streak"
    ttl = 10 * 60

    @staticmethod
    def key(user_id: int, streak_type: str = "all") -> str:
        return f"user:{user_id}:{streak_type}"

    async def get_all(self, user_id: int) -> Any:  # noqa: ANN401
        return await self._get_json(self.key(user_id))

    async def set_all(self, user_id: int, streaks: Any) -> bool:  # noqa: ANN401
        return await self._set_json(self.key(user_id), streaks)

    async def get(self, user_id: int, streak_type: str) -> Any:  # noqa: ANN401
        return await self._get_json(self.key(user_id, streak_type))

    async def set(self, user_id: int, streak_type: str, streak: Any) -> bool:  # noqa: ANN401
        return await self._set_json(self.key(user_id, streak_type), streak)

    async def invalidate_user(self, user_id: int) -> None:
        await self._delete(self.key(user_id), *(self.key(user_id, t) for t in VALID_STREAK_TYPES))


class AchievementCache(NamedCache):
    """Achievement definitions, shared by every user."""

    name = "achievements"
    namespace = "achievements"
    ttl = 10 * 60

    KEY = "definitions"

    async def get(self) -> Any:  # noqa: ANN401
        return await self._get_json(self.KEY)

    async def set(self, definitions: Any) -> bool:  # noqa: ANN401
        return await self._set_json(self.KEY, definitions)


class NamedCaches:
    """Every named cache the core uses, built over one substrate."""

    def __init__(self, substrate: CacheSubstrate) -> None:
        self.substrate = substrate
        self.metadata = ProductMetadataCache(substrate)
        self.ranking_stats = RankingStatsCache(substrate)
        self.leaderboard = LeaderboardCache(substrate)
        self.leaderboard_position = LeaderboardPositionCache(substrate)
        self.home_stats = HomeStatsCache(substrate)
        self.purchase_history = PurchaseHistoryCache(substrate)
        self.user_profile = UserProfileCache(substrate)
        self.user_classification = UserClassificationCache(substrate)
        self.guidance = GuidanceCache(substrate)
        self.journey = JourneyCache(substrate)
        self.streak = StreakCache(substrate)
        self.achievements = AchievementCache(substrate)

    def all(self) -> list[NamedCache]:
        return [
            self.metadata,
            self.ranking_stats,
            self.leaderboard,
            self.leaderboard_position,
            self.home_stats,
            self.purchase_history,
            self.user_profile,
            self.user_classification,
            self.guidance,
            self.journey,
            self.streak,
            self.achievements,
        ]

    async def invalidate_user(self, user_id: int) -> None:
        """Drop every per-user entry for one user."""
        await self.user_profile.invalidate_user(user_id)
        await self.user_classification.invalidate_user(user_id)
        await self.guidance.invalidate_user(user_id)
        await self.journey.invalidate_user(user_id)
        await self.streak.invalidate_user(user_id)
        await self.leaderboard_position.invalidate_user(user_id)

    async def clear_all(self) -> list[str]:
        """Clear every namespace. Returns the names of the cleared caches."""
        cleared: list[str] = []
        for cache in self.all():
            await NamedCache.invalidate(cache)
            cleared.append(cache.name)
        return cleared

    def get_stats(self) -> dict[str, Any]:
        return {
            "substrate": self.substrate.stats(),
            "caches": [cache.get_stats() for cache in self.all()],
        }
