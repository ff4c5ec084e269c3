"""Tests for the typed named caches."""

from __future__ import annotations

import json

import pytest

from jerkyrank.cache.named import NamedCaches
from jerkyrank.cache.substrate import CacheSubstrate


@pytest.fixture
def caches() -> NamedCaches:
    return NamedCaches(CacheSubstrate(None))


def _meta(product_id: str, title: str) -> dict[str, str]:
    return {"shopify_product_id": product_id, "title": title}


class TestProductMetadataCache:
    @pytest.mark.asyncio
    async def test_update_product_merges_into_cached_map(self, caches: NamedCaches) -> None:
        await caches.metadata.set_all({"1": _meta("1", "Beef"), "2": _meta("2", "Turkey")})
        assert await caches.metadata.update_product("2", _meta("2", "Smoked Turkey")) is True

        full = await caches.metadata.get_all()
        assert full == {"1": _meta("1", "Beef"), "2": _meta("2", "Smoked Turkey")}
        assert await caches.metadata.get_product("2") == _meta("2", "Smoked Turkey")

    @pytest.mark.asyncio
    async def test_update_product_without_map_writes_single_key(self, caches: NamedCaches) -> None:
        assert await caches.metadata.update_product("7", _meta("7", "Elk")) is False
        assert await caches.metadata.get_all() is None
        assert await caches.metadata.get_product("7") == _meta("7", "Elk")

    @pytest.mark.asyncio
    async def test_get_product_falls_back_to_map(self, caches: NamedCaches) -> None:
        await caches.metadata.set_all({"1": _meta("1", "Beef")})
        assert await caches.metadata.get_product("1") == _meta("1", "Beef")
        assert await caches.metadata.get_product("missing") is None

    @pytest.mark.asyncio
    async def test_set_all_records_timestamp(self, caches: NamedCaches) -> None:
        await caches.metadata.set_all({})
        assert isinstance(await caches.metadata.get_timestamp(), float)


class TestRankingStatsCache:
    @pytest.mark.asyncio
    async def test_merge_leaves_untouched_entries_identical(self, caches: NamedCaches) -> None:
        untouched = {"count": 3, "avg_rank": 1.5, "distribution": {"count_1st": 2}}
        await caches.ranking_stats.set({"P1": {"count": 1}, "P9": untouched})

        ok = await caches.ranking_stats.update_products({"P1": {"count": 2}}, removed=["P2"])
        assert ok is True
        current = await caches.ranking_stats.get()
        assert current["P1"] == {"count": 2}
        assert json.dumps(current["P9"], sort_keys=True) == json.dumps(untouched, sort_keys=True)

    @pytest.mark.asyncio
    async def test_removed_products_dropped(self, caches: NamedCaches) -> None:
        await caches.ranking_stats.set({"P1": {"count": 1}, "P2": {"count": 1}})
        await caches.ranking_stats.update_products({}, removed=["P2"])
        assert set(await caches.ranking_stats.get()) == {"P1"}

    @pytest.mark.asyncio
    async def test_no_map_is_a_no_op(self, caches: NamedCaches) -> None:
        assert await caches.ranking_stats.update_products({"P1": {"count": 1}}) is False
        assert await caches.ranking_stats.get() is None

    @pytest.mark.asyncio
    async def test_summary(self, caches: NamedCaches) -> None:
        await caches.ranking_stats.set({"P1": {"count": 1}})
        summary = await caches.ranking_stats.get_stats_summary()
        assert summary["has_data"] is True
        assert summary["item_count"] == 1
        assert summary["ttl_seconds"] is None


class TestLeaderboardCache:
    @pytest.mark.asyncio
    async def test_invalidate_one_period(self, caches: NamedCaches) -> None:
        await caches.leaderboard.set("all_time", 5, [1])
        await caches.leaderboard.set("week", 5, [2])
        await caches.leaderboard.invalidate("week")
        assert await caches.leaderboard.get("all_time", 5) == [1]
        assert await caches.leaderboard.get("week", 5) is None

    @pytest.mark.asyncio
    async def test_invalidate_everything(self, caches: NamedCaches) -> None:
        await caches.leaderboard.set("all_time", 5, [1])
        await caches.leaderboard.set("month", 77, [2])
        await caches.leaderboard.invalidate()
        assert await caches.leaderboard.get("all_time", 5) is None
        assert await caches.leaderboard.get("month", 77) is None


class TestUserCaches:
    @pytest.mark.asyncio
    async def test_invalidate_user_is_scoped(self, caches: NamedCaches) -> None:
        for user_id in (1, 2):
            await caches.user_profile.set(user_id, {"id": user_id})
            await caches.journey.set(user_id, {"step": 1})
            await caches.guidance.set(user_id, "rank", {"msg": "hi"})
            await caches.streak.set_all(user_id, [])
            await caches.leaderboard_position.set(user_id, "week", 4)

        await caches.invalidate_user(1)

        assert await caches.user_profile.get(1) is None
        assert await caches.journey.get(1) is None
        assert await caches.guidance.get(1, "rank") is None
        assert await caches.streak.get_all(1) is None
        assert await caches.leaderboard_position.get(1, "week") is None
        assert await caches.user_profile.get(2) == {"id": 2}
        assert await caches.leaderboard_position.get(2, "week") == 4

    @pytest.mark.asyncio
    async def test_purchase_history_per_user(self, caches: NamedCaches) -> None:
        await caches.purchase_history.set(1, ["P1"])
        await caches.purchase_history.set(2, ["P2"])
        await caches.purchase_history.invalidate(1)
        assert await caches.purchase_history.get(1) is None
        assert await caches.purchase_history.get(2) == ["P2"]

    @pytest.mark.asyncio
    async def test_guidance_set_all(self, caches: NamedCaches) -> None:
        await caches.guidance.set_all(3, {"rank": {"a": 1}, "community": {"b": 2}})
        assert await caches.guidance.get(3, "community") == {"b": 2}
        assert await caches.guidance.get(3, "all") == {"rank": {"a": 1}, "community": {"b": 2}}


class TestEncoding:
    @pytest.mark.asyncio
    async def test_corrupt_entry_is_a_miss(self, caches: NamedCaches) -> None:
        await caches.substrate.set("home_stats", "stats", "{not json")
        assert await caches.home_stats.get() is None
        # The corrupt entry is removed.
        assert await caches.substrate.get("home_stats", "stats") is None

    @pytest.mark.asyncio
    async def test_clear_all_names_every_cache(self, caches: NamedCaches) -> None:
        await caches.home_stats.set({"x": 1})
        cleared = await caches.clear_all()
        assert "home_stats" in cleared
        assert "ranking_stats" in cleared
        assert len(cleared) == len(caches.all())
        assert await caches.home_stats.get() is None
