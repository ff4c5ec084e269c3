"""Tests for duplicate achievement suppression."""

from __future__ import annotations

import pytest
from fakeredis import aioredis as fake_aioredis

from jerkyrank.cache.substrate import CacheSubstrate
from jerkyrank.gamification.recent_achievements import RecentAchievementTracker, achievement_signature

ORIGINAL_MASTER = {"code": "original_master", "name": "Original Master", "tier": "diamond"}


class TestSignature:
    def test_code_and_tier(self) -> None:
        assert achievement_signature(ORIGINAL_MASTER) == "original_master_diamond"

    def test_untiered(self) -> None:
        assert achievement_signature({"code": "first_rank"}) == "first_rank_base"

    def test_name_and_new_tier_fallbacks(self) -> None:
        assert achievement_signature({"name": "Explorer", "newTier": "gold"}) == "Explorer_gold"


class TestFilter:
    @pytest.fixture
    def tracker(self) -> RecentAchievementTracker:
        return RecentAchievementTracker(CacheSubstrate(None))

    @pytest.mark.asyncio
    async def test_first_claim_wins(self, tracker: RecentAchievementTracker) -> None:
        first = await tracker.filter(42, [ORIGINAL_MASTER])
        assert first.kept == [ORIGINAL_MASTER]

        for _ in range(4):
            again = await tracker.filter(42, [ORIGINAL_MASTER])
            assert again.kept == []
            assert again.skipped == [ORIGINAL_MASTER]

    @pytest.mark.asyncio
    async def test_new_tier_is_new_signature(self, tracker: RecentAchievementTracker) -> None:
        await tracker.filter(42, [ORIGINAL_MASTER])
        upgraded = {**ORIGINAL_MASTER, "tier": "legend"}
        assert (await tracker.filter(42, [upgraded])).kept == [upgraded]

    @pytest.mark.asyncio
    async def test_scoped_per_user(self, tracker: RecentAchievementTracker) -> None:
        await tracker.filter(42, [ORIGINAL_MASTER])
        assert (await tracker.filter(43, [ORIGINAL_MASTER])).kept == [ORIGINAL_MASTER]

    @pytest.mark.asyncio
    async def test_duplicates_inside_one_batch(self, tracker: RecentAchievementTracker) -> None:
        result = await tracker.filter(42, [ORIGINAL_MASTER, dict(ORIGINAL_MASTER)])
        assert len(result.kept) == 1
        assert len(result.skipped) == 1

    @pytest.mark.asyncio
    async def test_clear_user(self, tracker: RecentAchievementTracker) -> None:
        await tracker.filter(42, [ORIGINAL_MASTER])
        await tracker.filter(43, [ORIGINAL_MASTER])
        await tracker.clear_user(42)
        assert await tracker.was_recently_emitted(42, ORIGINAL_MASTER) is False
        assert await tracker.was_recently_emitted(43, ORIGINAL_MASTER) is True

    @pytest.mark.asyncio
    async def test_clear_all(self, tracker: RecentAchievementTracker) -> None:
        await tracker.filter(42, [ORIGINAL_MASTER])
        await tracker.clear_all()
        assert (await tracker.filter(42, [ORIGINAL_MASTER])).kept == [ORIGINAL_MASTER]


class TestSharedAcrossProcesses:
    @pytest.mark.asyncio
    async def test_claim_is_visible_to_other_tracker(self) -> None:
        client = fake_aioredis.FakeRedis(decode_responses=True)
        first = CacheSubstrate(client)
        second = CacheSubstrate(client)
        await first.connect(ready_timeout=1.0)
        await second.connect(ready_timeout=1.0)

        kept_a = (await RecentAchievementTracker(first).filter(42, [ORIGINAL_MASTER])).kept
        kept_b = (await RecentAchievementTracker(second).filter(42, [ORIGINAL_MASTER])).kept
        assert len(kept_a) + len(kept_b) == 1
        assert 0 < await client.ttl("recentAchievements:user_42:original_master_diamond") <= 300
        await client.aclose()
