"""Streak engine against the database."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from jerkyrank.db.models import ActivityLog, Streak
from jerkyrank.errors import InvalidStreakTypeError
from jerkyrank.gamification.streak_service import ALREADY_COUNTED
from jerkyrank.services import Services
from tests.conftest import create_user


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


async def _seed_streak(services: Services, user_id: int, current: int, last: date) -> None:
    async with services.session_factory() as db:
        db.add(Streak(
            user_id=user_id,
            streak_type="daily_rank",
            current_streak=current,
            longest_streak=current,
            last_activity_date=last,
        ))
        await db.commit()


async def _logs(services: Services, user_id: int) -> list[str]:
    async with services.session_factory() as db:
        result = await db.execute(
            select(ActivityLog.activity_type).where(ActivityLog.user_id == user_id).order_by(ActivityLog.id)
        )
        return [row[0] for row in result.all()]


class TestStreakEngine:
    @pytest.mark.asyncio
    async def test_first_activity_starts_streak(self, services: Services) -> None:
        user = await create_user(services.session_factory)
        result = await services.streaks.update_streak(user.id, "daily_login", _utc(2025, 1, 10, 9))
        assert result.started is True
        assert result.current_streak == 1
        assert await _logs(services, user.id) == ["streak_started"]

    @pytest.mark.asyncio
    async def test_midnight_boundary(self, services: Services) -> None:
        user = await create_user(services.session_factory)
        await _seed_streak(services, user.id, 6, date(2025, 1, 10))

        result = await services.streaks.update_streak(user.id, "daily_rank", _utc(2025, 1, 11, 0, 0, 1))
        assert result.current_streak == 7
        assert result.milestone is True

        again = await services.streaks.update_streak(user.id, "daily_rank", _utc(2025, 1, 11, 23, 59, 59))
        assert again.current_streak == 7
        assert again.message == ALREADY_COUNTED
        assert again.changed is False

        broken = await services.streaks.update_streak(user.id, "daily_rank", _utc(2025, 1, 13, 0, 0, 1))
        assert broken.current_streak == 1
        assert broken.broken is True
        assert broken.previous_streak == 7
        assert broken.longest_streak == 7

        assert await _logs(services, user.id) == ["streak_milestone", "streak_broken"]

    @pytest.mark.asyncio
    async def test_short_streak_breaks_silently(self, services: Services) -> None:
        user = await create_user(services.session_factory)
        await _seed_streak(services, user.id, 2, date(2025, 1, 10))
        result = await services.streaks.update_streak(user.id, "daily_rank", _utc(2025, 1, 15, 12))
        assert result.broken is True
        assert await _logs(services, user.id) == []

    @pytest.mark.asyncio
    async def test_offset_timestamps_use_utc_date(self, services: Services) -> None:
        user = await create_user(services.session_factory)
        await _seed_streak(services, user.id, 3, date(2025, 1, 10))
        # 23:30 on Jan 10 in UTC-5 is already Jan 11 in UTC.
        eastern = timezone(timedelta(hours=-5))
        result = await services.streaks.update_streak(user.id, "daily_rank", datetime(2025, 1, 10, 23, 30, tzinfo=eastern))
        assert result.continued is True
        assert result.current_streak == 4

    @pytest.mark.asyncio
    async def test_cache_refreshed_on_change(self, services: Services) -> None:
        user = await create_user(services.session_factory)
        await services.streaks.update_streak(user.id, "daily_rank", _utc(2025, 1, 10, 9))

        first = await services.streaks.get_user_streaks(user.id)
        assert first[0]["currentStreak"] == 1
        assert await services.caches.streak.get_all(user.id) == first

        await services.streaks.update_streak(user.id, "daily_rank", _utc(2025, 1, 11, 9))
        assert await services.caches.streak.get_all(user.id) is None
        assert (await services.streaks.get_user_streaks(user.id))[0]["currentStreak"] == 2

    @pytest.mark.asyncio
    async def test_invalid_type_rejected_before_any_write(self, services: Services) -> None:
        user = await create_user(services.session_factory)
        with pytest.raises(InvalidStreakTypeError):
            await services.streaks.update_streak(user.id, "daily_jump")
        async with services.session_factory() as db:
            assert (await db.execute(select(Streak))).first() is None
