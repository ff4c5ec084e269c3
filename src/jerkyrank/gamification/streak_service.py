"""Streak tracking: calendar-day state machine per user and streak type."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jerkyrank.db.models import ActivityLog, Streak
from jerkyrank.db.upsert import insert_for
from jerkyrank.errors import InvalidStreakTypeError

if TYPE_CHECKING:
    from jerkyrank.cache.named import StreakCache
    from jerkyrank.ws.manager import NotificationBus

logger = logging.getLogger(__name__)

VALID_STREAK_TYPES = ["daily_rank", "daily_login"]

MILESTONE_INTERVAL = 7
BROKEN_LOG_MIN_STREAK = 3
ALREADY_COUNTED = "Already counted today"


def validate_streak_type(streak_type: str) -> str:
    """Fail fast on anything outside the allow-list."""
    if streak_type not in VALID_STREAK_TYPES:
        raise InvalidStreakTypeError(streak_type, VALID_STREAK_TYPES)
    return streak_type


def normalize_utc(ts: datetime | date) -> date:
    """Calendar date in UTC. Naive datetimes are taken to be UTC already."""
    if isinstance(ts, datetime):
        if ts.tzinfo is not None:
            ts = ts.astimezone(timezone.utc)
        return ts.date()
    return ts


def calendar_days_between(earlier: date, later: date) -> int:
    """Difference of calendar dates, not of elapsed 24-hour windows."""
    return (later - earlier).days


@dataclass
class StreakResult:
    """Outcome of one activity against one streak."""

    user_id: int
    streak_type: str
    current_streak: int
    longest_streak: int
    last_activity_date: date
    started: bool = False
    continued: bool = False
    broken: bool = False
    milestone: bool = False
    previous_streak: int | None = None
    message: str | None = None
    logged: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.message != ALREADY_COUNTED

    def to_payload(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "streakType": self.streak_type,
            "currentStreak": self.current_streak,
            "longestStreak": self.longest_streak,
            "lastActivityDate": self.last_activity_date.isoformat(),
            "continued": self.continued,
            "broken": self.broken,
            "previousStreak": self.previous_streak,
        }


def _log(db: AsyncSession, user_id: int, activity_type: str, data: dict[str, Any]) -> None:
    db.add(ActivityLog(user_id=user_id, activity_type=activity_type, activity_data=data, is_public=True))


async def _load(db: AsyncSession, user_id: int, streak_type: str) -> Streak | None:
    result = await db.execute(
        select(Streak)
        .where(Streak.user_id == user_id, Streak.streak_type == streak_type)
        .with_for_update()
    )
    return result.scalar_one_or_none()


async def record_activity(
    db: AsyncSession,
    user_id: int,
    streak_type: str,
    at: datetime | None = None,
) -> StreakResult:
    """Apply one activity to a user's streak. The caller commits.

    Same calendar day: no-op. Next day: increment, with a milestone log on
    every multiple of 7. Any larger gap: reset to 1, logging the break when
    the old streak was at least 3.
    """
    validate_streak_type(streak_type)
    today = normalize_utc(at or datetime.now(timezone.utc))

    streak = await _load(db, user_id, streak_type)
    if streak is None:
        stmt = insert_for(db, Streak).values(
            user_id=user_id,
            streak_type=streak_type,
            current_streak=1,
            longest_streak=1,
            last_activity_date=today,
            updated_at=datetime.now(timezone.utc),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["user_id", "streak_type"])
        inserted = await db.execute(stmt)
        if inserted.rowcount:
            _log(db, user_id, "streak_started", {"streakType": streak_type, "currentStreak": 1})
            logger.info("Started %s streak for user %d", streak_type, user_id)
            return StreakResult(
                user_id=user_id,
                streak_type=streak_type,
                current_streak=1,
                longest_streak=1,
                last_activity_date=today,
                started=True,
                logged=["streak_started"],
            )
        # Lost an insert race to a redelivered job; continue against the stored row.
        streak = await _load(db, user_id, streak_type)
        if streak is None:
            raise RuntimeError(f"{streak_type} streak for user {user_id} vanished after a conflicting insert")

    result = StreakResult(
        user_id=user_id,
        streak_type=streak_type,
        current_streak=streak.current_streak,
        longest_streak=streak.longest_streak,
        last_activity_date=streak.last_activity_date,
    )

    days = calendar_days_between(streak.last_activity_date, today)
    if days <= 0:
        result.message = ALREADY_COUNTED
        return result

    now = datetime.now(timezone.utc)
    if days == 1:
        streak.current_streak += 1
        streak.longest_streak = max(streak.longest_streak, streak.current_streak)
        result.continued = True
        if streak.current_streak % MILESTONE_INTERVAL == 0:
            result.milestone = True
            _log(db, user_id, "streak_milestone", {
                "streakType": streak_type,
                "currentStreak": streak.current_streak,
                "milestone": f"{streak.current_streak} days",
            })
            result.logged.append("streak_milestone")
    else:
        previous = streak.current_streak
        result.broken = True
        result.previous_streak = previous
        if previous >= BROKEN_LOG_MIN_STREAK:
            _log(db, user_id, "streak_broken", {
                "streakType": streak_type,
                "previousStreak": previous,
                "daysMissed": days - 1,
            })
            result.logged.append("streak_broken")
        streak.current_streak = 1

    streak.last_activity_date = today
    streak.updated_at = now
    await db.flush()

    result.current_streak = streak.current_streak
    result.longest_streak = streak.longest_streak
    result.last_activity_date = today
    return result


async def get_streaks(db: AsyncSession, user_id: int) -> list[dict[str, Any]]:
    rows = await db.execute(select(Streak).where(Streak.user_id == user_id).order_by(Streak.streak_type))
    return [
        {
            "streakType": s.streak_type,
            "currentStreak": s.current_streak,
            "longestStreak": s.longest_streak,
            "lastActivityDate": s.last_activity_date.isoformat(),
        }
        for s in rows.scalars()
    ]


class StreakEngine:
    """Commits streak changes, then refreshes caches and notifies the user."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        streak_cache: StreakCache,
        bus: NotificationBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._cache = streak_cache
        self._bus = bus
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def update_streak(self, user_id: int, streak_type: str, at: datetime | None = None) -> StreakResult:
        validate_streak_type(streak_type)
        async with self._session_factory() as db:
            result = await record_activity(db, user_id, streak_type, at or self._clock())
            await db.commit()

        if result.changed:
            await self._cache.invalidate_user(user_id)
            if self._bus is not None:
                self._bus.broadcast_streak_update(user_id, result.to_payload())
        return result

    async def get_user_streaks(self, user_id: int) -> list[dict[str, Any]]:
        cached = await self._cache.get_all(user_id)
        if cached is not None:
            return cached
        async with self._session_factory() as db:
            streaks = await get_streaks(db, user_id)
        await self._cache.set_all(user_id, streaks)
        return streaks
