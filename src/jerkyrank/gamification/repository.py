"""Achievement rows as delivered to clients."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jerkyrank.db.models import Achievement, UserAchievement


async def recent_user_achievements(
    db: AsyncSession,
    user_id: int,
    window: timedelta = timedelta(minutes=5),
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Achievements the user earned inside ``window``, newest first."""
    since = (now or datetime.now(timezone.utc)) - window
    result = await db.execute(
        select(UserAchievement, Achievement)
        .join(Achievement, Achievement.id == UserAchievement.achievement_id)
        .where(UserAchievement.user_id == user_id, UserAchievement.earned_at >= since)
        .order_by(UserAchievement.earned_at.desc())
    )
    return [
        {
            "code": achievement.code,
            "name": achievement.name,
            "description": achievement.description,
            "tier": earned.tier or achievement.tier,
            "icon": achievement.icon,
            "points": achievement.points,
            "earnedAt": earned.earned_at.isoformat() if earned.earned_at else None,
        }
        for earned, achievement in result.all()
    ]
