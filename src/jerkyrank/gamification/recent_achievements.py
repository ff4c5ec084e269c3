"""Suppress duplicate achievement notifications.

A burst of ranking writes re-evaluates the same achievements many times.
Each (user, code, tier) signature is claimed for five minutes; only the
first claim inside that window is delivered.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from jerkyrank.cache.substrate import CacheSubstrate

logger = logging.getLogger(__name__)

NAMESPACE = "recentAchievements"
TTL_SECONDS = 5 * 60


def achievement_signature(achievement: dict[str, Any]) -> str:
    """``<code>_<tier>``, with ``base`` for untiered achievements."""
    code = achievement.get("code") or achievement.get("name") or "unknown"
    tier = achievement.get("tier") or achievement.get("newTier") or "base"
    return f"{code}_{tier}"


@dataclass
class FilterResult:
    kept: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)


class RecentAchievementTracker:
    """Per-user set of recently emitted achievement signatures."""

    def __init__(self, substrate: CacheSubstrate, ttl: int = TTL_SECONDS) -> None:
        self.substrate = substrate
        self.ttl = ttl

    @staticmethod
    def _user_namespace(user_id: int) -> str:
        return f"{NAMESPACE}:user_{user_id}"

    async def was_recently_emitted(self, user_id: int, achievement: dict[str, Any]) -> bool:
        value = await self.substrate.get(self._user_namespace(user_id), achievement_signature(achievement))
        return value is not None

    async def mark_as_emitted(self, user_id: int, achievement: dict[str, Any]) -> bool:
        """Claim the signature. Returns False if it was already claimed."""
        return await self.substrate.add(
            self._user_namespace(user_id), achievement_signature(achievement), "1", self.ttl
        )

    async def filter(self, user_id: int, achievements: list[dict[str, Any]]) -> FilterResult:
        """Split achievements into those to deliver and those seen recently.

        Each signature is claimed with a set-if-absent, so concurrent
        callers (in this process or another) cannot both keep it. Only
        kept signatures are written.
        """
        result = FilterResult()
        for achievement in achievements:
            if await self.mark_as_emitted(user_id, achievement):
                result.kept.append(achievement)
            else:
                result.skipped.append(achievement)

        if result.skipped:
            logger.info(
                "Suppressed %d duplicate achievement(s) for user %s: %s",
                len(result.skipped),
                user_id,
                [achievement_signature(a) for a in result.skipped],
            )
        return result

    async def clear_user(self, user_id: int) -> None:
        await self.substrate.clear(self._user_namespace(user_id))

    async def clear_all(self) -> int:
        return await self.substrate.clear(NAMESPACE)
