"""Tests for streak calendar-day helpers and payload shape."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from jerkyrank.errors import InvalidStreakTypeError
from jerkyrank.gamification.streak_service import (
    ALREADY_COUNTED,
    StreakResult,
    calendar_days_between,
    normalize_utc,
    validate_streak_type,
)


class TestNormalizeUtc:
    def test_aware_datetime_converted_to_utc_date(self) -> None:
        # 23:30 in New York on the 1st is already the 2nd in UTC.
        ny = timezone(timedelta(hours=-5))
        assert normalize_utc(datetime(2026, 3, 1, 23, 30, tzinfo=ny)) == date(2026, 3, 2)

    def test_naive_datetime_taken_as_utc(self) -> None:
        assert normalize_utc(datetime(2026, 3, 1, 23, 59)) == date(2026, 3, 1)

    def test_date_passes_through(self) -> None:
        assert normalize_utc(date(2026, 3, 1)) == date(2026, 3, 1)


class TestCalendarDaysBetween:
    def test_next_calendar_day_is_one_even_minutes_apart(self) -> None:
        late = normalize_utc(datetime(2026, 3, 1, 23, 59, tzinfo=timezone.utc))
        early = normalize_utc(datetime(2026, 3, 2, 0, 1, tzinfo=timezone.utc))
        assert calendar_days_between(late, early) == 1

    def test_same_day_is_zero(self) -> None:
        assert calendar_days_between(date(2026, 3, 1), date(2026, 3, 1)) == 0

    def test_month_boundary(self) -> None:
        assert calendar_days_between(date(2026, 2, 28), date(2026, 3, 1)) == 1

    def test_backwards_is_negative(self) -> None:
        assert calendar_days_between(date(2026, 3, 2), date(2026, 3, 1)) == -1


class TestValidateStreakType:
    @pytest.mark.parametrize("streak_type", ["daily_rank", "daily_login"])
    def test_valid(self, streak_type: str) -> None:
        assert validate_streak_type(streak_type) == streak_type

    def test_invalid_names_the_allow_list(self) -> None:
        with pytest.raises(InvalidStreakTypeError, match="daily_rank, daily_login"):
            validate_streak_type("daily_purchase")

    def test_is_a_value_error(self) -> None:
        # The event queue treats ValueError as permanent.
        with pytest.raises(ValueError):
            validate_streak_type("bogus")


class TestStreakResult:
    def test_payload_is_camel_case(self) -> None:
        result = StreakResult(
            user_id=1,
            streak_type="daily_rank",
            current_streak=7,
            longest_streak=7,
            last_activity_date=date(2026, 3, 7),
            continued=True,
            milestone=True,
        )
        assert result.to_payload() == {
            "userId": 1,
            "streakType": "daily_rank",
            "currentStreak": 7,
            "longestStreak": 7,
            "lastActivityDate": "2026-03-07",
            "continued": True,
            "broken": False,
            "previousStreak": None,
        }

    def test_changed(self) -> None:
        result = StreakResult(1, "daily_rank", 1, 1, date(2026, 3, 1))
        assert result.changed is True
        result.message = ALREADY_COUNTED
        assert result.changed is False
