"""Tests for rule recurrence resolution.

Tests cover:
- Daily, weekly and monthly next occurrence
- Month-end clamping for days missing from short months
- Timezone-aware resolution and per-user localization
- Rule schedule validation
"""

from datetime import datetime, time, timezone
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest

from app.services.recurrence import (
    RuleValidationError,
    localize_occurrence,
    next_occurrence,
    parse_schedule_time,
    validate_rule_schedule,
)

UTC = timezone.utc


def rule(schedule_type: str, schedule_time: str = "09:00", schedule_day: int | None = None):
    return SimpleNamespace(
        schedule_type=schedule_type,
        schedule_time=schedule_time,
        schedule_day=schedule_day,
    )


# ============================================================================
# Daily
# ============================================================================

class TestDailyRules:
    """Tests for daily rules."""

    def test_time_already_passed_moves_to_tomorrow(self):
        """09:00 daily at 10:00 UTC fires at 09:00 the next day."""
        result = next_occurrence(rule("daily"), datetime(2024, 1, 1, 10, 0, tzinfo=UTC), "UTC")

        assert result == datetime(2024, 1, 2, 9, 0, tzinfo=UTC)

    def test_time_later_today_fires_today(self):
        """09:00 daily at 08:00 UTC fires the same day."""
        result = next_occurrence(rule("daily"), datetime(2024, 1, 1, 8, 0, tzinfo=UTC), "UTC")

        assert result == datetime(2024, 1, 1, 9, 0, tzinfo=UTC)

    def test_exactly_at_fire_time_is_not_included(self):
        """The next occurrence is strictly after now."""
        result = next_occurrence(rule("daily"), datetime(2024, 1, 1, 9, 0, tzinfo=UTC), "UTC")

        assert result == datetime(2024, 1, 2, 9, 0, tzinfo=UTC)

    def test_naive_now_is_treated_as_utc(self):
        """Naive datetimes are read as UTC."""
        result = next_occurrence(rule("daily"), datetime(2024, 1, 1, 10, 0), "UTC")

        assert result == datetime(2024, 1, 2, 9, 0, tzinfo=UTC)

    def test_wall_clock_read_in_rule_timezone(self):
        """09:00 in New York is 14:00 UTC in winter."""
        result = next_occurrence(
            rule("daily"),
            datetime(2024, 1, 1, 10, 0, tzinfo=UTC),
            "America/New_York",
        )

        assert result.astimezone(UTC) == datetime(2024, 1, 1, 14, 0, tzinfo=UTC)

    def test_daylight_saving_transition_keeps_wall_clock(self):
        """09:00 after the spring-forward switch is 13:00 UTC."""
        result = next_occurrence(
            rule("daily"),
            datetime(2024, 3, 9, 15, 0, tzinfo=UTC),
            "America/New_York",
        )

        assert result.astimezone(UTC) == datetime(2024, 3, 10, 13, 0, tzinfo=UTC)


# ============================================================================
# Weekly
# ============================================================================

class TestWeeklyRules:
    """Tests for weekly rules (1=Monday ... 7=Sunday)."""

    def test_wednesday_from_monday(self):
        """A Wednesday rule evaluated on Monday fires that Wednesday."""
        now = datetime(2024, 1, 1, 8, 0, tzinfo=UTC)  # Monday

        result = next_occurrence(rule("weekly", schedule_day=3), now, "UTC")

        assert result.isoweekday() == 3
        assert result >= now
        assert result == datetime(2024, 1, 3, 9, 0, tzinfo=UTC)

    def test_same_weekday_after_fire_time_moves_a_week(self):
        """On Wednesday after 09:00 the next Wednesday is used."""
        now = datetime(2024, 1, 3, 10, 0, tzinfo=UTC)

        result = next_occurrence(rule("weekly", schedule_day=3), now, "UTC")

        assert result == datetime(2024, 1, 10, 9, 0, tzinfo=UTC)

    def test_same_weekday_before_fire_time_fires_today(self):
        now = datetime(2024, 1, 3, 8, 0, tzinfo=UTC)

        result = next_occurrence(rule("weekly", schedule_day=3), now, "UTC")

        assert result == datetime(2024, 1, 3, 9, 0, tzinfo=UTC)

    def test_sunday_is_seven(self):
        """schedule_day 7 resolves to Sunday."""
        now = datetime(2024, 1, 1, 8, 0, tzinfo=UTC)

        result = next_occurrence(rule("weekly", schedule_day=7), now, "UTC")

        assert result == datetime(2024, 1, 7, 9, 0, tzinfo=UTC)
        assert result.isoweekday() == 7

    def test_local_weekday_in_rule_timezone(self):
        """Weekday is evaluated on the local calendar."""
        # Monday 2024-01-01 02:00 UTC is still Sunday evening in New York
        now = datetime(2024, 1, 1, 2, 0, tzinfo=UTC)

        result = next_occurrence(rule("weekly", schedule_day=1), now, "America/New_York")

        assert result.isoweekday() == 1
        assert result.date() == datetime(2024, 1, 1).date()


# ============================================================================
# Monthly
# ============================================================================

class TestMonthlyRules:
    """Tests for monthly rules."""

    def test_day_later_this_month(self):
        now = datetime(2024, 1, 10, 12, 0, tzinfo=UTC)

        result = next_occurrence(rule("monthly", schedule_day=15), now, "UTC")

        assert result == datetime(2024, 1, 15, 9, 0, tzinfo=UTC)

    def test_day_passed_moves_to_next_month(self):
        now = datetime(2024, 1, 20, 12, 0, tzinfo=UTC)

        result = next_occurrence(rule("monthly", schedule_day=15), now, "UTC")

        assert result == datetime(2024, 2, 15, 9, 0, tzinfo=UTC)

    def test_day_31_clamps_to_leap_february(self):
        """Day 31 fires on Feb 29 in a leap year, never rolling into March."""
        now = datetime(2024, 2, 1, 12, 0, tzinfo=UTC)

        result = next_occurrence(rule("monthly", schedule_day=31), now, "UTC")

        assert result == datetime(2024, 2, 29, 9, 0, tzinfo=UTC)

    def test_day_31_clamps_to_february_28(self):
        now = datetime(2023, 2, 10, 12, 0, tzinfo=UTC)

        result = next_occurrence(rule("monthly", schedule_day=31), now, "UTC")

        assert result == datetime(2023, 2, 28, 9, 0, tzinfo=UTC)

    def test_day_31_after_january_31_fires_end_of_february(self):
        now = datetime(2024, 1, 31, 10, 0, tzinfo=UTC)

        result = next_occurrence(rule("monthly", schedule_day=31), now, "UTC")

        assert result == datetime(2024, 2, 29, 9, 0, tzinfo=UTC)

    def test_day_31_clamps_to_april_30(self):
        now = datetime(2024, 4, 1, 0, 0, tzinfo=UTC)

        result = next_occurrence(rule("monthly", schedule_day=31), now, "UTC")

        assert result == datetime(2024, 4, 30, 9, 0, tzinfo=UTC)

    def test_december_rolls_into_january(self):
        now = datetime(2024, 12, 20, 0, 0, tzinfo=UTC)

        result = next_occurrence(rule("monthly", schedule_day=5), now, "UTC")

        assert result == datetime(2025, 1, 5, 9, 0, tzinfo=UTC)


# ============================================================================
# Localization
# ============================================================================

class TestLocalizeOccurrence:
    """Tests for mapping a shared occurrence to a user's timezone."""

    def test_same_wall_clock_in_user_timezone(self):
        occurrence = datetime(2024, 1, 2, 9, 0, tzinfo=ZoneInfo("UTC"))

        result = localize_occurrence(occurrence, "Asia/Tokyo")

        assert result == datetime(2024, 1, 2, 0, 0, tzinfo=UTC)
        assert result.tzinfo == UTC

    def test_offset_style_timezone(self):
        occurrence = datetime(2024, 1, 2, 9, 0, tzinfo=UTC)

        result = localize_occurrence(occurrence, "UTC+05:30")

        assert result == datetime(2024, 1, 2, 3, 30, tzinfo=UTC)

    def test_unknown_timezone_falls_back_to_default(self):
        occurrence = datetime(2024, 1, 2, 9, 0, tzinfo=UTC)

        result = localize_occurrence(occurrence, "Mars/Olympus_Mons")

        assert result == datetime(2024, 1, 2, 9, 0, tzinfo=UTC)


# ============================================================================
# Validation
# ============================================================================

class TestScheduleValidation:
    """Tests for schedule validation."""

    def test_parse_schedule_time(self):
        assert parse_schedule_time("09:30") == time(9, 30)
        assert parse_schedule_time("23:59") == time(23, 59)

    @pytest.mark.parametrize("value", ["9:00", "25:00", "12:60", "noon", "", "12-00"])
    def test_invalid_schedule_time(self, value):
        with pytest.raises(RuleValidationError):
            parse_schedule_time(value)

    def test_valid_schedules(self):
        validate_rule_schedule("daily", "09:00", None)
        validate_rule_schedule("weekly", "09:00", 7)
        validate_rule_schedule("monthly", "09:00", 31)

    def test_daily_rejects_day(self):
        with pytest.raises(RuleValidationError):
            validate_rule_schedule("daily", "09:00", 3)

    @pytest.mark.parametrize("day", [None, 0, 8])
    def test_weekly_needs_weekday(self, day):
        with pytest.raises(RuleValidationError):
            validate_rule_schedule("weekly", "09:00", day)

    @pytest.mark.parametrize("day", [None, 0, 32])
    def test_monthly_needs_day_of_month(self, day):
        with pytest.raises(RuleValidationError):
            validate_rule_schedule("monthly", "09:00", day)

    def test_unknown_schedule_type(self):
        with pytest.raises(RuleValidationError):
            validate_rule_schedule("yearly", "09:00", None)
