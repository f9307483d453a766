"""Recurrence resolution for notification rules.

Pure functions: a rule plus "now" gives the next fire instant. Rules are
read duck-typed (``schedule_type``, ``schedule_time``, ``schedule_day``)
so both ``NotificationRule`` rows and plain test doubles work.

Weekly ``schedule_day`` uses ISO numbering (1=Monday ... 7=Sunday).
Monthly days beyond the end of a short month are clamped to that
month's last day, so a rule for the 31st fires on Feb 28/29, Apr 30, etc.
"""

import calendar
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any

from app.models.notification import ScheduleType
from app.utils.time import ensure_utc, resolve_timezone


class RuleValidationError(ValueError):
    """A rule definition that can never produce a valid delivery."""


def parse_schedule_time(value: str) -> time:
    """Parse ``HH:MM`` into a ``time``.

    Raises:
        RuleValidationError: If the value is not a valid 24h time
    """
    try:
        hours_str, minutes_str = value.strip().split(":")
        if len(hours_str) != 2 or len(minutes_str) != 2:
            raise ValueError(value)
        return time(int(hours_str), int(minutes_str))
    except (AttributeError, ValueError):
        raise RuleValidationError(f"schedule_time must be HH:MM, got {value!r}") from None


def validate_rule_schedule(
    schedule_type: ScheduleType | str,
    schedule_time: str,
    schedule_day: int | None,
) -> None:
    """Check that a schedule definition is complete and in range.

    Raises:
        RuleValidationError: Describing the first problem found
    """
    try:
        kind = ScheduleType(schedule_type)
    except ValueError:
        raise RuleValidationError(f"Unknown schedule_type {schedule_type!r}") from None

    parse_schedule_time(schedule_time)

    if kind == ScheduleType.DAILY:
        if schedule_day is not None:
            raise RuleValidationError("schedule_day must be empty for daily rules")
    elif kind == ScheduleType.WEEKLY:
        if schedule_day is None or not 1 <= schedule_day <= 7:
            raise RuleValidationError("Weekly rules need schedule_day between 1 (Mon) and 7 (Sun)")
    elif schedule_day is None or not 1 <= schedule_day <= 31:
        raise RuleValidationError("Monthly rules need schedule_day between 1 and 31")


def _zone(tz: str | tzinfo | None) -> tzinfo:
    if tz is None or isinstance(tz, str):
        return resolve_timezone(tz)
    return tz


def _clamped_day(year: int, month: int, day: int) -> date:
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last))


def _next_month(year: int, month: int) -> tuple[int, int]:
    return (year + 1, 1) if month == 12 else (year, month + 1)


def next_occurrence(rule: Any, now: datetime, tz: str | tzinfo | None = None) -> datetime:
    """Next instant strictly after ``now`` at which ``rule`` fires.

    Args:
        rule: Object with schedule_type, schedule_time, schedule_day
        now: Reference instant (naive values are treated as UTC)
        tz: Timezone the rule's wall-clock time is read in (default tz if None)

    Returns:
        Aware datetime expressed in ``tz``
    """
    zone = _zone(tz)
    now_utc = ensure_utc(now)
    local_today = now_utc.astimezone(zone).date()
    at = parse_schedule_time(rule.schedule_time)
    kind = ScheduleType(rule.schedule_type)

    def fire(day: date) -> datetime:
        return datetime.combine(day, at, tzinfo=zone)

    def passed(candidate: datetime) -> bool:
        return candidate.astimezone(timezone.utc) <= now_utc

    if kind == ScheduleType.MONTHLY:
        if rule.schedule_day is None:
            raise RuleValidationError("Monthly rules need schedule_day")
        candidate = fire(_clamped_day(local_today.year, local_today.month, rule.schedule_day))
        if passed(candidate):
            year, month = _next_month(local_today.year, local_today.month)
            candidate = fire(_clamped_day(year, month, rule.schedule_day))
        return candidate

    day = local_today
    if passed(fire(day)):
        day += timedelta(days=1)

    if kind == ScheduleType.WEEKLY:
        if rule.schedule_day is None:
            raise RuleValidationError("Weekly rules need schedule_day")
        target = (rule.schedule_day - 1) % 7 + 1
        while day.isoweekday() != target:
            day += timedelta(days=1)

    return fire(day)


def localize_occurrence(occurrence: datetime, tz: str | tzinfo | None) -> datetime:
    """Read ``occurrence``'s wall-clock date and time in ``tz``.

    The calendar occurrence of a rule is shared by all users; this maps it
    to the UTC instant at which that wall-clock time happens for one user.
    """
    return occurrence.replace(tzinfo=_zone(tz)).astimezone(timezone.utc)
