"""Helpers for converting between UTC instants, local wall clocks and queue scores."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone, tzinfo
from functools import lru_cache
from typing import Final

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.config import get_settings

logger = logging.getLogger(__name__)

_OFFSET_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^(?:UTC|GMT)(?P<sign>[+-])(?P<hours>\d{1,2})(?::?(?P<minutes>\d{2}))?$",
    re.IGNORECASE,
)


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    Naive values are assumed to already be UTC. SQLite hands timestamp
    columns back without an offset even though they are written aware.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_score(value: datetime) -> int:
    """Unix-millisecond score of an instant."""
    return int(ensure_utc(value).timestamp() * 1000)


def from_score(score: int) -> datetime:
    """Aware UTC instant for a Unix-millisecond score."""
    return datetime.fromtimestamp(score / 1000, tz=timezone.utc)


@lru_cache(maxsize=256)
def resolve_timezone(tz_name: str | None) -> tzinfo:
    """Resolve an IANA name (or ``UTC+hh:mm`` offset) into a tzinfo.

    Unknown names fall back to ``DEFAULT_TIMEZONE``.
    """
    name = (tz_name or "").strip() or get_settings().DEFAULT_TIMEZONE
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        match = _OFFSET_PATTERN.match(name)
        if match:
            sign = -1 if match.group("sign") == "-" else 1
            hours = int(match.group("hours"))
            minutes = int(match.group("minutes") or 0)
            return timezone(sign * timedelta(hours=hours, minutes=minutes))
    logger.warning(
        f"Unknown timezone {name!r}, using default",
        extra={"timezone": name},
    )
    return ZoneInfo(get_settings().DEFAULT_TIMEZONE)
