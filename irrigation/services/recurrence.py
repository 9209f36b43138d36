"""
Recurrence helpers: weekday enumeration and next-execution computation.
"""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from enum import IntEnum
from typing import Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

logger = logging.getLogger(__name__)


class Weekday(IntEnum):
    """Canonical weekday numbering, aligned with datetime.weekday()."""

    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6

    @property
    def short(self) -> str:
        return self.name[:3].title()


DAY_PRESETS: Dict[str, List[int]] = {
    "weekdays": [0, 1, 2, 3, 4],
    "weekend": [5, 6],
    "everyday": [0, 1, 2, 3, 4, 5, 6],
}


def describe_days(days: Iterable[int]) -> str:
    """
    Human-friendly summary used by the schedule list ("Weekdays", "Mon, Wed").
    """
    selected = sorted(set(days))
    if not selected:
        return "Not scheduled"
    if selected == DAY_PRESETS["everyday"]:
        return "Every day"
    if selected == DAY_PRESETS["weekdays"]:
        return "Weekdays"
    if selected == DAY_PRESETS["weekend"]:
        return "Weekends"
    return ", ".join(Weekday(day).short for day in selected)


def parse_time_of_day(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def next_execution(
    time_of_day: str, days: Iterable[int], now: datetime
) -> Optional[datetime]:
    """
    Return the first instant at or after `now` that falls on one of `days` at
    `time_of_day`, in the time zone of `now`. An empty day set has no next
    execution and yields None.
    """
    allowed = set(days)
    if not allowed:
        return None

    at = parse_time_of_day(time_of_day)
    today = now.date()
    # Offset 0 is today; 7 covers "same weekday next week" when today's slot passed.
    for offset in range(0, 8):
        day = today + timedelta(days=offset)
        if day.weekday() not in allowed:
            continue
        candidate = datetime.combine(day, at, tzinfo=now.tzinfo)
        if candidate >= now:
            return candidate
    return None


def local_now(tz_name: str) -> datetime:
    """Current wall-clock time in `tz_name`, falling back to UTC."""
    try:
        tz = ZoneInfo(tz_name)
    except ZoneInfoNotFoundError:
        logger.warning("Unknown time zone %s, using UTC", tz_name)
        tz = timezone.utc
    return datetime.now(tz)
