"""
Restaurant-local time helpers.

Opening hours and the daily order sequence are both evaluated in the
restaurant's own timezone, never in UTC.

Opening hours format (Restaurant.opening_hours JSON column):

    {
        "mon": [["11:00", "15:00"], ["18:00", "23:30"]],
        "fri": [["18:00", "02:00"]],      # overnight window
        ...
    }

Times are "HH:MM"; "24:00" closes at midnight. A missing weekday key means
closed that day. ``None`` for the whole column means the restaurant has no
schedule configured and is treated as always open.
"""

import re
from datetime import date, datetime, timezone as dt_timezone
from typing import Dict, List, Optional

import pytz

from .config import DEFAULT_TIMEZONE
from .errors import ValidationError

WEEKDAYS = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]

_HHMM = re.compile(r"^(\d{1,2}):(\d{2})$")

OpeningHours = Dict[str, List[List[str]]]


def get_timezone(name: Optional[str]):
    """Return a pytz timezone, falling back to DEFAULT_TIMEZONE when unset."""
    return pytz.timezone(name or DEFAULT_TIMEZONE)


def utcnow() -> datetime:
    return datetime.now(dt_timezone.utc)


def to_local(moment: datetime, tz_name: Optional[str]) -> datetime:
    """Convert an aware (or naive UTC) datetime to the restaurant's local time."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=dt_timezone.utc)
    return moment.astimezone(get_timezone(tz_name))


def local_date(moment: datetime, tz_name: Optional[str]) -> date:
    """Calendar date of ``moment`` in the restaurant's timezone."""
    return to_local(moment, tz_name).date()


def _parse_hhmm(value: str) -> int:
    """Minutes since midnight; "24:00" is the end of the day."""
    match = _HHMM.match(value) if isinstance(value, str) else None
    if match is not None:
        hours, minutes = int(match.group(1)), int(match.group(2))
        if minutes < 60 and (hours < 24 or (hours == 24 and minutes == 0)):
            return hours * 60 + minutes
    raise ValidationError(
        f"Invalid opening hours time: {value!r}",
        user_message="This restaurant's opening hours are not set up correctly.",
    )


def _windows_for(opening_hours: OpeningHours, weekday: int):
    for window in opening_hours.get(WEEKDAYS[weekday], []) or []:
        yield _parse_hhmm(window[0]), _parse_hhmm(window[1])


def is_open_at(opening_hours: Optional[OpeningHours], tz_name: Optional[str], moment: datetime) -> bool:
    """
    Check whether a restaurant is open at ``moment``.

    Args:
        opening_hours: Weekly schedule, or None for "always open"
        tz_name: Restaurant timezone name
        moment: Point in time to check (aware datetime preferred)

    Returns:
        True if ``moment`` falls inside one of the day's windows, including
        the tail of the previous day's overnight window.
    """
    if opening_hours is None:
        return True

    local = to_local(moment, tz_name)
    current = local.hour * 60 + local.minute
    weekday = local.weekday()

    for opens, closes in _windows_for(opening_hours, weekday):
        if opens <= closes:
            if opens <= current < closes:
                return True
        elif current >= opens:
            # Overnight window that started today
            return True

    previous_day = (weekday - 1) % 7
    for opens, closes in _windows_for(opening_hours, previous_day):
        if opens > closes and current < closes:
            return True

    return False
