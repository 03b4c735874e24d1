"""Quiet-hours window arithmetic.

Times are "HH:MM" strings on the local wall clock. A window whose start is
later than its end wraps past midnight (22:00-07:00). A window whose start
equals its end is treated as disabled, not as "always quiet".
"""

from datetime import datetime, time as dtime
from typing import Optional


def parse_time(value: str) -> dtime:
    """Parse an "HH:MM" string. Raises ValueError if malformed."""
    try:
        hours, minutes = value.strip().split(":")
        return dtime(int(hours), int(minutes))
    except (AttributeError, ValueError) as e:
        raise ValueError(f"Invalid time of day (expected HH:MM): {value!r}") from e


def in_window(start: dtime, end: dtime, moment: dtime) -> bool:
    """True if moment falls in [start, end), wrapping past midnight."""
    if start == end:
        return False
    if start > end:
        return moment >= start or moment < end
    return start <= moment < end


def is_quiet_time(quiet_hours, now: Optional[datetime] = None) -> bool:
    """Whether ``now`` falls inside the configured quiet hours.

    ``quiet_hours`` is a QuietHours settings object; None or disabled means
    never quiet. Malformed times also mean never quiet.
    """
    if quiet_hours is None or not quiet_hours.enabled:
        return False
    try:
        start = parse_time(quiet_hours.start)
        end = parse_time(quiet_hours.end)
    except ValueError:
        return False
    now = now or datetime.now()
    return in_window(start, end, now.time().replace(second=0, microsecond=0))
