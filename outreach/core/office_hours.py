# outreach/core/office_hours.py
"""
Office-hours evaluation.

Two independent gates decide whether a call may be placed right now:

1. The organization's weekly schedule, evaluated in the organization's
   timezone. Missing configuration means "always open" so a half-set-up
   organization never wedges its runs; a missing or blank weekday means
   "closed".
2. The recipient's local calling window (only when the run opts in),
   ``call_start_hour <= local hour < call_end_hour``.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from outreach.core.domain import DayHours, Organization
from outreach.infra.logging_config import get_logger

logger = get_logger(__name__)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

CLOSED_ALL_DAY = ("00:00", "00:00")
OPEN_ALL_DAY = ("00:00", "23:59")


def _to_minutes(hhmm: str) -> Optional[int]:
    try:
        hours, minutes = hhmm.strip().split(":")
        value = int(hours) * 60 + int(minutes)
    except (AttributeError, ValueError):
        return None
    if not 0 <= value < 24 * 60:
        return None
    return value


def _zone(name: str) -> Optional[ZoneInfo]:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def is_day_open(hours: Optional[DayHours], minute_of_day: int) -> bool:
    """Evaluate one weekday's schedule at a minute-of-day."""
    if hours is None or not hours.start or not hours.end:
        return False

    if (hours.start, hours.end) == CLOSED_ALL_DAY:
        return False
    if (hours.start, hours.end) == OPEN_ALL_DAY:
        return True

    start = _to_minutes(hours.start)
    end = _to_minutes(hours.end)
    if start is None or end is None:
        logger.warning(f"Unparseable office hours {hours.start}-{hours.end}; treating day as closed")
        return False

    return start <= minute_of_day <= end


def is_within_office_hours(org: Optional[Organization], now: datetime) -> bool:
    """
    Whether ``now`` (timezone-aware) falls inside the organization's hours.
    """
    if org is None or not org.timezone or not org.office_hours:
        return True

    zone = _zone(org.timezone)
    if zone is None:
        logger.warning(f"Unknown organization timezone {org.timezone!r}; office hours not enforced")
        return True

    local = now.astimezone(zone)
    day = WEEKDAYS[local.weekday()]
    return is_day_open(org.office_hours.get(day), local.hour * 60 + local.minute)


def is_recipient_callable(
    recipient_timezone: Optional[str],
    now: datetime,
    start_hour: int = 8,
    end_hour: int = 20,
) -> bool:
    """Recipient's local hour must be in [start_hour, end_hour)."""
    if not recipient_timezone:
        return True

    zone = _zone(recipient_timezone)
    if zone is None:
        logger.warning(f"Unknown recipient timezone {recipient_timezone!r}; window not enforced")
        return True

    local_hour = now.astimezone(zone).hour
    return start_hour <= local_hour < end_hour
