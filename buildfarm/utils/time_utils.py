"""Time utilities for buildfarm."""

import logging
from datetime import date, datetime, time, timedelta
from typing import Optional

import pytz

from buildfarm.config.models import DayOfWeek

logger = logging.getLogger(__name__)


def get_current_datetime(timezone: str = "UTC") -> datetime:
    """
    Get current datetime in specified timezone.

    Args:
        timezone: IANA timezone name (e.g., 'UTC', 'Europe/Berlin')

    Returns:
        Current datetime in specified timezone

    Raises:
        ValueError: If timezone is invalid
    """
    try:
        tz = pytz.timezone(timezone)
        return datetime.now(tz)
    except pytz.exceptions.UnknownTimeZoneError as e:
        raise ValueError(f"Invalid timezone: {timezone}") from e


def localize(moment: datetime, timezone: str) -> datetime:
    """
    Convert an aware datetime into the given timezone.

    Naive datetimes are assumed to be UTC.

    Raises:
        ValueError: If timezone is invalid
    """
    try:
        tz = pytz.timezone(timezone)
    except pytz.exceptions.UnknownTimeZoneError as e:
        raise ValueError(f"Invalid timezone: {timezone}") from e

    if moment.tzinfo is None:
        moment = pytz.UTC.localize(moment)
    return moment.astimezone(tz)


def is_day_match(day: date, target_days: list[DayOfWeek]) -> bool:
    """
    Check if a date falls on any of the target days of week.

    Args:
        day: Date (or datetime) to check
        target_days: List of target days (DayOfWeek enum)

    Returns:
        True if the day of week matches any target day
    """
    if not target_days:
        return False

    day_name = day.strftime("%A")
    return any(target.value == day_name for target in target_days)


def spans_midnight(start_time: Optional[time], end_time: Optional[time]) -> bool:
    """Return True if a [start, end) window wraps past midnight."""
    return start_time is not None and end_time is not None and start_time > end_time


def is_time_in_range(
    current_time: time,
    start_time: Optional[time],
    end_time: Optional[time],
) -> bool:
    """
    Check if current time is within the specified range.

    Args:
        current_time: Time to check
        start_time: Start time of range (inclusive)
        end_time: End time of range (exclusive)

    Returns:
        True if current_time is within range, or if no range specified

    Note:
        - If only start_time is set, checks current_time >= start_time
        - If only end_time is set, checks current_time < end_time
        - If start_time > end_time the range wraps past midnight
    """
    if start_time is None and end_time is None:
        return True

    if end_time is None:
        return current_time >= start_time

    if start_time is None:
        return current_time < end_time

    if spans_midnight(start_time, end_time):
        return current_time >= start_time or current_time < end_time

    return start_time <= current_time < end_time


def previous_day(day: date) -> date:
    """Return the calendar day before the given one."""
    return day - timedelta(days=1)


def format_datetime(dt: datetime) -> str:
    """
    Format datetime for logging.

    Args:
        dt: Datetime to format

    Returns:
        Formatted datetime string
    """
    return dt.strftime("%Y-%m-%d %H:%M:%S %Z")
