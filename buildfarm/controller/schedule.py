"""Active-hours evaluation for buildfarm."""

import logging
from datetime import date, datetime
from typing import Optional

from buildfarm.config.models import ActiveWindow
from buildfarm.utils.time_utils import (
    format_datetime,
    get_current_datetime,
    is_day_match,
    is_time_in_range,
    localize,
    previous_day,
    spans_midnight,
)

logger = logging.getLogger(__name__)


class ActiveHours:
    """Evaluate the windows in which a farm is expected to be busy."""

    def __init__(self, windows: Optional[list[ActiveWindow]] = None):
        """
        Initialize ActiveHours.

        Args:
            windows: Active windows; none means the farm is never busy by schedule
        """
        self.windows = windows or []

    def is_active(self, current_time: Optional[datetime] = None) -> tuple[bool, Optional[str]]:
        """
        Check whether any window covers the given time.

        Args:
            current_time: Time to evaluate at (defaults to now)

        Returns:
            (True, window name) for the first matching window, else (False, None)
        """
        if current_time is None:
            current_time = get_current_datetime("UTC")

        for window in self.windows:
            if self._window_matches(window, current_time):
                return True, window.name
        return False, None

    @staticmethod
    def _starts_on(window: ActiveWindow, day: date) -> bool:
        if window.dates and day not in window.dates:
            return False
        if window.days and not is_day_match(day, window.days):
            return False
        return True

    def _window_matches(self, window: ActiveWindow, current_time: datetime) -> bool:
        try:
            local = localize(current_time, window.timezone)
        except ValueError as e:
            logger.error(f"Invalid timezone '{window.timezone}' in window '{window.name}': {e}")
            return False

        today = local.date()
        now = local.time()

        if not spans_midnight(window.time_start, window.time_end):
            matched = self._starts_on(window, today) and is_time_in_range(
                now, window.time_start, window.time_end
            )
        else:
            # Late part belongs to today's window, early part to yesterday's
            matched = (
                (self._starts_on(window, today) and now >= window.time_start)
                or (self._starts_on(window, previous_day(today)) and now < window.time_end)
            )

        if matched:
            logger.debug(
                f"Window '{window.name}' active at {format_datetime(local)} "
                f"(timezone: {window.timezone})"
            )
        return matched
