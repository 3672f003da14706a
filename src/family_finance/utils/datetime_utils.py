"""
Timezone-aware datetime helpers.

All persisted timestamps are UTC-aware. Mongo returns naive datetimes unless the client is
configured with ``tz_aware``, so comparisons go through ``ensure_timezone_aware`` first.
Calendar arithmetic (month windows, recurrence steps) lives here so that budget and reminder
code share one definition of a period.
"""

import calendar
from datetime import datetime, timedelta, timezone
import math
from typing import Optional, Tuple

SECONDS_PER_DAY = 24 * 60 * 60


class DateTimeUtils:
    """Centralized datetime utilities with timezone awareness."""

    @staticmethod
    def utc_now() -> datetime:
        """
        Get current UTC datetime with timezone awareness.

        Returns:
            datetime: Current UTC datetime with timezone information
        """
        return datetime.now(timezone.utc)

    @staticmethod
    def ensure_timezone_aware(dt: datetime, default_tz: Optional[timezone] = None) -> datetime:
        """
        Ensure datetime is timezone-aware.

        Args:
            dt: Datetime object to check
            default_tz: Default timezone to use if datetime is naive (defaults to UTC)

        Returns:
            datetime: Timezone-aware datetime object
        """
        if dt.tzinfo is None:
            return dt.replace(tzinfo=default_tz or timezone.utc)
        return dt

    @staticmethod
    def is_expired(expires_at: datetime, now: Optional[datetime] = None) -> bool:
        """
        Check if a datetime has passed.

        Args:
            expires_at: Expiration datetime
            now: Reference time, defaults to the current UTC time

        Returns:
            bool: True if expired, False otherwise
        """
        now = now or DateTimeUtils.utc_now()
        return DateTimeUtils.ensure_timezone_aware(now) >= DateTimeUtils.ensure_timezone_aware(expires_at)

    @staticmethod
    def month_window(year: int, month: int) -> Tuple[datetime, datetime]:
        """
        First and last calendar day of a month, both at UTC midnight.

        Args:
            year: Four digit year
            month: 1-12

        Returns:
            Tuple of (start, end) where end is midnight of the last day of the month.

        Raises:
            ValueError: If month is out of range
        """
        if not 1 <= month <= 12:
            raise ValueError(f"month must be between 1 and 12, got {month}")
        last_day = calendar.monthrange(year, month)[1]
        start = datetime(year, month, 1, tzinfo=timezone.utc)
        end = datetime(year, month, last_day, tzinfo=timezone.utc)
        return start, end

    @staticmethod
    def add_months(dt: datetime, months: int) -> datetime:
        """Add calendar months, clamping the day to the target month's length."""
        month_index = dt.month - 1 + months
        year = dt.year + month_index // 12
        month = month_index % 12 + 1
        day = min(dt.day, calendar.monthrange(year, month)[1])
        return dt.replace(year=year, month=month, day=day)

    @staticmethod
    def days_until(target: datetime, now: Optional[datetime] = None) -> int:
        """Whole days until ``target``, rounded up. Negative once ``target`` is in the past."""
        now = DateTimeUtils.ensure_timezone_aware(now or DateTimeUtils.utc_now())
        target = DateTimeUtils.ensure_timezone_aware(target)
        return math.ceil((target - now).total_seconds() / SECONDS_PER_DAY)

    @staticmethod
    def start_of_day(dt: datetime) -> datetime:
        dt = DateTimeUtils.ensure_timezone_aware(dt)
        return dt.replace(hour=0, minute=0, second=0, microsecond=0)


# Convenience functions for ease of use
def utc_now() -> datetime:
    """Get current UTC datetime with timezone awareness."""
    return DateTimeUtils.utc_now()


def ensure_timezone_aware(dt: datetime, default_tz: Optional[timezone] = None) -> datetime:
    """Ensure datetime is timezone-aware."""
    return DateTimeUtils.ensure_timezone_aware(dt, default_tz)


def is_expired(expires_at: datetime, now: Optional[datetime] = None) -> bool:
    """Check if a datetime has passed."""
    return DateTimeUtils.is_expired(expires_at, now)


def month_window(year: int, month: int) -> Tuple[datetime, datetime]:
    """First and last day of a month at UTC midnight."""
    return DateTimeUtils.month_window(year, month)


def add_months(dt: datetime, months: int) -> datetime:
    return DateTimeUtils.add_months(dt, months)


def add_days(dt: datetime, days: int) -> datetime:
    return dt + timedelta(days=days)


def days_until(target: datetime, now: Optional[datetime] = None) -> int:
    return DateTimeUtils.days_until(target, now)


def start_of_day(dt: datetime) -> datetime:
    return DateTimeUtils.start_of_day(dt)
