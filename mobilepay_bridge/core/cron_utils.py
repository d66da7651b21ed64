"""Utilities for parsing and validating the charge sweep cron expression."""

from datetime import datetime
from typing import Optional

import pytz
import structlog
from celery.schedules import crontab
from croniter import croniter

logger = structlog.get_logger(__name__)


class CronParseError(Exception):
    """Raised when a cron string cannot be parsed or is invalid."""
    pass


def validate_cron_string(cron_string: str) -> bool:
    """
    Validate that a cron string is in valid 5-field format.

    Examples:
        "0 2 * * *" - daily at 2 AM
        "30 1 * * 1-5" - weekdays at 1:30 AM
    """
    if not cron_string or not isinstance(cron_string, str):
        return False

    if len(cron_string.strip().split()) != 5:
        return False

    return croniter.is_valid(cron_string)


def parse_cron_string(cron_string: str) -> crontab:
    """
    Parse a 5-field cron string into a Celery crontab schedule.

    Celery and cron both count weekdays from Sunday = 0, so every field is
    passed through unchanged. Timezone is handled at the app level.

    Raises:
        CronParseError: If cron string is invalid

    Examples:
        >>> parse_cron_string("0 2 * * *")
        <crontab: 0 2 * * * (m/h/dM/MY/d)>
    """
    if not validate_cron_string(cron_string):
        raise CronParseError(f"Invalid cron string: {cron_string}")

    minute, hour, day_of_month, month_of_year, day_of_week = cron_string.strip().split()
    try:
        return crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
        )
    except Exception as e:
        raise CronParseError(f"Failed to parse cron string '{cron_string}': {str(e)}") from e


def calculate_next_run(cron_string: str, timezone: str = "UTC", start_time: Optional[datetime] = None) -> datetime:
    """
    Calculate the next run time for a cron expression.

    Raises:
        CronParseError: If cron string is invalid
    """
    if not validate_cron_string(cron_string):
        raise CronParseError(f"Invalid cron string: {cron_string}")

    try:
        tz = pytz.timezone(timezone)
    except pytz.exceptions.UnknownTimeZoneError:
        logger.warning("unknown_timezone_defaulting_to_utc", timezone=timezone)
        tz = pytz.UTC

    if start_time is None:
        start_time = datetime.now(tz)
    elif start_time.tzinfo is None:
        start_time = tz.localize(start_time)

    return croniter(cron_string, start_time).get_next(datetime)
