"""Unit tests for cron utilities"""

from datetime import datetime

import pytest
import pytz

from mobilepay_bridge.core.cron_utils import (
    CronParseError,
    calculate_next_run,
    parse_cron_string,
    validate_cron_string,
)


@pytest.mark.unit
@pytest.mark.parametrize(
    "cron_string, valid",
    [
        ("0 2 * * *", True),
        ("30 1 * * 1-5", True),
        ("*/15 * * * *", True),
        ("0 2 * *", False),
        ("0 2 * * * *", False),
        ("61 2 * * *", False),
        ("", False),
        (None, False),
    ],
)
def test_validate_cron_string(cron_string, valid):
    assert validate_cron_string(cron_string) is valid


@pytest.mark.unit
def test_parse_cron_string_keeps_fields():
    schedule = parse_cron_string("30 1 * * 0")

    assert schedule.minute == {30}
    assert schedule.hour == {1}
    # Sunday stays 0 in both cron and celery
    assert schedule.day_of_week == {0}


@pytest.mark.unit
def test_parse_invalid_cron_string():
    with pytest.raises(CronParseError):
        parse_cron_string("every day at two")


@pytest.mark.unit
def test_calculate_next_run_daily():
    start = datetime(2026, 3, 12, 3, 0, tzinfo=pytz.UTC)

    next_run = calculate_next_run("0 2 * * *", start_time=start)

    assert next_run == datetime(2026, 3, 13, 2, 0, tzinfo=pytz.UTC)


@pytest.mark.unit
def test_calculate_next_run_localizes_naive_start():
    next_run = calculate_next_run("0 2 * * *", timezone="Europe/Copenhagen", start_time=datetime(2026, 3, 12, 1, 0))

    assert next_run.hour == 2
    assert next_run.day == 12
    assert next_run.utcoffset().total_seconds() == 3600


@pytest.mark.unit
def test_calculate_next_run_unknown_timezone_falls_back_to_utc():
    start = datetime(2026, 3, 12, 1, 0)

    next_run = calculate_next_run("0 2 * * *", timezone="Mars/Olympus", start_time=start)

    assert next_run.utcoffset().total_seconds() == 0
