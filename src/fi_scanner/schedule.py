"""
Schedule eligibility and scan windows.
"""

from __future__ import annotations

import datetime as dt

from .models import ScanJob, ScheduleType

WEEKLY_DAYS = 7
MONTHLY_DAYS = 30


def is_due(job: ScanJob, today: dt.date) -> bool:
    """
    Whether a job's schedule allows another scan on ``today``.

    Jobs that have never scanned are always due. DAILY and CUSTOM jobs run at
    most once per calendar day; WEEKLY and MONTHLY jobs wait 7 and 30 days.
    """
    last = job.statistics.last_scan_date
    if last is None:
        return True
    last_day = last.date()
    days_since = (today - last_day).days

    if job.schedule_type == ScheduleType.WEEKLY:
        return days_since >= WEEKLY_DAYS
    if job.schedule_type == ScheduleType.MONTHLY:
        return days_since >= MONTHLY_DAYS
    return last_day != today


def scan_window(
    lookback_days: int,
    today: dt.date,
    target_date: dt.date | None = None,
) -> tuple[dt.datetime, dt.datetime]:
    """
    Inclusive UTC window of document modification times to scan.

    With a target date the window is that single day. Otherwise it covers
    ``lookback_days`` whole days ending at the end of yesterday.
    """
    if target_date is not None:
        first_day = last_day = target_date
    else:
        last_day = today - dt.timedelta(days=1)
        first_day = last_day - dt.timedelta(days=max(1, lookback_days) - 1)
    start = dt.datetime.combine(first_day, dt.time.min, tzinfo=dt.timezone.utc)
    end = dt.datetime.combine(last_day, dt.time.max, tzinfo=dt.timezone.utc)
    return start, end
