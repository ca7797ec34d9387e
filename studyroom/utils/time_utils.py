"""
Business calendar helpers.

Timestamps are stored as naive UTC; membership windows are whole local days
in the configured business timezone.
"""

import calendar
from datetime import date, datetime, timedelta
from typing import Optional

import pytz

from ..config import settings
from ..models.reservation import DurationCode


def utcnow() -> datetime:
    """Naive UTC now, matching what the models store"""
    return datetime.utcnow()


def local_today(now: Optional[datetime] = None, timezone: Optional[str] = None) -> date:
    """Calendar day in the business timezone for a naive-UTC instant"""
    tz = pytz.timezone(timezone or settings.business_timezone)
    now = now or utcnow()
    return pytz.UTC.localize(now).astimezone(tz).date()


def period_key(now: Optional[datetime] = None, timezone: Optional[str] = None) -> str:
    """YYYYMM issuing period for a naive-UTC instant"""
    tz = pytz.timezone(timezone or settings.business_timezone)
    now = now or utcnow()
    local = pytz.UTC.localize(now).astimezone(tz)
    return f"{local.year}{local.month:02d}"


def add_months(start: date, months: int) -> date:
    """Same day N months later, clamped to the target month's last day"""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def membership_end_date(start: date, duration_code: str) -> date:
    """
    Inclusive last day of a membership starting on ``start``.

    "1 Day" ends the day it starts; "1 Month" from Jan 10 ends Feb 9.
    """
    code = DurationCode(duration_code)
    amount, unit = code.value.split(" ", 1)
    amount = int(amount)

    if unit.startswith("Day"):
        return start + timedelta(days=amount - 1)
    return add_months(start, amount) - timedelta(days=1)


def ranges_overlap(a_start: date, a_end: date, b_start: date, b_end: date) -> bool:
    """Inclusive interval overlap"""
    return a_start <= b_end and a_end >= b_start
