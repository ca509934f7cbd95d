from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from posbill.config import settings

REPORT_RANGES = {
    "7days": 7,
    "30days": 30,
    "90days": 90,
}


class InvalidDateRange(ValueError):
    pass


def get_timezone(name: Optional[str] = None) -> ZoneInfo:
    return ZoneInfo(name or settings.timezone)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def local_now(tz: Optional[ZoneInfo] = None) -> datetime:
    return datetime.now(tz or get_timezone())


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive values read back from the database."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_utc(value: datetime, tz: Optional[ZoneInfo] = None) -> datetime:
    """Normalise an incoming timestamp for storage; naive input is local time."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=tz or get_timezone())
    return value.astimezone(timezone.utc)


def local_date(value: datetime, tz: Optional[ZoneInfo] = None) -> date:
    return as_utc(value).astimezone(tz or get_timezone()).date()


def start_of_day(day: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


def end_of_day(day: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, time.max, tzinfo=tz)


def shift_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _custom_bounds(
    start_date: Optional[date],
    end_date: Optional[date],
    tz: ZoneInfo,
) -> tuple[datetime, datetime]:
    if start_date is None or end_date is None:
        raise InvalidDateRange("startDate and endDate are required for a custom range")
    if start_date > end_date:
        raise InvalidDateRange("startDate must not be after endDate")
    return start_of_day(start_date, tz), end_of_day(end_date, tz)


def resolve_report_range(
    selector: Optional[str],
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    now: Optional[datetime] = None,
    tz: Optional[ZoneInfo] = None,
    max_days: Optional[int] = None,
) -> tuple[datetime, datetime]:
    """Turn a report selector or explicit dates into concrete ``(from, to)`` bounds.

    Explicit dates win over the selector. Custom spans longer than
    ``max_days`` are rejected rather than clamped.
    """
    tz = tz or get_timezone()
    now = (now or utc_now()).astimezone(tz)
    max_days = settings.report_max_range_days if max_days is None else max_days
    selector = selector or "7days"

    if selector == "custom" or start_date is not None or end_date is not None:
        from_dt, to_dt = _custom_bounds(start_date, end_date, tz)
        if (end_date - start_date).days > max_days:
            raise InvalidDateRange(f"date range cannot exceed {max_days} days")
        return from_dt, to_dt
    if selector == "today":
        return start_of_day(now.date(), tz), end_of_day(now.date(), tz)
    if selector in REPORT_RANGES:
        return now - timedelta(days=REPORT_RANGES[selector]), now
    if selector == "6months":
        return shift_months(now, -6), now
    if selector == "1year":
        return shift_months(now, -12), now
    raise InvalidDateRange(f"unknown date range: {selector}")


def resolve_order_list_range(
    selector: Optional[str],
    start: Optional[date] = None,
    end: Optional[date] = None,
    now: Optional[datetime] = None,
    tz: Optional[ZoneInfo] = None,
    max_days: Optional[int] = None,
) -> tuple[Optional[datetime], Optional[datetime]]:
    tz = tz or get_timezone()
    now = (now or utc_now()).astimezone(tz)
    max_days = settings.report_max_range_days if max_days is None else max_days
    selector = selector or "today"
    today = now.date()

    if selector == "all":
        return None, None
    if selector == "today":
        return start_of_day(today, tz), end_of_day(today, tz)
    if selector == "week":
        monday = today - timedelta(days=today.weekday())
        return start_of_day(monday, tz), end_of_day(monday + timedelta(days=6), tz)
    if selector == "month":
        last = calendar.monthrange(today.year, today.month)[1]
        return (
            start_of_day(today.replace(day=1), tz),
            end_of_day(today.replace(day=last), tz),
        )
    if selector == "custom":
        if start is not None and end is not None and (end - start).days > max_days:
            end = start + timedelta(days=max_days)
        return _custom_bounds(start, end, tz)
    raise InvalidDateRange(f"unknown date range: {selector}")
