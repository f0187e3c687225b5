"""
Reporting period resolution.

Turns the dashboard's `period` / `startDate` / `endDate` query parameters
into an inclusive datetime range plus the Bitrix DATE_CREATE filter for it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional

BITRIX_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

PERIODS = ("today", "yesterday", "week", "month", "quarter", "custom")
DEFAULT_TRAILING_DAYS = 7

END_OF_DAY = time(23, 59, 59)


class InvalidPeriodError(ValueError):
    """Raised for malformed or inverted startDate / endDate values."""
    pass


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime
    period: str = "custom"
    defaulted: bool = False

    def to_dict(self) -> dict:
        return {
            "start": self.start.strftime(BITRIX_DATE_FORMAT),
            "end": self.end.strftime(BITRIX_DATE_FORMAT),
        }

    def bitrix_filter(self, field: str = "DATE_CREATE") -> dict:
        return {
            f">={field}": self.start.strftime(BITRIX_DATE_FORMAT),
            f"<={field}": self.end.strftime(BITRIX_DATE_FORMAT),
        }


def _parse_day(value: str, name: str) -> datetime:
    """Start of a calendar day given as YYYY-MM-DD. Times and offsets are rejected."""
    value = value.strip()
    try:
        if len(value) != 10:
            raise ValueError(value)
        return datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        raise InvalidPeriodError(f"{name} must be an ISO date (YYYY-MM-DD), got {value!r}")


def _trailing_window(now: datetime, period: str) -> DateRange:
    return DateRange(
        start=now - timedelta(days=DEFAULT_TRAILING_DAYS),
        end=now,
        period=period,
        defaulted=True,
    )


def resolve_period(
    period: Optional[str] = "week",
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    now: Optional[datetime] = None,
) -> DateRange:
    """
    Resolve query parameters into an inclusive DateRange.

    Explicit startDate + endDate win for any period; the end is extended to
    23:59:59. `custom` without both dates, and unrecognized periods, fall
    back to the trailing 7 days ending now.
    """
    now = (now or datetime.now()).replace(microsecond=0)
    period = (period or "week").strip().lower()

    if start_date and end_date:
        start = _parse_day(start_date, "startDate")
        end = datetime.combine(_parse_day(end_date, "endDate").date(), END_OF_DAY)
        if start > end:
            raise InvalidPeriodError(f"startDate {start_date} is after endDate {end_date}")
        return DateRange(start=start, end=end, period=period)

    today_start = datetime.combine(now.date(), time.min)
    today_end = datetime.combine(now.date(), END_OF_DAY)

    if period == "today":
        return DateRange(today_start, today_end, period)
    if period == "yesterday":
        day = now.date() - timedelta(days=1)
        return DateRange(datetime.combine(day, time.min), datetime.combine(day, END_OF_DAY), period)
    if period == "week":
        monday = now.date() - timedelta(days=now.weekday())
        return DateRange(datetime.combine(monday, time.min), today_end, period)
    if period == "month":
        return DateRange(datetime.combine(now.date().replace(day=1), time.min), today_end, period)
    if period == "quarter":
        first_month = 3 * ((now.month - 1) // 3) + 1
        first_day = date(now.year, first_month, 1)
        return DateRange(datetime.combine(first_day, time.min), today_end, period)

    # custom without both dates, or an unknown period
    return _trailing_window(now, period)
