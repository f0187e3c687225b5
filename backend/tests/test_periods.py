"""
Tests for backend/funnel/periods.py
Covers named periods, explicit date ranges, the trailing-week fallback and
the Bitrix DATE_CREATE filter.
"""
import os
import sys
from datetime import datetime

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from funnel.periods import InvalidPeriodError, resolve_period

# Thursday
NOW = datetime(2024, 5, 16, 14, 30, 15)


class TestNamedPeriods:
    """Test resolve_period with named periods"""

    def test_today(self):
        r = resolve_period("today", now=NOW)
        assert r.start == datetime(2024, 5, 16, 0, 0, 0)
        assert r.end == datetime(2024, 5, 16, 23, 59, 59)

    def test_yesterday(self):
        r = resolve_period("yesterday", now=NOW)
        assert r.start == datetime(2024, 5, 15, 0, 0, 0)
        assert r.end == datetime(2024, 5, 15, 23, 59, 59)

    def test_week_starts_monday(self):
        r = resolve_period("week", now=NOW)
        assert r.start == datetime(2024, 5, 13)
        assert r.start.weekday() == 0

    def test_month(self):
        assert resolve_period("month", now=NOW).start == datetime(2024, 5, 1)

    def test_quarter(self):
        assert resolve_period("quarter", now=NOW).start == datetime(2024, 4, 1)

    def test_period_is_case_insensitive(self):
        assert resolve_period("MONTH", now=NOW).period == "month"


class TestExplicitDates:
    """Test startDate/endDate handling"""

    def test_custom_range_is_inclusive(self):
        r = resolve_period("custom", "2024-01-01", "2024-01-31", now=NOW)
        assert r.to_dict() == {"start": "2024-01-01T00:00:00", "end": "2024-01-31T23:59:59"}
        assert r.defaulted is False

    def test_bitrix_filter(self):
        r = resolve_period("custom", "2024-01-01", "2024-01-31", now=NOW)
        assert r.bitrix_filter() == {
            ">=DATE_CREATE": "2024-01-01T00:00:00",
            "<=DATE_CREATE": "2024-01-31T23:59:59",
        }

    def test_explicit_dates_win_for_named_period(self):
        r = resolve_period("week", "2024-02-01", "2024-02-02", now=NOW)
        assert r.start == datetime(2024, 2, 1)
        assert r.end == datetime(2024, 2, 2, 23, 59, 59)

    def test_malformed_date_rejected(self):
        with pytest.raises(InvalidPeriodError):
            resolve_period("custom", "01/02/2024", "2024-02-03", now=NOW)

    def test_timestamp_with_offset_rejected(self):
        """A time or UTC offset would shift the day; only whole days are accepted"""
        with pytest.raises(InvalidPeriodError):
            resolve_period("custom", "2025-06-01", "2025-06-01T23:30:00-05:00", now=NOW)
        with pytest.raises(InvalidPeriodError):
            resolve_period("custom", "2025-06-01T00:00:00Z", "2025-06-02", now=NOW)

    def test_week_date_rejected(self):
        with pytest.raises(InvalidPeriodError):
            resolve_period("custom", "2025-W01-1", "2025-06-02", now=NOW)

    def test_inverted_range_rejected(self):
        with pytest.raises(InvalidPeriodError):
            resolve_period("custom", "2024-02-05", "2024-02-01", now=NOW)


class TestFallback:
    """Test the trailing seven day fallback"""

    def test_custom_without_dates(self):
        r = resolve_period("custom", now=NOW)
        assert r.defaulted is True
        assert r.start == datetime(2024, 5, 9, 14, 30, 15)
        assert r.end == NOW

    def test_custom_with_only_start(self):
        r = resolve_period("custom", start_date="2024-01-01", now=NOW)
        assert r.defaulted is True

    def test_unknown_period(self):
        r = resolve_period("fortnight", now=NOW)
        assert r.defaulted is True
        assert (r.end - r.start).days == 7
