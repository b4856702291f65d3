"""Tests for utils/timezone.py - UTC-everywhere time handling."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from utils.timezone import now_utc, to_utc, days_ago, days_from_now, is_past


class TestNowUtc:

    def test_returns_timezone_aware(self):
        assert now_utc().tzinfo is not None

    def test_is_utc(self):
        assert now_utc().tzinfo == timezone.utc


class TestToUtc:

    def test_raises_on_naive(self):
        naive = datetime(2024, 1, 1, 12, 0, 0)
        with pytest.raises(ValueError, match="naive"):
            to_utc(naive)

    def test_converts_other_timezone(self):
        """Auckland 12:00 in January (NZDT, UTC+13) is 23:00 UTC the day before."""
        auckland = datetime(2024, 1, 2, 12, 0, 0, tzinfo=ZoneInfo("Pacific/Auckland"))
        result = to_utc(auckland)
        assert result.tzinfo == timezone.utc
        assert result.day == 1
        assert result.hour == 23


class TestWindows:

    def test_days_ago_is_in_the_past(self):
        start = days_ago(30)
        assert now_utc() - start >= timedelta(days=30)

    def test_days_from_now_is_in_the_future(self):
        due = days_from_now(7)
        assert due - now_utc() <= timedelta(days=7)
        assert due > now_utc()


class TestIsPast:

    def test_none_is_never_past(self):
        assert is_past(None) is False

    def test_past_datetime(self):
        assert is_past(now_utc() - timedelta(minutes=1)) is True

    def test_future_datetime(self):
        assert is_past(now_utc() + timedelta(days=1)) is False

    def test_date_due_today_is_not_past(self):
        assert is_past(now_utc().date()) is False

    def test_date_yesterday_is_past(self):
        assert is_past(now_utc().date() - timedelta(days=1)) is True

    def test_naive_datetime_rejected(self):
        with pytest.raises(ValueError, match="naive"):
            is_past(datetime(2024, 1, 1))
