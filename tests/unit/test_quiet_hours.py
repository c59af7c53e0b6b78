"""Quiet hours and digest scheduling — pure time arithmetic."""

from __future__ import annotations

from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo

import pytest

from ieco.notifications.scheduler import (
    Preference,
    in_quiet_hours,
    next_digest_time,
    next_occurrence,
    parse_hhmm,
    schedule_for,
)

UTC = ZoneInfo("UTC")


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestParseHHMM:
    """Test HH:MM parsing."""

    def test_valid(self):
        assert parse_hhmm("08:30") == time(8, 30)
        assert parse_hhmm(None) is None

    @pytest.mark.parametrize("value", ["8:30", "0830", "25:00", "12:60", "ab:cd", "", 830])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_hhmm(value)


class TestInQuietHours:
    """Test window membership, including windows wrapping midnight."""

    def test_same_day_window(self):
        assert in_quiet_hours(time(13, 0), time(12, 0), time(14, 0)) is True
        assert in_quiet_hours(time(14, 0), time(12, 0), time(14, 0)) is False
        assert in_quiet_hours(time(11, 59), time(12, 0), time(14, 0)) is False

    def test_wrapping_window(self):
        start, end = time(22, 0), time(8, 0)
        assert in_quiet_hours(time(23, 0), start, end) is True
        assert in_quiet_hours(time(0, 0), start, end) is True
        assert in_quiet_hours(time(7, 59), start, end) is True
        assert in_quiet_hours(time(8, 0), start, end) is False
        assert in_quiet_hours(time(12, 0), start, end) is False
        assert in_quiet_hours(time(22, 0), start, end) is True

    def test_empty_window(self):
        assert in_quiet_hours(time(9, 0), time(9, 0), time(9, 0)) is False


class TestNextOccurrence:
    """Test next wall-clock occurrence."""

    def test_later_today(self):
        assert next_occurrence(_utc(2026, 3, 2, 1, 0), time(8, 0)) == _utc(2026, 3, 2, 8, 0)

    def test_tomorrow(self):
        assert next_occurrence(_utc(2026, 3, 2, 23, 0), time(8, 0)) == _utc(2026, 3, 3, 8, 0)

    def test_strictly_after(self):
        assert next_occurrence(_utc(2026, 3, 2, 8, 0), time(8, 0)) == _utc(2026, 3, 3, 8, 0)


class TestNextDigestTime:
    """Test digest period boundaries."""

    def test_immediate(self):
        assert next_digest_time(_utc(2026, 3, 2, 12, 0), "immediate") is None

    def test_daily(self):
        assert next_digest_time(_utc(2026, 3, 2, 12, 0), "daily") == _utc(2026, 3, 3)

    def test_weekly_lands_on_monday(self):
        # 2026-03-04 is a Wednesday
        assert next_digest_time(_utc(2026, 3, 4, 12, 0), "weekly") == _utc(2026, 3, 9)
        assert next_digest_time(_utc(2026, 3, 2, 0, 0), "weekly") == _utc(2026, 3, 9)

    def test_monthly(self):
        assert next_digest_time(_utc(2026, 3, 15, 12, 0), "monthly") == _utc(2026, 4, 1)
        assert next_digest_time(_utc(2026, 12, 31, 23, 0), "monthly") == _utc(2027, 1, 1)


class TestScheduleFor:
    """Test the combined delivery decision."""

    def _pref(self, **kwargs) -> Preference:
        return Preference(user_id="u1", type="invite_success", **kwargs)

    def test_immediate_outside_quiet_hours(self):
        pref = self._pref(quiet_hours_start="22:00", quiet_hours_end="08:00")
        assert schedule_for(pref, _utc(2026, 3, 2, 12, 0), UTC) is None

    def test_inside_wrapping_quiet_hours(self):
        pref = self._pref(quiet_hours_start="22:00", quiet_hours_end="08:00")
        assert schedule_for(pref, _utc(2026, 3, 2, 23, 0), UTC) == _utc(2026, 3, 3, 8, 0)

    def test_after_midnight_inside_quiet_hours(self):
        pref = self._pref(quiet_hours_start="22:00", quiet_hours_end="08:00")
        assert schedule_for(pref, _utc(2026, 3, 3, 2, 30), UTC) == _utc(2026, 3, 3, 8, 0)

    def test_no_quiet_hours(self):
        assert schedule_for(self._pref(), _utc(2026, 3, 2, 23, 0), UTC) is None

    def test_local_timezone(self):
        # 21:30 UTC is 22:30 in Berlin (CET), inside 22:00-07:00
        pref = self._pref(quiet_hours_start="22:00", quiet_hours_end="07:00")
        scheduled = schedule_for(pref, _utc(2026, 1, 15, 21, 30), ZoneInfo("Europe/Berlin"))
        assert scheduled == _utc(2026, 1, 16, 6, 0)

    def test_daily_digest(self):
        pref = self._pref(frequency="daily")
        assert schedule_for(pref, _utc(2026, 3, 2, 12, 0), UTC) == _utc(2026, 3, 3)

    def test_digest_pushed_past_quiet_hours(self):
        pref = self._pref(frequency="daily", quiet_hours_start="22:00", quiet_hours_end="08:00")
        assert schedule_for(pref, _utc(2026, 3, 2, 12, 0), UTC) == _utc(2026, 3, 3, 8, 0)
