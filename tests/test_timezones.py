"""Tests for timezone resolution and range arithmetic."""

from datetime import datetime

import pytest

from queryforge.errors import InvalidDateRangeError, InvalidTimezoneError
from queryforge.models.definition import TimeUnit
from queryforge.timezones import (
    adjust_range,
    align_range,
    bucket_starts,
    build_date_range,
    floor_to_unit,
    next_bucket,
    resolve,
)

SUMMER = datetime(2024, 6, 1, 12, 0)


class TestResolve:
    def test_explicit_wins(self):
        """An explicit timezone beats any header."""
        info = resolve({"x-timezone": "Europe/Berlin"}, explicit="America/New_York", at=SUMMER)
        assert info.timezone == "America/New_York"
        assert info.offset_minutes == -240
        assert info.source == "explicit"

    def test_invalid_explicit_raises(self):
        with pytest.raises(InvalidTimezoneError, match="Mars/Olympus"):
            resolve({}, explicit="Mars/Olympus")

    def test_header_order(self):
        """Headers are tried in order, case-insensitively."""
        info = resolve(
            {"CF-Timezone": "Asia/Tokyo", "X-Timezone": "Europe/Berlin"}, at=SUMMER
        )
        assert info.timezone == "Europe/Berlin"
        assert info.source == "x-timezone"
        assert info.offset_minutes == 120

    def test_invalid_header_skipped(self):
        info = resolve({"x-timezone": "nonsense", "x-vercel-ip-timezone": "Asia/Tokyo"}, at=SUMMER)
        assert info.timezone == "Asia/Tokyo"
        assert info.offset_minutes == 540

    def test_default_utc(self):
        info = resolve({})
        assert info.timezone == "UTC"
        assert info.offset_minutes == 0
        assert info.source == "default"


class TestAdjustRange:
    def test_utc_passthrough(self):
        """UTC leaves the caller's strings alone."""
        assert adjust_range("2024-06-01", "2024-06-02", "UTC") == ("2024-06-01", "2024-06-02")

    def test_new_york_local_day(self):
        """A New York day is 04:00Z to 03:59:59Z the next day in summer."""
        assert adjust_range("2024-06-01", "2024-06-01", "America/New_York") == (
            "2024-06-01 04:00:00",
            "2024-06-02 03:59:59",
        )

    def test_dst_start_day(self):
        """The spring-forward day is only 23 hours long."""
        assert adjust_range("2024-03-10", "2024-03-10", "America/New_York") == (
            "2024-03-10 05:00:00",
            "2024-03-11 03:59:59",
        )

    def test_positive_offset(self):
        assert adjust_range("2024-06-01", "2024-06-01", "Asia/Tokyo") == (
            "2024-05-31 15:00:00",
            "2024-06-01 14:59:59",
        )

    def test_datetime_points_kept(self):
        """Explicit times are converted, not expanded to whole days."""
        assert adjust_range("2024-06-01T10:00:00", "2024-06-01T11:00:00", "Europe/Berlin") == (
            "2024-06-01 08:00:00",
            "2024-06-01 09:00:00",
        )

    def test_invalid_timezone(self):
        with pytest.raises(InvalidTimezoneError):
            adjust_range("2024-06-01", "2024-06-01", "Not/AZone")


class TestBuildDateRange:
    def test_utc_day(self):
        dr = build_date_range("2024-06-01", "2024-06-07")
        assert dr.start == datetime(2024, 6, 1)
        assert dr.end == datetime(2024, 6, 7, 23, 59, 59)
        assert dr.timezone == "UTC"

    def test_local_day(self):
        dr = build_date_range("2024-06-01", "2024-06-01", "America/New_York", TimeUnit.HOUR)
        assert dr.start == datetime(2024, 6, 1, 4)
        assert dr.end == datetime(2024, 6, 2, 3, 59, 59)
        assert dr.granularity == TimeUnit.HOUR

    def test_reversed_range(self):
        with pytest.raises(InvalidDateRangeError, match="after"):
            build_date_range("2024-06-07", "2024-06-01")

    def test_garbage_date(self):
        with pytest.raises(InvalidDateRangeError):
            build_date_range("yesterday", "2024-06-01")


class TestBucketArithmetic:
    def test_floor(self):
        moment = datetime(2024, 6, 5, 13, 47, 12)
        assert floor_to_unit(moment, TimeUnit.MINUTE) == datetime(2024, 6, 5, 13, 47)
        assert floor_to_unit(moment, TimeUnit.HOUR) == datetime(2024, 6, 5, 13)
        assert floor_to_unit(moment, TimeUnit.DAY) == datetime(2024, 6, 5)
        assert floor_to_unit(moment, TimeUnit.WEEK) == datetime(2024, 6, 3)
        assert floor_to_unit(moment, TimeUnit.MONTH) == datetime(2024, 6, 1)

    def test_next_month_handles_lengths(self):
        assert next_bucket(datetime(2024, 1, 1), TimeUnit.MONTH) == datetime(2024, 2, 1)
        assert next_bucket(datetime(2024, 2, 1), TimeUnit.MONTH) == datetime(2024, 3, 1)
        assert next_bucket(datetime(2024, 12, 1), TimeUnit.MONTH) == datetime(2025, 1, 1)

    def test_align_week(self):
        start, end = align_range(
            datetime(2024, 6, 5), datetime(2024, 6, 5, 23, 59, 59), TimeUnit.WEEK
        )
        assert start == datetime(2024, 6, 3)
        assert end == datetime(2024, 6, 9, 23, 59, 59)

    def test_align_in_local_zone(self):
        """Alignment happens on local boundaries, returned in UTC."""
        start, end = align_range(
            datetime(2024, 6, 1, 4), datetime(2024, 6, 2, 3, 59, 59), TimeUnit.DAY, "America/New_York"
        )
        assert start == datetime(2024, 6, 1, 4)
        assert end == datetime(2024, 6, 2, 3, 59, 59)

    def test_bucket_starts(self):
        buckets = bucket_starts(datetime(2024, 6, 1), datetime(2024, 6, 3, 23, 59, 59), TimeUnit.DAY)
        assert buckets == [datetime(2024, 6, 1), datetime(2024, 6, 2), datetime(2024, 6, 3)]

    def test_bucket_starts_local(self):
        """Starts are local times of the zone."""
        buckets = bucket_starts(
            datetime(2024, 6, 1, 4), datetime(2024, 6, 2, 3, 59, 59), TimeUnit.DAY, "America/New_York"
        )
        assert buckets == [datetime(2024, 6, 1)]
