"""Tests for datetime helpers."""

from datetime import datetime, timezone

import pendulum

from backend.services.datetime_service import (
    format_iso,
    months_ago,
    next_daily_run,
    now_millis,
    now_utc,
    parse_datetime,
)


class TestDatetimeParsing:
    def test_parse_iso_with_offset(self) -> None:
        result = parse_datetime("2026-02-02T22:21:29.975359+00:00")
        assert result.year == 2026
        assert result.hour == 22
        assert result.utcoffset() is not None

    def test_parse_date_only(self) -> None:
        result = parse_datetime("2026-02-02")
        assert (result.year, result.month, result.day, result.hour) == (2026, 2, 2, 0)

    def test_parse_datetime_naive_adds_tz(self) -> None:
        result = parse_datetime(datetime(2026, 1, 1, 12, 0), default_tz="UTC")
        assert result.tzinfo is not None

    def test_format_iso_roundtrip(self) -> None:
        dt = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert parse_datetime(format_iso(dt)) == dt

    def test_format_iso_naive_is_utc(self) -> None:
        assert format_iso(datetime(2030, 1, 1)).endswith("+00:00")


class TestClock:
    def test_now_utc_is_aware(self) -> None:
        assert now_utc().tzinfo is not None

    def test_now_millis_matches_now_utc(self) -> None:
        assert abs(now_millis() - now_utc().timestamp() * 1000) < 1000


class TestCalendarArithmetic:
    def test_months_ago(self) -> None:
        assert months_ago(3, pendulum.date(2024, 6, 15)) == "2024-03-15"

    def test_months_ago_clamps_month_end(self) -> None:
        assert months_ago(3, pendulum.date(2024, 5, 31)) == "2024-02-29"

    def test_months_ago_crosses_year(self) -> None:
        assert months_ago(3, pendulum.date(2024, 1, 10)) == "2023-10-10"

    def test_next_daily_run_is_tomorrow(self) -> None:
        now = pendulum.datetime(2024, 12, 31, 8, 30, tz="Europe/Warsaw")
        run = next_daily_run(now, 0, 1)
        assert (run.year, run.month, run.day, run.hour, run.minute) == (2025, 1, 1, 0, 1)
        assert run.timezone_name == "Europe/Warsaw"
