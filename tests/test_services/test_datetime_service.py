"""Tests for datetime parsing and the fixed-width storage format."""

from datetime import datetime, timedelta, timezone

from coordinator.services.datetime_service import (
    format_datetime,
    format_iso,
    now_utc,
    parse_datetime,
    parse_stored,
)


class TestDatetimeParsing:
    def test_parse_full_format(self) -> None:
        result = parse_datetime("2026-02-02 22:21:29.975359+00")
        assert (result.year, result.month, result.day) == (2026, 2, 2)
        assert (result.hour, result.minute) == (22, 21)

    def test_parse_date_only(self) -> None:
        result = parse_datetime("2026-02-02")
        assert (result.year, result.month, result.day) == (2026, 2, 2)
        assert (result.hour, result.minute) == (0, 0)

    def test_parse_naive_datetime_adds_tz(self) -> None:
        result = parse_datetime(datetime(2026, 1, 1, 12, 0), default_tz="UTC")
        assert result.tzinfo is not None


class TestStorageFormat:
    def test_format_converts_to_utc(self) -> None:
        eastern = timezone(timedelta(hours=-5))
        dt = datetime(2026, 2, 2, 17, 21, 29, 975359, tzinfo=eastern)
        assert format_datetime(dt) == "2026-02-02 22:21:29.975359+0000"

    def test_naive_datetime_treated_as_utc(self) -> None:
        assert format_datetime(datetime(2026, 1, 1)) == "2026-01-01 00:00:00.000000+0000"

    def test_parse_stored_roundtrip(self) -> None:
        dt = datetime(2026, 3, 4, 5, 6, 7, 8, tzinfo=timezone.utc)
        assert parse_stored(format_datetime(dt)) == dt
        assert parse_stored(None) is None

    def test_lexicographic_order_is_chronological(self) -> None:
        earlier = format_datetime(datetime(2026, 1, 1, 9, 59, 59, 999999, tzinfo=timezone.utc))
        later = format_datetime(datetime(2026, 1, 1, 10, 0, tzinfo=timezone.utc))
        assert earlier < later

    def test_format_iso(self) -> None:
        assert format_iso(datetime(2026, 1, 1)) == "2026-01-01T00:00:00+00:00"

    def test_now_utc(self) -> None:
        assert now_utc().tzinfo is not None
