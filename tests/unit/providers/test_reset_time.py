"""Tests for rate-limit reset time parsing."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from forgeloop.providers.reset_time import (
    DEFAULT_RESET_SECONDS,
    parse_absolute,
    parse_clock_time,
    parse_relative,
    parse_reset_time,
    reset_delay,
)

NOW = datetime(2026, 3, 1, 14, 30, 0, tzinfo=UTC)


class TestParsers:
    def test_clock_time_later_today(self) -> None:
        assert parse_clock_time("limit hit, resets 4pm", NOW) == NOW.replace(hour=16, minute=0)

    def test_clock_time_rolls_to_tomorrow(self) -> None:
        expected = (NOW + timedelta(days=1)).replace(hour=4, minute=0)
        assert parse_clock_time("usage limit reached, resets 4am", NOW) == expected

    def test_clock_time_with_minutes(self) -> None:
        assert parse_clock_time("reset at 11:45 pm", NOW) == NOW.replace(hour=23, minute=45)

    def test_relative_seconds(self) -> None:
        assert parse_relative("Please retry after 30 seconds", NOW) == NOW + timedelta(seconds=30)

    def test_relative_minutes(self) -> None:
        assert parse_relative("try again in 5 minutes", NOW) == NOW + timedelta(minutes=5)

    def test_epoch_suffix(self) -> None:
        parsed = parse_absolute("Claude AI usage limit reached|1772380800", NOW)
        assert parsed == datetime.fromtimestamp(1772380800, tz=UTC)

    def test_absolute_timestamp(self) -> None:
        parsed = parse_absolute("quota resets at 2026-03-01 18:00:00", NOW)
        assert parsed == datetime(2026, 3, 1, 18, 0, 0, tzinfo=UTC)

    def test_no_match(self) -> None:
        assert parse_reset_time("segmentation fault", NOW) is None


class TestResetDelay:
    def test_default_when_unparseable(self) -> None:
        assert reset_delay("rate limited", NOW) == DEFAULT_RESET_SECONDS

    def test_default_when_in_past(self) -> None:
        assert reset_delay("resets at 2020-01-01 00:00:00", NOW, default=7.0) == 7.0

    def test_seconds_until_reset(self) -> None:
        assert reset_delay("retry after 90s", NOW) == 90.0

    def test_custom_parsers(self) -> None:
        def parser(text: str, now: datetime) -> datetime | None:
            return now + timedelta(seconds=5) if "cool" in text else None

        assert reset_delay("cool down", NOW, parsers=[parser]) == 5.0
        assert reset_delay("retry after 90s", NOW, parsers=[parser]) == DEFAULT_RESET_SECONDS
