"""Tests for queuespine.schedules: cron validation and next fire time."""

from datetime import UTC, datetime

import pytest

from queuespine.errors import InvalidCronError
from queuespine.schedules import next_fire_ms, recurring_key, validate_cron, validate_timezone


def _ms(*args, tz=UTC) -> int:
    return int(datetime(*args, tzinfo=tz).timestamp() * 1000)


class TestValidateCron:
    def test_normalises_whitespace(self):
        assert validate_cron("  0   9 * *  * ") == "0 9 * * *"

    def test_accepts_seconds_field(self):
        assert validate_cron("*/5 * * * * *") == "*/5 * * * * *"

    @pytest.mark.parametrize("pattern", ["", "   ", "* * *", "61 * * * *", "0 25 * * *"])
    def test_rejects_invalid(self, pattern):
        with pytest.raises(InvalidCronError):
            validate_cron(pattern)


class TestValidateTimezone:
    def test_none_passes(self):
        assert validate_timezone(None) is None

    def test_known_zone(self):
        assert validate_timezone("Europe/London") == "Europe/London"

    def test_unknown_zone(self):
        with pytest.raises(InvalidCronError, match="Mars/Olympus"):
            validate_timezone("Mars/Olympus")


class TestNextFire:
    def test_utc_daily(self):
        after = _ms(2026, 3, 1, 8, 30)
        assert next_fire_ms("0 9 * * *", after_ms=after) == _ms(2026, 3, 1, 9, 0)

    def test_strictly_after(self):
        at_nine = _ms(2026, 3, 1, 9, 0)
        assert next_fire_ms("0 9 * * *", after_ms=at_nine) == _ms(2026, 3, 2, 9, 0)

    def test_timezone_applied(self):
        # 09:00 in New York during EST is 14:00 UTC
        after = _ms(2026, 1, 15, 0, 0)
        assert next_fire_ms("0 9 * * *", "America/New_York", after_ms=after) == _ms(
            2026, 1, 15, 14, 0
        )

    def test_seconds_pattern(self):
        after = _ms(2026, 3, 1, 8, 0, 1)
        assert next_fire_ms("*/5 * * * * *", after_ms=after) == _ms(2026, 3, 1, 8, 0, 5)


class TestRecurringKey:
    def test_changes_with_pattern_and_tz(self):
        a = recurring_key("reports.daily", "reports.daily", "0 9 * * *", None)
        b = recurring_key("reports.daily", "reports.daily", "0 10 * * *", None)
        c = recurring_key("reports.daily", "reports.daily", "0 9 * * *", "UTC")
        assert len({a, b, c}) == 3
