"""Cron helpers for recurring jobs.

Patterns follow the common cron dialect: five fields
(``minute hour day month weekday``) or six with a leading seconds field
(``*/5 * * * * *`` fires every five seconds). Timezones are IANA names;
``None`` means UTC.
"""

from __future__ import annotations

import zoneinfo
from datetime import UTC, datetime

from croniter import croniter

from queuespine.errors import InvalidCronError
from queuespine.models import now_ms


def _has_seconds(pattern: str) -> bool:
    return len(pattern.split()) == 6


def validate_cron(pattern: str) -> str:
    """Return the normalised pattern or raise :class:`InvalidCronError`."""
    if not isinstance(pattern, str) or not pattern.strip():
        raise InvalidCronError("Cron pattern must be a non-empty string")
    normalised = " ".join(pattern.split())
    if len(normalised.split()) not in (5, 6):
        raise InvalidCronError(
            f"Cron pattern must have 5 or 6 fields: {pattern!r}",
            context={"pattern": pattern},
        )
    if not croniter.is_valid(normalised, second_at_beginning=_has_seconds(normalised)):
        raise InvalidCronError(f"Invalid cron pattern: {pattern!r}", context={"pattern": pattern})
    return normalised


def validate_timezone(tz: str | None) -> str | None:
    """Return ``tz`` if it names a known IANA zone (or is None)."""
    if tz is None:
        return None
    try:
        zoneinfo.ZoneInfo(tz)
    except (zoneinfo.ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidCronError(f"Unknown timezone: {tz!r}", context={"tz": tz}, cause=e) from e
    return tz


def next_fire_ms(pattern: str, tz: str | None = None, after_ms: int | None = None) -> int:
    """Epoch ms of the first occurrence of ``pattern`` strictly after ``after_ms``."""
    after_ms = now_ms() if after_ms is None else after_ms
    zone = zoneinfo.ZoneInfo(tz) if tz else UTC
    start = datetime.fromtimestamp(after_ms / 1000, tz=UTC).astimezone(zone)

    itr = croniter(pattern, start, second_at_beginning=_has_seconds(pattern))
    nxt: datetime = itr.get_next(datetime)
    return int(nxt.timestamp() * 1000)


def recurring_key(name: str, job_id: str, pattern: str, tz: str | None) -> str:
    """Stable broker key for a recurring registration.

    The key embeds the pattern and timezone, so changing either yields a new
    key; reconciliation therefore matches existing entries by id or name.
    """
    return f"{name}:{job_id}:{tz or ''}:{pattern}"
