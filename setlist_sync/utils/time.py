"""Time helpers shared by the queue and the sync handlers."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

__all__ = ["as_utc", "is_fresh", "now_utc", "parse_provider_datetime", "same_utc_day"]


def now_utc() -> datetime:
    """Return the current UTC time with timezone information."""

    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime.

    SQLite hands back naive values for ``DateTime(timezone=True)`` columns;
    those are stored in UTC so they are tagged rather than converted.
    """

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def is_fresh(last_synced_at: datetime | None, window_s: int, *, now: datetime | None = None) -> bool:
    if last_synced_at is None or window_s <= 0:
        return False
    reference = as_utc(now) or now_utc()
    synced = as_utc(last_synced_at)
    assert synced is not None
    return reference - synced < timedelta(seconds=window_s)


def parse_provider_datetime(value: object | None) -> datetime | None:
    """Parse ISO timestamps (``2024-05-01T19:30:00Z``) and bare dates.

    Also accepts the ``DD-MM-YYYY`` format used for setlist event dates.
    """

    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    text = str(value).strip()
    if not text:
        return None
    if len(text) == 10 and text[2] == "-" and text[5] == "-":
        try:
            return datetime.strptime(text, "%d-%m-%Y").replace(tzinfo=UTC)
        except ValueError:
            return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return as_utc(parsed)


def same_utc_day(value: datetime) -> tuple[datetime, datetime]:
    """Return the ``[start, end)`` bounds of the UTC day containing ``value``."""

    resolved = as_utc(value)
    assert resolved is not None
    start = resolved.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)
