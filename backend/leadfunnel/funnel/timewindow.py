"""Report windows and timestamp normalisation."""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone


def local_now() -> datetime:
    """Naive local wall-clock time."""
    return datetime.now()


def since_date(days: int, now: datetime | None = None) -> datetime:
    """Start of the reporting window.

    ``days == 1`` means "Today": local midnight of the current day rather
    than a rolling 24 hours.  Any other value is a rolling window of
    ``days`` days ending now.

    Naive values are local wall-clock times; midnight is localised on its
    own so a daylight-saving change later in the day does not shift it.
    """
    now = now or local_now()
    if days == 1:
        midnight = datetime.combine(now.date(), time(), tzinfo=now.tzinfo)
        return midnight if midnight.tzinfo else midnight.astimezone()
    if now.tzinfo is None:
        now = now.astimezone()
    return now - timedelta(days=days)


def to_utc(value: datetime) -> datetime:
    """Aware UTC datetime; naive values are taken to already be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def window_start(days: int, now: datetime | None = None) -> datetime:
    """``since_date`` converted to the UTC form timestamps are stored in."""
    return to_utc(since_date(days, now))


def parse_event_timestamp(value: object) -> datetime:
    """Accept ISO-8601 strings, epoch milliseconds, datetimes or nothing."""
    if value is None or value == "":
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_utc(datetime.fromisoformat(text))
        except ValueError as exc:
            raise ValueError(f"Invalid timestamp: {value!r}") from exc
    raise ValueError(f"Invalid timestamp: {value!r}")
