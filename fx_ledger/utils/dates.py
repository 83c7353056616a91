"""Calendar helpers shared by the exchange rate and schedule engines.

"Today" is always the local calendar day. Fetch and record timestamps are kept
as timezone-aware UTC ISO strings, and provider epoch timestamps are mapped to
the local calendar day they fall on.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone


def parse_date(value: str | date | datetime) -> date:
    """Parse an ISO ``YYYY-MM-DD`` string (or date-like object) to :class:`date`."""

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(value[:10], "%Y-%m-%d").date()


def current_day() -> str:
    return date.today().isoformat()


def add_days(day: str | date, days: int) -> str:
    return (parse_date(day) + timedelta(days=days)).isoformat()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_timestamp(moment: datetime | None = None) -> str:
    """Return an ISO-8601 UTC timestamp with millisecond precision."""

    moment = moment or utc_now()
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp; naive values are read as UTC."""

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def timestamp_from_epoch(seconds: float) -> str:
    return iso_timestamp(datetime.fromtimestamp(seconds, tz=timezone.utc))


def day_from_epoch(seconds: float) -> str:
    """Local calendar day an epoch timestamp (seconds) falls on."""

    return datetime.fromtimestamp(seconds).date().isoformat()


def epoch_millis(moment: datetime | None = None) -> int:
    moment = moment or utc_now()
    return int(moment.timestamp() * 1000)


__all__ = [
    "add_days",
    "current_day",
    "day_from_epoch",
    "epoch_millis",
    "iso_timestamp",
    "parse_date",
    "parse_timestamp",
    "timestamp_from_epoch",
    "utc_now",
]
