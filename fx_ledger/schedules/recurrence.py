"""Expansion of schedule date conditions into calendar days.

A date condition's ``value`` is either a literal ``YYYY-MM-DD`` day or a
recurrence descriptor::

    {
        "start": "2020-12-20",
        "frequency": "monthly",          # daily | weekly | monthly | yearly
        "interval": 1,
        "patterns": [{"type": "day", "value": 15}, {"type": "FR", "value": -1}],
        "skipWeekend": False,
        "weekendSolveMode": "after",     # after | before
        "endMode": "never",              # never | after_n_occurrences | on_date
        "endOccurrences": 3,
        "endDate": "2021-06-30",
    }

Monthly ``day`` patterns select days of the month (``-1`` is the last day);
weekday patterns (``MO`` .. ``SU``) select the n-th such weekday, counted from
the end when negative. Occurrences are placed at noon so local DST shifts
never move them across a day boundary.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from itertools import islice
from typing import Any, Iterator, Mapping

from dateutil.relativedelta import FR, MO, SA, SU, TH, TU, WE
from dateutil.rrule import DAILY, MONTHLY, WEEKLY, YEARLY, rrule, rruleset

from fx_ledger.utils.dates import current_day, parse_date

FREQUENCIES = {"daily": DAILY, "weekly": WEEKLY, "monthly": MONTHLY, "yearly": YEARLY}
WEEKDAYS = {"MO": MO, "TU": TU, "WE": WE, "TH": TH, "FR": FR, "SA": SA, "SU": SU}
OCCURRENCE_TIME = time(12, 0)


def is_recurring(value: Any) -> bool:
    return isinstance(value, Mapping) and bool(value.get("frequency"))


def _weekday(pattern_type: str, nth: Any):
    weekday = WEEKDAYS.get(str(pattern_type)[:2].upper())
    if weekday is None:
        raise ValueError(f"Unknown recurrence pattern: {pattern_type}")
    return weekday(int(nth)) if nth else weekday


def config_to_rruleset(config: Mapping[str, Any]) -> rruleset:
    """Build the :class:`rruleset` a recurrence descriptor stands for."""

    frequency = FREQUENCIES.get(str(config.get("frequency", "")).lower())
    if frequency is None:
        raise ValueError(f"Unknown recurrence frequency: {config.get('frequency')}")
    base: dict[str, Any] = {
        "freq": frequency,
        "dtstart": datetime.combine(parse_date(config["start"]), OCCURRENCE_TIME),
        "interval": int(config.get("interval") or 1),
    }
    end_mode = config.get("endMode")
    if end_mode == "after_n_occurrences":
        base["count"] = int(config.get("endOccurrences") or 1)
    elif end_mode == "on_date" and config.get("endDate"):
        base["until"] = datetime.combine(parse_date(config["endDate"]), OCCURRENCE_TIME)

    rules: list[rrule] = []
    patterns = config.get("patterns") or []
    if frequency == MONTHLY and patterns:
        days = [int(p["value"]) for p in patterns if p.get("type") == "day"]
        weekdays = [_weekday(p["type"], p.get("value")) for p in patterns if p.get("type") != "day"]
        if days:
            rules.append(rrule(bymonthday=days, **base))
        if weekdays:
            rules.append(rrule(byweekday=weekdays, **base))
    if not rules:
        rules.append(rrule(**base))

    schedule = rruleset()
    for rule in rules:
        schedule.rrule(rule)
    return schedule


def get_date_with_skipped_weekend(day: date, mode: str | None) -> date:
    """Move a Saturday/Sunday to the next Monday (``after``) or previous Friday (``before``)."""

    weekday = day.weekday()
    if weekday < 5:
        return day
    if mode in (None, "after"):
        return day + timedelta(days=7 - weekday)
    if mode == "before":
        return day - timedelta(days=weekday - 4)
    raise ValueError(f"Unknown weekend solve mode: {mode}")


def iter_occurrences(
    config: Mapping[str, Any], start: str | date | None = None, *, skip_weekend: bool = True
) -> Iterator[date]:
    """Lazily yield occurrence days on or after ``start`` (default: today).

    Each call builds a fresh iterator, so the sequence can be restarted.
    """

    schedule = config_to_rruleset(config)
    begin = datetime.combine(parse_date(start or current_day()), time.min)
    adjust = skip_weekend and bool(config.get("skipWeekend"))
    for moment in schedule.xafter(begin, inc=True):
        day = moment.date()
        yield get_date_with_skipped_weekend(day, config.get("weekendSolveMode")) if adjust else day


def get_next_date(
    date_condition: Mapping[str, Any],
    after: str | date | None = None,
    *,
    skip_weekend: bool = True,
) -> str | None:
    """Next day a date condition matches on or after ``after`` (default: today).

    Literal dates are returned unchanged. When a finite recurrence has no
    occurrence left, its last occurrence is returned.
    """

    value = date_condition.get("value")
    if value is None:
        return None
    if not is_recurring(value):
        return str(value)

    upcoming = next(iter_occurrences(value, after, skip_weekend=skip_weekend), None)
    if upcoming is not None:
        return upcoming.isoformat()

    schedule = config_to_rruleset(value)
    last = None
    for last in schedule:
        pass
    if last is None:
        return None
    day = last.date()
    if skip_weekend and value.get("skipWeekend"):
        day = get_date_with_skipped_weekend(day, value.get("weekendSolveMode"))
    return day.isoformat()


def get_upcoming_dates(
    config: Mapping[str, Any], count: int, *, today: str | date | None = None
) -> list[str]:
    return [day.isoformat() for day in islice(iter_occurrences(config, today), max(count, 0))]


__all__ = [
    "config_to_rruleset",
    "get_date_with_skipped_weekend",
    "get_next_date",
    "get_upcoming_dates",
    "is_recurring",
    "iter_occurrences",
]
