"""Derived schedule state: condition projection, status and amounts."""

from __future__ import annotations

import math
from typing import Any, Mapping, NamedTuple, Optional, Sequence

from dateutil.relativedelta import relativedelta

from fx_ledger.utils.dates import add_days, current_day, parse_date

DEFAULT_UPCOMING_LENGTH = "7"

Condition = Mapping[str, Any]


class ScheduleConditions(NamedTuple):
    """The conditions of a rule that define a schedule, in merge order."""

    payee: Optional[Condition]
    account: Optional[Condition]
    amount: Optional[Condition]
    date: Optional[Condition]


def _find(conditions: Sequence[Condition], ops: tuple[str, ...], fields: tuple[str, ...]) -> Optional[Condition]:
    for wanted in fields:
        for condition in conditions:
            if condition.get("op") in ops and condition.get("field") == wanted:
                return condition
    return None


def extract_schedule_conds(conditions: Sequence[Condition]) -> ScheduleConditions:
    return ScheduleConditions(
        payee=_find(conditions, ("is",), ("payee", "description")),
        account=_find(conditions, ("is",), ("account", "acct")),
        amount=_find(conditions, ("is", "isapprox", "isbetween"), ("amount",)),
        date=_find(conditions, ("is", "isapprox"), ("date",)),
    )


def update_conditions(conditions: Sequence[Condition], new_conditions: Sequence[Condition]) -> list[Condition]:
    """Replace each schedule condition with its counterpart in ``new_conditions``.

    Conditions only present in ``new_conditions`` are appended; all others are
    kept as they are.
    """

    replacements = list(zip(extract_schedule_conds(conditions), extract_schedule_conds(new_conditions)))
    updated: list[Condition] = []
    for condition in conditions:
        replacement = next((new for old, new in replacements if old is condition), None)
        updated.append(replacement if replacement is not None else condition)
    added = [new for old, new in replacements if old is None and new is not None]
    return updated + added


def get_upcoming_days(upcoming_length: str | None = DEFAULT_UPCOMING_LENGTH, today: str | None = None) -> int:
    """Number of days after today that count as "upcoming"."""

    length = str(upcoming_length or DEFAULT_UPCOMING_LENGTH)
    current = parse_date(today or current_day())
    if length == "currentMonth":
        month_end = current + relativedelta(day=31)
        return (month_end - current).days
    if length == "oneMonth":
        first = current.replace(day=1)
        return ((first + relativedelta(months=1)) - first).days
    if "-" in length:
        raw_number, _, unit = length.partition("-")
        try:
            number = max(1, int(raw_number))
        except ValueError:
            return 7
        if unit == "day":
            return number
        if unit == "week":
            return number * 7
        if unit == "month":
            return (current + relativedelta(months=number) - current).days
        if unit == "year":
            return (current + relativedelta(years=number) - current).days
        return 7
    try:
        return int(length)
    except ValueError:
        return 7


def get_status(
    next_date: str | None,
    completed: bool,
    has_transaction: bool,
    upcoming_length: str | None = DEFAULT_UPCOMING_LENGTH,
    today: str | None = None,
) -> str:
    today = today or current_day()
    if completed:
        return "completed"
    if has_transaction:
        return "paid"
    if next_date == today:
        return "due"
    if next_date and today < next_date <= add_days(today, get_upcoming_days(upcoming_length, today)):
        return "upcoming"
    if next_date and next_date < today:
        return "missed"
    return "scheduled"


def get_scheduled_amount(amount: Any, inverse: bool = False) -> int:
    """Projected amount of an ``amount`` condition value.

    ``isbetween`` values (``{"num1": .., "num2": ..}``) project to their
    midpoint, rounded half up.
    """

    if amount is None:
        return 0
    if isinstance(amount, Mapping):
        value = math.floor((amount.get("num1", 0) + amount.get("num2", 0)) / 2 + 0.5)
    else:
        value = amount
    return -int(value) if inverse else int(value)


def has_transaction_since(date_condition: Condition | None, next_date: str) -> str:
    """Earliest transaction date that marks the occurrence on ``next_date`` as paid."""

    if date_condition is not None and date_condition.get("op") == "is":
        return next_date
    return add_days(next_date, -2)


__all__ = [
    "DEFAULT_UPCOMING_LENGTH",
    "ScheduleConditions",
    "extract_schedule_conds",
    "get_scheduled_amount",
    "get_status",
    "get_upcoming_days",
    "has_transaction_since",
    "update_conditions",
]
