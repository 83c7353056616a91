"""Suggest schedules from recurring, not yet scheduled transactions."""

from __future__ import annotations

from collections import defaultdict
from datetime import date
from statistics import median
from typing import Any, Dict, List, Optional, Tuple

from fx_ledger.db.store import Store
from fx_ledger.utils.dates import add_days, current_day, parse_date
from fx_ledger.utils.logger import get_logger

LOGGER = get_logger(__name__)

LOOKBACK_DAYS = 365
MIN_OCCURRENCES = 3
DAY_OF_MONTH_TOLERANCE = 2
AMOUNT_TOLERANCE = 0.10
# Allowed gap, in days, between consecutive occurrences per recurrence.
MONTHLY_GAP = (25, 35)
WEEKLY_INTERVALS = {1: (6, 8), 2: (13, 15)}


def _amount_is_stable(amounts: List[int]) -> Optional[int]:
    center = median(amounts)
    limit = abs(center) * AMOUNT_TOLERANCE
    if center == 0 or any(abs(amount - center) > limit for amount in amounts):
        return None
    return int(round(center))


def _monthly_config(dates: List[date]) -> Optional[Dict[str, Any]]:
    gaps = [(later - earlier).days for earlier, later in zip(dates, dates[1:])]
    if not all(MONTHLY_GAP[0] <= gap <= MONTHLY_GAP[1] for gap in gaps):
        return None
    days = [day.day for day in dates]
    center = int(median(days))
    if any(abs(day - center) > DAY_OF_MONTH_TOLERANCE for day in days):
        return None
    return {
        "start": dates[0].isoformat(),
        "interval": 1,
        "frequency": "monthly",
        "patterns": [{"type": "day", "value": center}],
        "skipWeekend": False,
        "weekendSolveMode": "after",
        "endMode": "never",
    }


def _weekly_config(dates: List[date]) -> Optional[Dict[str, Any]]:
    gaps = [(later - earlier).days for earlier, later in zip(dates, dates[1:])]
    for interval, (low, high) in WEEKLY_INTERVALS.items():
        if all(low <= gap <= high for gap in gaps):
            return {
                "start": dates[0].isoformat(),
                "interval": interval,
                "frequency": "weekly",
                "patterns": [],
                "skipWeekend": False,
                "weekendSolveMode": "after",
                "endMode": "never",
            }
    return None


def find_schedules(store: Store, today: Optional[str] = None) -> List[Dict[str, Any]]:
    """Group the last year's unscheduled transactions by account and payee.

    A group becomes a candidate when it has at least three transactions that
    recur monthly on a stable day or every one or two weeks, and whose amounts
    stay within 10% of their median.
    """

    today = today or current_day()
    rows = store.all(
        """
        SELECT account, payee, amount, date
          FROM transactions
         WHERE tombstone = 0
           AND schedule IS NULL
           AND payee IS NOT NULL
           AND date >= :since
           AND date <= :today
         ORDER BY date
        """,
        {"since": add_days(today, -LOOKBACK_DAYS), "today": today},
    )
    groups: Dict[Tuple[str, str], List[Dict[str, Any]]] = defaultdict(list)
    for row in rows:
        groups[(row["account"], row["payee"])].append(row)

    candidates: List[Dict[str, Any]] = []
    for (account, payee), transactions in groups.items():
        if len(transactions) < MIN_OCCURRENCES:
            continue
        amount = _amount_is_stable([row["amount"] for row in transactions])
        if amount is None:
            continue
        dates = [parse_date(row["date"]) for row in transactions]
        config = _monthly_config(dates) or _weekly_config(dates)
        if config is None:
            continue
        conditions = [
            {"op": "is", "field": "account", "value": account},
            {"op": "is", "field": "payee", "value": payee},
            {"op": "isapprox", "field": "amount", "value": amount},
            {"op": "isapprox", "field": "date", "value": config},
        ]
        candidates.append(
            {
                "account": account,
                "payee": payee,
                "amount": amount,
                "date": config,
                "_conditions": conditions,
            }
        )
    LOGGER.debug("Discovered %s schedule candidate(s)", len(candidates))
    return candidates


__all__ = ["find_schedules"]
