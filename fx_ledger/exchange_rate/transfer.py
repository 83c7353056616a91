"""How ``fx_rate`` on a transfer leg shapes its counterpart.

A transaction whose ``fx_rate`` is set to anything other than ``0`` or ``1``
moves money between accounts held in different currencies. The opposite leg
then receives the converted amount and the inverse rate.
"""

from __future__ import annotations

import math
from typing import Any, Mapping

Transaction = Mapping[str, Any]


def has_foreign_exchange_rate(transaction: Transaction | None) -> bool:
    if not transaction:
        return False
    fx_rate = transaction.get("fx_rate")
    return fx_rate is not None and fx_rate != 0 and fx_rate != 1


def inverse_fx_rate(fx_rate: float) -> float:
    return 1 / fx_rate


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def transfer_counterpart_amount(transaction: Transaction) -> int:
    """Amount the opposite leg should carry."""

    amount = transaction.get("amount") or 0
    if has_foreign_exchange_rate(transaction):
        return -_round_half_up(amount * transaction["fx_rate"])
    return -amount


def transfer_leg(
    transaction: Transaction, transfer_account: str, payee: str | None
) -> dict[str, Any]:
    """The opposite leg of ``transaction``, posted into ``transfer_account``.

    ``payee`` is the transfer payee standing for the account ``transaction``
    was posted to.
    """

    leg: dict[str, Any] = {
        "account": transfer_account,
        "amount": transfer_counterpart_amount(transaction),
        "payee": payee,
        "date": transaction["date"],
        "notes": transaction.get("notes"),
        "schedule": transaction.get("schedule"),
        "transfer_id": transaction["id"],
        "cleared": 0,
    }
    if has_foreign_exchange_rate(transaction):
        leg["fx_rate"] = inverse_fx_rate(transaction["fx_rate"])
    return leg


__all__ = [
    "has_foreign_exchange_rate",
    "inverse_fx_rate",
    "transfer_counterpart_amount",
    "transfer_leg",
]
