"""Schedule engine: rule-backed recurring transactions.

Every schedule owns exactly one rule whose actions contain a
``link-schedule`` action pointing back at it. The schedule's payee, account,
amount and date are projections of that rule's conditions. Its materialised
``next_date`` lives in ``schedules_next_date`` as a base/local pair: the local
value applies while its timestamp equals the base timestamp.
"""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

from sqlalchemy import and_, distinct, or_, select

from fx_ledger.db.models import TransactionRow
from fx_ledger.db.preferences import (
    DEFAULT_CURRENCY_CODE,
    LAST_SCHEDULE_RUN,
    UPCOMING_SCHEDULED_TRANSACTION_LENGTH,
    Preferences,
)
from fx_ledger.db.store import Row, Store
from fx_ledger.errors import FxLedgerError, ScheduleNotFoundError, ValidationError
from fx_ledger.events import SCHEDULES_OFFLINE, SYNC_EVENT, EventBus
from fx_ledger.exchange_rate.transfer import transfer_leg
from fx_ledger.rules.conditions import LINK_SCHEDULE
from fx_ledger.rules.repository import Rule, RuleStore
from fx_ledger.schedules import recurrence, transfer
from fx_ledger.schedules.discover import find_schedules
from fx_ledger.schedules.status import (
    DEFAULT_UPCOMING_LENGTH,
    extract_schedule_conds,
    get_scheduled_amount,
    get_status,
    has_transaction_since,
    update_conditions,
)
from fx_ledger.utils.dates import add_days, current_day, epoch_millis
from fx_ledger.utils.logger import get_logger

LOGGER = get_logger(__name__)

SYNC_OUTCOMES = frozenset({"success", "error", "unauthorized"})
SCHEDULE_FIELDS = ("name", "active", "completed", "posts_transaction")
# Upper bound on retries when a weekend shift maps the next occurrence back
# onto the current one.
_ADVANCE_ATTEMPTS = 7

# ``(from_currency, to_currency, date) -> rate``
RateLookup = Callable[[str, str, str], float | None]


@dataclass(slots=True)
class AdvanceResult:
    """Outcome of one :meth:`ScheduleService.advance_schedules_service` pass."""

    posted: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    advanced: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)


def _load_snapshot(raw: str | None) -> list[dict[str, Any]]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except ValueError:
        return []
    return value if isinstance(value, list) else []


def _strip_type(condition: Mapping[str, Any] | None) -> dict[str, Any]:
    return {key: value for key, value in (condition or {}).items() if key != "type"}


def _next_date_of(row: Row | None) -> str | None:
    if row is None:
        return None
    if row["local_next_date_ts"] == row["base_next_date_ts"]:
        return row["local_next_date"]
    return row["base_next_date"]


class ScheduleService:
    def __init__(
        self,
        store: Store,
        rules: RuleStore,
        preferences: Preferences,
        events: EventBus,
        today: Callable[[], str] | None = None,
        rate_lookup: RateLookup | None = None,
    ) -> None:
        self.store = store
        self.rules = rules
        self.preferences = preferences
        self.events = events
        self._today = today or current_day
        self._rate_lookup = rate_lookup
        self._advance_lock = threading.Lock()
        self._remove_listener = rules.add_listener(self._on_rule_update)

    def today(self) -> str:
        return self._today()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def _hydrate(self, row: Row, next_row: Row | None, rule: Rule | None) -> dict[str, Any]:
        if rule is not None:
            conditions, actions = rule.conditions, rule.actions
        else:
            conditions = _load_snapshot(row["conditions_snapshot"])
            actions = _load_snapshot(row["actions_snapshot"])
        conds = extract_schedule_conds(conditions)
        return {
            "id": row["id"],
            "name": row["name"],
            "rule": row["rule"],
            "active": bool(row["active"]),
            "completed": bool(row["completed"]),
            "posts_transaction": bool(row["posts_transaction"]),
            "next_date": _next_date_of(next_row),
            "_conditions": conditions,
            "_actions": actions,
            "_payee": conds.payee.get("value") if conds.payee else None,
            "_account": conds.account.get("value") if conds.account else None,
            "_amount": conds.amount.get("value") if conds.amount else None,
            "_amount_op": conds.amount.get("op") if conds.amount else None,
            "_date": conds.date.get("value") if conds.date else None,
        }

    def _next_date_row(self, schedule_id: str) -> Row | None:
        return self.store.first(
            "SELECT * FROM schedules_next_date WHERE schedule_id = :id AND tombstone = 0",
            {"id": schedule_id},
        )

    def get_schedule(self, schedule_id: str) -> dict[str, Any] | None:
        row = self.store.get("schedules", schedule_id)
        if row is None or row["tombstone"]:
            return None
        return self._hydrate(row, self._next_date_row(schedule_id), self.rules.get(row["rule"]))

    def get_schedules(self, *, completed: bool | None = None) -> list[dict[str, Any]]:
        rows = self.store.all("SELECT * FROM schedules WHERE tombstone = 0 ORDER BY name, id")
        next_rows = {
            row["schedule_id"]: row
            for row in self.store.all("SELECT * FROM schedules_next_date WHERE tombstone = 0")
        }
        rules = {rule.id: rule for rule in self.rules.all()}
        schedules = [
            self._hydrate(row, next_rows.get(row["id"]), rules.get(row["rule"])) for row in rows
        ]
        if completed is None:
            return schedules
        return [schedule for schedule in schedules if schedule["completed"] == completed]

    def _require(self, schedule_id: str) -> Row:
        row = self.store.get("schedules", schedule_id)
        if row is None or row["tombstone"]:
            raise ScheduleNotFoundError(f"Schedule not found: {schedule_id}")
        return row

    def _name_taken(self, name: str, schedule_id: str | None) -> bool:
        row = self.store.first(
            "SELECT id FROM schedules WHERE tombstone = 0 AND name = :name", {"name": name}
        )
        if row is None:
            return False
        return row["id"] != schedule_id if schedule_id else True

    # ------------------------------------------------------------------
    # Rule linkage
    # ------------------------------------------------------------------
    def get_rule_for_schedule(self, schedule_id: str | None) -> Rule | None:
        if schedule_id is None:
            raise ValidationError("Schedule not attached to a rule")
        row = self.store.get("schedules", schedule_id)
        if row is None:
            return None
        return self.rules.get(row["rule"])

    def fix_rule_for_schedule(self, schedule_id: str) -> Rule:
        """Replace a schedule's missing or corrupt rule with a minimal linked one."""

        row = self.store.get("schedules", schedule_id)
        with self.store.batch():
            if row is not None and row["rule"]:
                self.rules.delete(row["rule"])
            rule_id = self.rules.insert(
                {
                    "stage": None,
                    "conditionsOp": "and",
                    "conditions": [
                        {"op": "isapprox", "field": "date", "value": self.today()},
                        {"op": "isapprox", "field": "amount", "value": 0},
                    ],
                    "actions": [{"op": LINK_SCHEDULE, "value": schedule_id}],
                }
            )
            self.store.update("schedules", {"id": schedule_id, "rule": rule_id})
        LOGGER.info("Repaired rule link for schedule %s", schedule_id)
        rule = self.rules.get(rule_id)
        if rule is None:
            raise ScheduleNotFoundError(f"Rule {rule_id} for schedule {schedule_id} was not stored")
        return rule

    def _on_rule_update(self, rule: Rule) -> None:
        schedule_id = rule.linked_schedule
        if not schedule_id:
            return
        self.store.run_query(
            "UPDATE schedules SET conditions_snapshot = :conditions, actions_snapshot = :actions "
            "WHERE id = :id",
            {
                "id": schedule_id,
                "conditions": json.dumps(rule.conditions),
                "actions": json.dumps(rule.actions),
            },
        )

    # ------------------------------------------------------------------
    # Next date
    # ------------------------------------------------------------------
    def set_next_date(
        self,
        schedule_id: str,
        *,
        start: Callable[[str | None], str] | None = None,
        conditions: Sequence[Mapping[str, Any]] | None = None,
        reset: bool = False,
    ) -> str | None:
        """Recompute and store the next date of a schedule.

        ``start`` maps the current next date to the day the search begins at
        (default: today). A reset overwrites both the base and the local value.
        """

        if conditions is None:
            rule = self.get_rule_for_schedule(schedule_id)
            if rule is None:
                raise ScheduleNotFoundError("No rule found for schedule")
            conditions = rule.conditions
        date_cond = extract_schedule_conds(conditions).date
        if date_cond is None:
            return None

        with self.store.batch():
            next_row = self._next_date_row(schedule_id)
            current = _next_date_of(next_row)
            if start is None:
                new_date = recurrence.get_next_date(date_cond, self.today())
            else:
                new_date = self._next_after(date_cond, current, start(current))
            if new_date == current or next_row is None:
                return current
            if reset:
                now = epoch_millis()
                changes = {
                    "id": next_row["id"],
                    "base_next_date": new_date,
                    "base_next_date_ts": now,
                    "local_next_date": new_date,
                    "local_next_date_ts": now,
                }
            else:
                changes = {
                    "id": next_row["id"],
                    "local_next_date": new_date,
                    "local_next_date_ts": next_row["base_next_date_ts"],
                }
            self.store.update("schedules_next_date", changes)
        return new_date

    @staticmethod
    def _next_after(date_cond: Mapping[str, Any], current: str | None, after: str) -> str | None:
        candidate = recurrence.get_next_date(date_cond, after)
        if current is None:
            return candidate
        for _ in range(_ADVANCE_ATTEMPTS):
            if candidate is None or candidate > current:
                break
            after = add_days(after, 1)
            candidate = recurrence.get_next_date(date_cond, after)
        return candidate

    def skip_next_date(self, schedule_id: str) -> str | None:
        self._require(schedule_id)
        return self.set_next_date(schedule_id, start=lambda next_date: add_days(next_date or self.today(), 1))

    def get_upcoming_dates(self, config: Mapping[str, Any], count: int) -> list[str]:
        return recurrence.get_upcoming_dates(config, count, today=self.today())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def create_schedule(
        self,
        schedule: Mapping[str, Any] | None = None,
        conditions: Sequence[Mapping[str, Any]] = (),
    ) -> str:
        schedule = dict(schedule or {})
        conditions = [dict(condition) for condition in conditions]
        schedule_id = schedule.get("id") or str(uuid.uuid4())

        date_cond = extract_schedule_conds(conditions).date
        if date_cond is None:
            raise ValidationError("A date condition is required to create a schedule")
        if date_cond.get("value") is None:
            raise ValidationError("Date is required")

        next_date = recurrence.get_next_date(date_cond, self.today())
        name = schedule.get("name") or None
        if name and self._name_taken(name, schedule_id):
            raise ValidationError("Cannot create schedules with the same name")

        actions = [{"op": LINK_SCHEDULE, "value": schedule_id}]
        with self.store.batch():
            rule_id = self.rules.insert(
                {"stage": None, "conditionsOp": "and", "conditions": conditions, "actions": actions}
            )
            now = epoch_millis()
            self.store.insert(
                "schedules_next_date",
                {
                    "schedule_id": schedule_id,
                    "local_next_date": next_date,
                    "local_next_date_ts": now,
                    "base_next_date": next_date,
                    "base_next_date_ts": now,
                },
            )
            row = {key: schedule[key] for key in SCHEDULE_FIELDS if key in schedule}
            row.update(
                {
                    "id": schedule_id,
                    "name": name,
                    "rule": rule_id,
                    "conditions_snapshot": json.dumps(conditions),
                    "actions_snapshot": json.dumps(actions),
                }
            )
            self.store.insert("schedules", row)
        LOGGER.debug("Created schedule %s (next date %s)", schedule_id, next_date)
        return schedule_id

    def update_schedule(
        self,
        schedule: Mapping[str, Any],
        conditions: Sequence[Mapping[str, Any]] | None = None,
        reset_next_date: bool = False,
    ) -> str:
        if schedule.get("rule"):
            raise ValidationError("You cannot change the rule of a schedule")
        schedule_id = schedule["id"]
        self._require(schedule_id)
        if conditions is not None:
            date_cond = extract_schedule_conds(conditions).date
            if date_cond is not None and date_cond.get("value") is None:
                raise ValidationError("Date is required")

        with self.store.batch():
            if conditions is not None:
                rule = self.get_rule_for_schedule(schedule_id)
                if rule is None:
                    rule = self.fix_rule_for_schedule(schedule_id)
                old_conditions = rule.conditions
                new_conditions = update_conditions(old_conditions, [dict(c) for c in conditions])
                self.rules.update({"id": rule.id, "conditions": new_conditions})

                old_conds = extract_schedule_conds(old_conditions)
                new_conds = extract_schedule_conds(new_conditions)
                if (
                    reset_next_date
                    or old_conds.account != new_conds.account
                    or _strip_type(old_conds.date) != _strip_type(new_conds.date)
                ):
                    self.set_next_date(schedule_id, conditions=new_conditions, reset=True)
            elif reset_next_date:
                self.set_next_date(schedule_id, reset=True)

            changes = {key: schedule[key] for key in SCHEDULE_FIELDS if key in schedule}
            if changes:
                self.store.update("schedules", {"id": schedule_id, **changes})
        return schedule_id

    def delete_schedule(self, schedule_id: str) -> None:
        row = self._require(schedule_id)
        next_row = self._next_date_row(schedule_id)
        with self.store.batch():
            self.rules.delete(row["rule"])
            self.store.delete("schedules", schedule_id)
            if next_row is not None:
                self.store.delete("schedules_next_date", next_row["id"])

    def post_transaction_for_schedule(self, schedule_id: str, today: bool = False) -> str | None:
        """Insert the transaction a schedule projects; ``None`` when it has no account."""

        schedule = self.get_schedule(schedule_id)
        if schedule is None or schedule["_account"] is None:
            return None
        transaction: dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "payee": schedule["_payee"],
            "account": schedule["_account"],
            "amount": get_scheduled_amount(schedule["_amount"]),
            "date": self.today() if today else schedule["next_date"],
            "schedule": schedule_id,
            "cleared": 0,
        }
        transfer_account = self._transfer_account(transaction["payee"])
        if transfer_account:
            fx_rate = self._transfer_fx_rate(
                transaction["account"], transfer_account, transaction["date"]
            )
            if fx_rate is not None:
                transaction["fx_rate"] = fx_rate

        with self.store.batch():
            transaction_id = self.store.insert("transactions", transaction)
            if transfer_account:
                leg = transfer_leg(
                    transaction, transfer_account, self._transfer_payee(transaction["account"])
                )
                leg_id = self.store.insert("transactions", leg)
                self.store.update("transactions", {"id": transaction_id, "transfer_id": leg_id})
        LOGGER.info("Posted transaction %s for schedule %s", transaction_id, schedule_id)
        return transaction_id

    def _transfer_account(self, payee_id: str | None) -> str | None:
        if not payee_id:
            return None
        payee = self.store.get("payees", payee_id)
        return payee["transfer_acct"] if payee is not None else None

    def _transfer_payee(self, account_id: str) -> str | None:
        row = self.store.first(
            "SELECT id FROM payees WHERE transfer_acct = :account AND tombstone = 0",
            {"account": account_id},
        )
        return row["id"] if row is not None else None

    def _account_currency(self, account_id: str) -> str | None:
        account = self.store.get("accounts", account_id)
        code = account["currency_code"] if account is not None else None
        return code or self.preferences.get(DEFAULT_CURRENCY_CODE)

    def _transfer_fx_rate(self, from_account: str, to_account: str, day: str) -> float | None:
        """Rate between two accounts' currencies; ``None`` when they match."""

        from_currency = self._account_currency(from_account)
        to_currency = self._account_currency(to_account)
        if not from_currency or not to_currency or from_currency == to_currency:
            return None
        if self._rate_lookup is None:
            return None
        rate = self._rate_lookup(from_currency, to_currency, day)
        if rate is None:
            LOGGER.warning(
                "No %s->%s rate for %s; posting the transfer without conversion",
                from_currency,
                to_currency,
                day,
            )
        return rate

    # ------------------------------------------------------------------
    # Daily advancement
    # ------------------------------------------------------------------
    def _schedules_with_transactions(self, schedules: Iterable[Mapping[str, Any]]) -> set[str]:
        table = TransactionRow.__table__
        clauses = []
        for schedule in schedules:
            if not schedule["next_date"]:
                continue
            date_cond = extract_schedule_conds(schedule["_conditions"]).date
            clauses.append(
                and_(
                    table.c.schedule == schedule["id"],
                    table.c.date >= has_transaction_since(date_cond, schedule["next_date"]),
                )
            )
        if not clauses:
            return set()
        rows = self.store.execute(
            select(distinct(table.c.schedule)).where(table.c.tombstone == 0, or_(*clauses))
        )
        return {row["schedule"] for row in rows}

    def _closed_accounts(self) -> set[str]:
        rows = self.store.all("SELECT id FROM accounts WHERE closed = 1")
        return {row["id"] for row in rows}

    def advance_schedules_service(self, sync_success: bool) -> AdvanceResult:
        """Move paid schedules forward and post due ones.

        Transactions are only posted after a successful sync; otherwise the
        affected schedules are reported through ``schedules-offline``.
        """

        with self._advance_lock:
            return self._advance(sync_success)

    def _advance(self, sync_success: bool) -> AdvanceResult:
        closed = self._closed_accounts()
        schedules = [
            schedule
            for schedule in self.get_schedules(completed=False)
            if schedule["_account"] not in closed
        ]
        paid = self._schedules_with_transactions(schedules)
        upcoming_length = self.preferences.get(
            UPCOMING_SCHEDULED_TRANSACTION_LENGTH, DEFAULT_UPCOMING_LENGTH
        )
        today = self.today()
        result = AdvanceResult()

        for schedule in schedules:
            schedule_id = schedule["id"]
            status = get_status(
                schedule["next_date"],
                schedule["completed"],
                schedule_id in paid,
                upcoming_length,
                today,
            )
            date_value = schedule["_date"]
            if status == "paid":
                if date_value is None:
                    continue
                if recurrence.is_recurring(date_value):
                    try:
                        self.set_next_date(
                            schedule_id, start=lambda next_date: add_days(next_date or today, 1)
                        )
                    except FxLedgerError as exc:
                        LOGGER.warning("Could not advance schedule %s: %s", schedule_id, exc)
                        continue
                    result.advanced.append(schedule_id)
                elif str(date_value) < today:
                    self.update_schedule({"id": schedule_id, "completed": True})
                    result.completed.append(schedule_id)
            elif status in ("due", "missed") and schedule["posts_transaction"] and schedule["_account"]:
                if sync_success:
                    self.post_transaction_for_schedule(schedule_id)
                    result.posted.append(schedule_id)
                else:
                    result.deferred.append(schedule_id)

        if result.deferred:
            LOGGER.info("Deferred %s scheduled transaction(s) until sync succeeds", len(result.deferred))
            self.events.send(SCHEDULES_OFFLINE)
        elif result.posted:
            self.events.send(
                SYNC_EVENT,
                {"type": "success", "tables": ["transactions"], "syncDisabled": False},
            )
        return result

    def handle_sync_event(self, sync_type: str) -> bool:
        """Run the daily advancement after a finished sync, at most once per day."""

        if sync_type not in SYNC_OUTCOMES:
            return False
        if not self.preferences.claim_daily_run(LAST_SCHEDULE_RUN, self.today()):
            return False
        self.advance_schedules_service(sync_type == "success")
        return True

    # ------------------------------------------------------------------
    # Discovery and transfer
    # ------------------------------------------------------------------
    def discover_schedules(self, today: str | None = None) -> list[dict[str, Any]]:
        return find_schedules(self.store, today=today or self.today())

    def export_schedules(self) -> str:
        return transfer.export_schedules(self)

    def import_schedules(self, content: str) -> transfer.ScheduleImportResult:
        return transfer.import_schedules(self, content)

    def close(self) -> None:
        self._remove_listener()


__all__ = ["AdvanceResult", "ScheduleService"]
