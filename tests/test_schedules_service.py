from __future__ import annotations

import json

import pytest

from fx_ledger.db.preferences import DEFAULT_CURRENCY_CODE, LAST_SCHEDULE_RUN
from fx_ledger.errors import ScheduleNotFoundError, ValidationError
from fx_ledger.events import SCHEDULES_OFFLINE, SYNC_EVENT
from fx_ledger.schedules.service import ScheduleService

MONTHLY_20TH = {
    "start": "2024-01-20",
    "interval": 1,
    "frequency": "monthly",
    "patterns": [{"type": "day", "value": 20}],
    "skipWeekend": False,
    "weekendSolveMode": "after",
    "endMode": "never",
}


def _conditions(account="acc1", date=MONTHLY_20TH, amount=-1000, payee="p1"):
    return [
        {"op": "is", "field": "payee", "value": payee},
        {"op": "is", "field": "account", "value": account},
        {"op": "isapprox", "field": "amount", "value": amount},
        {"op": "isapprox", "field": "date", "value": date},
    ]


@pytest.fixture
def accounts(store):
    store.insert("accounts", {"id": "acc1", "name": "Checking"})
    store.insert("accounts", {"id": "acc2", "name": "Savings"})
    store.insert("payees", {"id": "p1", "name": "Landlord"})


def _record(events, name):
    received = []
    events.subscribe(name, received.append)
    return received


def test_create_schedule_links_a_rule_and_computes_next_date(schedules, accounts) -> None:
    schedule_id = schedules.create_schedule({"name": "Rent"}, _conditions())

    schedule = schedules.get_schedule(schedule_id)
    rule = schedules.get_rule_for_schedule(schedule_id)
    assert schedule["next_date"] == "2024-05-20"
    assert schedule["_account"] == "acc1"
    assert schedule["_amount"] == -1000
    assert schedule["_date"] == MONTHLY_20TH
    assert rule.linked_schedule == schedule_id
    assert rule.stage is None


def test_create_schedule_validation(schedules, store, accounts) -> None:
    with pytest.raises(ValidationError, match="A date condition is required"):
        schedules.create_schedule({"name": "No date"}, _conditions()[:3])
    with pytest.raises(ValidationError, match="Date is required"):
        schedules.create_schedule({"name": "Empty date"}, _conditions(date=None))
    assert store.all("SELECT id FROM schedules") == []
    assert store.all("SELECT id FROM rules") == []

    schedules.create_schedule({"name": "Rent"}, _conditions())
    with pytest.raises(ValidationError, match="same name"):
        schedules.create_schedule({"name": "Rent"}, _conditions())


def test_get_rule_for_schedule_requires_an_id(schedules) -> None:
    with pytest.raises(ValidationError, match="not attached to a rule"):
        schedules.get_rule_for_schedule(None)


def test_skip_next_date_moves_to_the_following_occurrence(schedules, accounts) -> None:
    schedule_id = schedules.create_schedule({"name": "Rent"}, _conditions())

    assert schedules.skip_next_date(schedule_id) == "2024-06-20"
    assert schedules.get_schedule(schedule_id)["next_date"] == "2024-06-20"
    with pytest.raises(ScheduleNotFoundError):
        schedules.skip_next_date("missing")


def test_changing_the_account_resets_the_next_date(schedules, accounts) -> None:
    schedule_id = schedules.create_schedule({"name": "Rent"}, _conditions())
    schedules.skip_next_date(schedule_id)

    schedules.update_schedule({"id": schedule_id}, [{"op": "isapprox", "field": "amount", "value": -1200}])
    assert schedules.get_schedule(schedule_id)["next_date"] == "2024-06-20"
    assert schedules.get_schedule(schedule_id)["_amount"] == -1200

    schedules.update_schedule({"id": schedule_id}, [{"op": "is", "field": "account", "value": "acc2"}])
    schedule = schedules.get_schedule(schedule_id)
    assert schedule["_account"] == "acc2"
    assert schedule["next_date"] == "2024-05-20"


def test_changing_the_date_resets_the_next_date(schedules, accounts) -> None:
    schedule_id = schedules.create_schedule({"name": "Rent"}, _conditions())
    new_date = dict(MONTHLY_20TH, patterns=[{"type": "day", "value": 25}])

    schedules.update_schedule({"id": schedule_id, "name": "Rent (new)"}, [{"op": "isapprox", "field": "date", "value": new_date}])

    schedule = schedules.get_schedule(schedule_id)
    assert schedule["next_date"] == "2024-05-25"
    assert schedule["name"] == "Rent (new)"


def test_reset_next_date_without_condition_changes(schedules, accounts) -> None:
    schedule_id = schedules.create_schedule({"name": "Rent"}, _conditions())
    schedules.skip_next_date(schedule_id)

    schedules.update_schedule({"id": schedule_id}, reset_next_date=True)

    assert schedules.get_schedule(schedule_id)["next_date"] == "2024-05-20"


def test_update_schedule_cannot_change_the_rule(schedules, accounts) -> None:
    schedule_id = schedules.create_schedule({"name": "Rent"}, _conditions())

    with pytest.raises(ValidationError, match="cannot change the rule"):
        schedules.update_schedule({"id": schedule_id, "rule": "other"})


def test_update_repairs_a_missing_rule(schedules, rules, accounts) -> None:
    schedule_id = schedules.create_schedule({"name": "Rent"}, _conditions())
    old_rule = schedules.get_rule_for_schedule(schedule_id)
    rules.delete(old_rule.id)

    assert schedules.get_schedule(schedule_id)["_account"] == "acc1"

    schedules.update_schedule({"id": schedule_id}, [{"op": "isapprox", "field": "amount", "value": -50}])

    rule = schedules.get_rule_for_schedule(schedule_id)
    assert rule.id != old_rule.id
    assert rule.linked_schedule == schedule_id
    assert schedules.get_schedule(schedule_id)["_amount"] == -50


def test_rule_updates_refresh_the_schedule_snapshot(schedules, rules, store, accounts) -> None:
    schedule_id = schedules.create_schedule({"name": "Rent"}, _conditions())
    rule = schedules.get_rule_for_schedule(schedule_id)

    rules.update({"id": rule.id, "conditions": _conditions(amount=-999)})

    snapshot = json.loads(store.get("schedules", schedule_id)["conditions_snapshot"])
    assert snapshot[2]["value"] == -999


def test_delete_schedule_tombstones_schedule_and_rule(schedules, rules, accounts) -> None:
    schedule_id = schedules.create_schedule({"name": "Rent"}, _conditions())
    rule_id = schedules.get_rule_for_schedule(schedule_id).id

    schedules.delete_schedule(schedule_id)

    assert schedules.get_schedule(schedule_id) is None
    assert rules.get(rule_id) is None
    assert schedules.get_schedules() == []


def test_post_transaction_for_schedule(schedules, store, accounts) -> None:
    schedule_id = schedules.create_schedule(
        {"name": "Rent"},
        _conditions(amount={"num1": -1000, "num2": -1201}),
    )

    on_next = schedules.post_transaction_for_schedule(schedule_id)
    on_today = schedules.post_transaction_for_schedule(schedule_id, today=True)

    assert store.get("transactions", on_next)["date"] == "2024-05-20"
    assert store.get("transactions", on_today)["date"] == "2024-05-15"
    assert store.get("transactions", on_today)["amount"] == -1100
    assert store.get("transactions", on_today)["schedule"] == schedule_id


def test_due_schedules_are_posted_after_a_successful_sync(schedules, store, events, accounts) -> None:
    schedule_id = schedules.create_schedule(
        {"name": "Gym", "posts_transaction": True},
        _conditions(date="2024-05-15"),
    )
    sync_events = _record(events, SYNC_EVENT)

    result = schedules.advance_schedules_service(True)

    assert result.posted == [schedule_id]
    rows = store.all("SELECT * FROM transactions WHERE schedule = :id", {"id": schedule_id})
    assert [row["date"] for row in rows] == ["2024-05-15"]
    assert sync_events == [{"type": "success", "tables": ["transactions"], "syncDisabled": False}]


def test_due_schedules_are_deferred_while_offline(schedules, store, events, accounts) -> None:
    schedule_id = schedules.create_schedule(
        {"name": "Gym", "posts_transaction": True},
        _conditions(date="2024-05-12"),
    )
    offline = _record(events, SCHEDULES_OFFLINE)

    result = schedules.advance_schedules_service(False)

    assert result.deferred == [schedule_id]
    assert store.all("SELECT id FROM transactions") == []
    assert offline == [None]


def test_schedules_on_closed_accounts_are_ignored(schedules, store, accounts) -> None:
    store.update("accounts", {"id": "acc1", "closed": 1})
    schedules.create_schedule({"name": "Gym", "posts_transaction": True}, _conditions(date="2024-05-15"))

    result = schedules.advance_schedules_service(True)

    assert result.posted == []


def test_paid_recurring_schedules_advance(schedules, store, accounts) -> None:
    monthly_15th = dict(MONTHLY_20TH, start="2024-01-15", patterns=[{"type": "day", "value": 15}])
    schedule_id = schedules.create_schedule({"name": "Rent"}, _conditions(date=monthly_15th))
    store.insert("transactions", {"account": "acc1", "amount": -1000, "date": "2024-05-14", "schedule": schedule_id})

    result = schedules.advance_schedules_service(True)

    assert result.advanced == [schedule_id]
    assert schedules.get_schedule(schedule_id)["next_date"] == "2024-06-15"


def test_paid_one_off_schedules_in_the_past_complete(schedules, store, accounts) -> None:
    schedule_id = schedules.create_schedule({"name": "Deposit"}, _conditions(date="2024-05-10"))
    store.insert("transactions", {"account": "acc1", "amount": -1000, "date": "2024-05-10", "schedule": schedule_id})

    result = schedules.advance_schedules_service(True)

    assert result.completed == [schedule_id]
    assert schedules.get_schedule(schedule_id)["completed"] is True
    assert schedules.get_schedules(completed=False) == []


def test_sync_events_run_the_service_once_per_day(schedules, preferences, accounts) -> None:
    assert schedules.handle_sync_event("started") is False
    assert schedules.handle_sync_event("success") is True
    assert schedules.handle_sync_event("error") is False
    assert preferences.get(LAST_SCHEDULE_RUN) == "2024-05-15"


def test_get_upcoming_dates_starts_today(schedules) -> None:
    assert schedules.get_upcoming_dates(MONTHLY_20TH, 2) == ["2024-05-20", "2024-06-20"]


def test_discover_schedules(schedules, store, accounts) -> None:
    for day, amount in [("2024-02-01", -5000), ("2024-03-01", -5000), ("2024-04-01", -5100), ("2024-05-01", -4900)]:
        store.insert("transactions", {"account": "acc1", "payee": "p1", "amount": amount, "date": day})
    for day in ["2024-04-03", "2024-04-10", "2024-04-17", "2024-04-24"]:
        store.insert("transactions", {"account": "acc2", "payee": "p1", "amount": -800, "date": day})
    for day, amount in [("2024-01-03", -10), ("2024-03-19", -4000), ("2024-03-20", -20)]:
        store.insert("transactions", {"account": "acc1", "payee": "p2", "amount": amount, "date": day})

    found = {(item["account"], item["payee"]): item for item in schedules.discover_schedules()}

    assert set(found) == {("acc1", "p1"), ("acc2", "p1")}
    monthly = found[("acc1", "p1")]
    assert monthly["amount"] == -5000
    assert monthly["date"]["frequency"] == "monthly"
    assert monthly["date"]["patterns"] == [{"type": "day", "value": 1}]
    assert found[("acc2", "p1")]["date"]["frequency"] == "weekly"


def test_daily_advancement_posts_each_due_schedule_once(schedules, store, accounts) -> None:
    monthly_15th = dict(MONTHLY_20TH, start="2024-01-15", patterns=[{"type": "day", "value": 15}])
    one_off = schedules.create_schedule(
        {"name": "Gym", "posts_transaction": True}, _conditions(date="2024-05-15")
    )
    recurring = schedules.create_schedule(
        {"name": "Rent", "posts_transaction": True}, _conditions(date=monthly_15th)
    )

    assert schedules.handle_sync_event("success") is True
    assert schedules.handle_sync_event("success") is False
    schedules.advance_schedules_service(True)
    schedules.advance_schedules_service(True)

    rows = store.all("SELECT schedule, date FROM transactions")
    assert sorted((row["schedule"], row["date"]) for row in rows) == sorted(
        [(one_off, "2024-05-15"), (recurring, "2024-05-15")]
    )
    assert schedules.get_schedule(recurring)["next_date"] == "2024-06-15"


def test_rule_repair_reports_a_rule_that_was_not_stored(schedules, rules, accounts, monkeypatch) -> None:
    schedule_id = schedules.create_schedule({"name": "Rent"}, _conditions())
    monkeypatch.setattr(rules, "get", lambda rule_id: None)

    with pytest.raises(ScheduleNotFoundError, match="was not stored"):
        schedules.fix_rule_for_schedule(schedule_id)


@pytest.fixture
def transfer_accounts(store, preferences):
    preferences.set(DEFAULT_CURRENCY_CODE, "EUR")
    store.insert("accounts", {"id": "eur", "name": "Euro checking"})
    store.insert("accounts", {"id": "usd", "name": "Dollar savings", "currency_code": "USD"})
    store.insert("accounts", {"id": "eur2", "name": "Euro savings", "currency_code": "EUR"})
    store.insert("payees", {"id": "to-eur", "name": "Euro checking", "transfer_acct": "eur"})
    store.insert("payees", {"id": "to-usd", "name": "Dollar savings", "transfer_acct": "usd"})
    store.insert("payees", {"id": "to-eur2", "name": "Euro savings", "transfer_acct": "eur2"})


def _transfer_schedules(store, rules, preferences, events, rates):
    lookups = []

    def lookup(from_currency, to_currency, day):
        lookups.append((from_currency, to_currency, day))
        return rates.get((from_currency, to_currency))

    return ScheduleService(store, rules, preferences, events, today=lambda: "2024-05-15", rate_lookup=lookup), lookups


def test_posting_a_foreign_transfer_converts_the_counterpart(store, rules, preferences, events, transfer_accounts) -> None:
    service, lookups = _transfer_schedules(store, rules, preferences, events, {("EUR", "USD"): 1.08})
    schedule_id = service.create_schedule(
        {"name": "Savings"}, _conditions(account="eur", payee="to-usd", date="2024-05-15")
    )

    posted = store.get("transactions", service.post_transaction_for_schedule(schedule_id))
    leg = store.get("transactions", posted["transfer_id"])

    assert lookups == [("EUR", "USD", "2024-05-15")]
    assert (posted["account"], posted["amount"], posted["fx_rate"]) == ("eur", -1000, 1.08)
    assert (leg["account"], leg["amount"], leg["payee"]) == ("usd", 1080, "to-eur")
    assert leg["fx_rate"] == pytest.approx(1 / 1.08)
    assert leg["transfer_id"] == posted["id"]
    assert leg["schedule"] == schedule_id
    service.close()


def test_same_currency_transfers_skip_the_rate_lookup(store, rules, preferences, events, transfer_accounts) -> None:
    service, lookups = _transfer_schedules(store, rules, preferences, events, {})
    schedule_id = service.create_schedule(
        {"name": "Savings"}, _conditions(account="eur", payee="to-eur2", date="2024-05-15")
    )

    posted = store.get("transactions", service.post_transaction_for_schedule(schedule_id))
    leg = store.get("transactions", posted["transfer_id"])

    assert lookups == []
    assert posted["fx_rate"] is None
    assert (leg["account"], leg["amount"], leg["fx_rate"]) == ("eur2", 1000, None)
    service.close()


def test_missing_rate_posts_a_plain_transfer(store, rules, preferences, events, transfer_accounts) -> None:
    service, lookups = _transfer_schedules(store, rules, preferences, events, {})
    schedule_id = service.create_schedule(
        {"name": "Savings"}, _conditions(account="eur", payee="to-usd", date="2024-05-15")
    )

    posted = store.get("transactions", service.post_transaction_for_schedule(schedule_id))

    assert lookups == [("EUR", "USD", "2024-05-15")]
    assert posted["fx_rate"] is None
    assert store.get("transactions", posted["transfer_id"])["amount"] == 1000
    service.close()
