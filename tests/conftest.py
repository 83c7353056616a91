from __future__ import annotations

import pytest

from fx_ledger.db.preferences import Preferences
from fx_ledger.db.store import Store
from fx_ledger.events import EventBus
from fx_ledger.rules.repository import RuleStore
from fx_ledger.schedules.service import ScheduleService

TODAY = "2024-05-15"


@pytest.fixture
def store(tmp_path):
    store = Store(f"sqlite:///{tmp_path / 'budget.db'}")
    yield store
    store.close()


@pytest.fixture
def preferences(store) -> Preferences:
    return Preferences(store)


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def rules(store) -> RuleStore:
    return RuleStore(store)


@pytest.fixture
def schedules(store, rules, preferences, events):
    service = ScheduleService(store, rules, preferences, events, today=lambda: TODAY)
    yield service
    service.close()
