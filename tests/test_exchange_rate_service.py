from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from fx_ledger.db.preferences import DEFAULT_CURRENCY_CODE, OPEN_EXCHANGE_RATES_APP_ID
from fx_ledger.errors import ValidationError
from fx_ledger.events import SYNC_EVENT
from fx_ledger.exchange_rate.models import ExchangeRateData
from fx_ledger.exchange_rate.periodic import UpdateState
from fx_ledger.exchange_rate.providers import (
    ExchangeRateProvider,
    MempoolSpaceProvider,
    OpenExchangeRatesProvider,
)
from fx_ledger.exchange_rate.service import ExchangeRateService


class _StaticProvider(ExchangeRateProvider):
    name = "static"
    supports_history = True

    def __init__(self, rates: dict[tuple[str, str], float], *, quota_limited: bool = False, today: str | None = None) -> None:
        super().__init__()
        self.rates = rates
        self.quota_limited = quota_limited
        self.today = today
        self.calls: list[tuple[str, list[str]]] = []
        self.historical_calls: list[tuple[str, str, str]] = []

    def fetch_rates(self, base, targets):
        self.calls.append((base, list(targets)))
        return [
            ExchangeRateData(base, target, self.rates[(base, target)], self.today, self.name)
            for target in targets
            if (base, target) in self.rates
        ]

    def fetch_historical_rate(self, from_currency, to_currency, rate_date):
        self.historical_calls.append((from_currency, to_currency, rate_date))
        return self.rates.get((from_currency, to_currency))


class _BrokenProvider(ExchangeRateProvider):
    name = "broken"

    def fetch_rates(self, base, targets):
        raise RuntimeError("unexpected payload")


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def _service(store, preferences, events, providers, clock=None) -> ExchangeRateService:
    return ExchangeRateService(
        store,
        preferences,
        events,
        providers=providers,
        auto_start_updates=False,
        now=clock or _Clock(),
    )


def test_same_currency_is_one_without_lookups(store, preferences, events) -> None:
    provider = _StaticProvider({})
    service = _service(store, preferences, events, [provider])

    assert service.get_rate("EUR", "EUR") == 1.0
    assert provider.calls == []


def test_todays_rate_is_fetched_once_then_served_from_cache(store, preferences, events) -> None:
    clock = _Clock()
    service = _service(store, preferences, events, [], clock)
    provider = _StaticProvider({("EUR", "USD"): 1.08}, today=service.today())
    service = _service(store, preferences, events, [provider], clock)

    assert service.get_rate("EUR", "USD") == 1.08
    assert service.get_rate("EUR", "USD") == 1.08
    assert len(provider.calls) == 1
    assert service.update_state is UpdateState.STOPPED


def test_stale_todays_rate_is_refetched(store, preferences, events) -> None:
    clock = _Clock()
    service = _service(store, preferences, events, [], clock)
    provider = _StaticProvider({("EUR", "USD"): 1.08}, today=service.today())
    service = _service(store, preferences, events, [provider], clock)

    service.get_rate("EUR", "USD")
    clock.now += timedelta(minutes=16)
    provider.rates[("EUR", "USD")] = 1.09

    assert service.get_rate("EUR", "USD") == 1.09
    assert len(provider.calls) == 2


def test_past_rates_use_history_and_are_final_once_cached(store, preferences, events) -> None:
    provider = _StaticProvider({("EUR", "USD"): 1.05})
    service = _service(store, preferences, events, [provider])

    assert service.get_rate("EUR", "USD", "2024-01-15") == 1.05
    provider.rates[("EUR", "USD")] = 2.0
    assert service.get_rate("EUR", "USD", "2024-01-15") == 1.05
    assert provider.historical_calls == [("EUR", "USD", "2024-01-15")]
    assert service.rates.latest("EUR", "USD", "2024-01-15").source == "static"


def test_inverse_of_reverse_pair_is_the_last_resort(store, preferences, events) -> None:
    service = _service(store, preferences, events, [_StaticProvider({})])
    service.add_manual_rate("USD", "EUR", 2.0, "2024-01-15")

    assert service.get_rate("EUR", "USD", "2024-01-15") == 0.5
    assert service.get_rate("EUR", "JPY", "2024-01-15") is None


def test_failing_provider_does_not_block_the_others(store, preferences, events) -> None:
    clock = _Clock()
    service = _service(store, preferences, events, [], clock)
    good = _StaticProvider({("EUR", "USD"): 1.08}, today=service.today())
    service = _service(store, preferences, events, [_BrokenProvider(), good], clock)

    result = service.fetch_and_cache_rates("EUR", ["USD"])

    assert result.inserted == 1


def test_manual_rates_must_be_positive(store, preferences, events) -> None:
    service = _service(store, preferences, events, [_StaticProvider({})])

    with pytest.raises(ValidationError):
        service.add_manual_rate("USD", "XYZ", 0)

    entity = service.add_manual_rate("USD", "XYZ", 3.5, "2024-02-01")
    assert entity.source == "manual"
    assert service.get_rate("USD", "XYZ", "2024-02-01") == 3.5


def test_convert_amount_rounds_half_away_from_zero(store, preferences, events) -> None:
    service = _service(store, preferences, events, [_StaticProvider({})])
    service.add_manual_rate("EUR", "USD", 1.5, "2024-02-01")

    assert service.convert_amount(333, "EUR", "USD", "2024-02-01") == 500
    assert service.convert_amount(-333, "EUR", "USD", "2024-02-01") == -500
    assert service.convert_amount(100, "EUR", "JPY", "2024-02-01") is None


def test_used_currencies_fall_back_to_the_base_currency(store, preferences, events) -> None:
    preferences.set(DEFAULT_CURRENCY_CODE, "USD")
    store.insert("accounts", {"name": "Checking", "currency_code": None})
    store.insert("accounts", {"name": "Euro", "currency_code": "EUR"})
    store.insert("accounts", {"name": "Old", "currency_code": "GBP", "tombstone": 1})
    service = _service(store, preferences, events, [_StaticProvider({})])

    assert sorted(service.get_used_currencies()) == ["EUR", "USD"]


def test_update_delay_depends_on_quota_limited_providers(store, preferences, events) -> None:
    public = _service(store, preferences, events, [_StaticProvider({})])
    keyed = _service(store, preferences, events, [_StaticProvider({}, quota_limited=True)])

    assert public.get_next_update_delay() == 15 * 60
    assert keyed.get_next_update_delay() == 60 * 60


def test_providers_are_initialised_from_preferences(store, preferences, events) -> None:
    public = ExchangeRateService(store, preferences, events, auto_start_updates=False)
    assert [type(provider) for provider in public.providers] == [MempoolSpaceProvider]

    preferences.set(OPEN_EXCHANGE_RATES_APP_ID, "app-id")
    keyed = ExchangeRateService(store, preferences, events, auto_start_updates=False)
    assert [type(provider) for provider in keyed.providers] == [
        OpenExchangeRatesProvider,
        MempoolSpaceProvider,
    ]


def test_update_cycle_waits_for_a_base_currency(store, preferences, events) -> None:
    provider = _StaticProvider({})
    service = _service(store, preferences, events, [provider])

    assert service.run_update_cycle() == 60
    assert provider.calls == []


def test_update_cycle_refreshes_foreign_currencies_and_signals_once(store, preferences, events) -> None:
    preferences.set(DEFAULT_CURRENCY_CODE, "USD")
    store.insert("accounts", {"name": "Checking", "currency_code": "USD"})
    store.insert("accounts", {"name": "Euro", "currency_code": "EUR"})
    clock = _Clock()
    service = _service(store, preferences, events, [], clock)
    provider = _StaticProvider({("EUR", "USD"): 1.08}, today=service.today())
    service = _service(store, preferences, events, [provider], clock)
    sent = []
    events.subscribe(SYNC_EVENT, sent.append)

    assert service.run_update_cycle() == 15 * 60
    service.run_update_cycle()

    assert provider.calls == [("EUR", ["USD"]), ("EUR", ["USD"])]
    assert sent == [{"type": "success", "tables": ["accounts"]}]


def test_injected_empty_provider_list_is_kept(store, preferences, events) -> None:
    service = _service(store, preferences, events, [])

    assert service.providers == []
    assert service.get_rate("EUR", "USD", "2024-01-15") is None


def test_lookup_degrades_to_none_when_caching_fails(store, preferences, events, monkeypatch) -> None:
    clock = _Clock()
    service = _service(store, preferences, events, [], clock)
    provider = _StaticProvider({("EUR", "USD"): 1.08}, today=service.today())
    service = _service(store, preferences, events, [provider], clock)

    def _locked(rows):
        raise OperationalError("INSERT INTO exchange_rates", {}, Exception("database is locked"))

    monkeypatch.setattr(service.rates, "upsert_rates", _locked)

    assert service.get_rate("EUR", "USD") is None
    assert len(provider.calls) == 1


def _update_workers() -> list[threading.Thread]:
    return [thread for thread in threading.enumerate() if thread.name == "exchange-rate-updates"]


def test_first_lookup_starts_the_periodic_update(store, preferences, events) -> None:
    preferences.set(DEFAULT_CURRENCY_CODE, "USD")
    clock = _Clock()
    provider = _StaticProvider({("EUR", "USD"): 1.08})
    service = ExchangeRateService(store, preferences, events, providers=[provider], now=clock)
    provider.today = service.today()
    try:
        assert service.update_state is UpdateState.STOPPED

        assert service.get_rate("EUR", "USD") == 1.08

        assert service.update_state is not UpdateState.STOPPED
        assert service.start_periodic_update() is False
    finally:
        service.stop_periodic_update()
    assert service.update_state is UpdateState.STOPPED


def test_simultaneous_first_lookups_start_one_worker(store, preferences, events) -> None:
    preferences.set(DEFAULT_CURRENCY_CODE, "USD")
    clock = _Clock()
    provider = _StaticProvider({("EUR", "USD"): 1.08, ("GBP", "USD"): 1.25})
    service = ExchangeRateService(store, preferences, events, providers=[provider], now=clock)
    provider.today = service.today()
    workers_before = len(_update_workers())
    gate = threading.Barrier(2, timeout=10)
    results: list[float | None] = []
    errors: list[Exception] = []

    def lookup(from_currency: str) -> None:
        try:
            gate.wait()
            results.append(service.get_rate(from_currency, "USD"))
        except Exception as exc:  # pragma: no cover - reported by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=lookup, args=(code,)) for code in ("EUR", "GBP")]
    try:
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        assert errors == []
        assert sorted(results) == [1.08, 1.25]
        assert len(_update_workers()) == workers_before + 1
    finally:
        service.stop_periodic_update()
