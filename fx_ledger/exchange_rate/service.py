"""Cache-first exchange rate lookups backed by pluggable providers."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Callable, Sequence

import requests
from sqlalchemy import distinct, func, select
from sqlalchemy.exc import SQLAlchemyError

from fx_ledger.config import Settings, load_settings
from fx_ledger.db.models import AccountRow
from fx_ledger.db.preferences import (
    DEFAULT_CURRENCY_CODE,
    MEMPOOL_SPACE_BASE_URL,
    OPEN_EXCHANGE_RATES_APP_ID,
    Preferences,
)
from fx_ledger.db.rate_cache import ExchangeRateStore, PersistenceResult
from fx_ledger.db.store import Store
from fx_ledger.errors import ValidationError
from fx_ledger.events import SYNC_EVENT, EventBus
from fx_ledger.exchange_rate.models import ExchangeRateData, ExchangeRateEntity, UsageData
from fx_ledger.exchange_rate.periodic import NextRun, PeriodicTask, UpdateState
from fx_ledger.exchange_rate.providers import (
    ExchangeRateProvider,
    MempoolSpaceProvider,
    OpenExchangeRatesProvider,
)
from fx_ledger.exchange_rate.providers.mempoolspace import SUPPORTED_CURRENCIES
from fx_ledger.utils.dates import iso_timestamp, parse_timestamp, utc_now
from fx_ledger.utils.logger import get_logger

LOGGER = get_logger(__name__)

MANUAL_SOURCE = "manual"
KEYED_UPDATE_MINUTES = 60
PUBLIC_UPDATE_MINUTES = 15
BASE_CURRENCY_RETRY_SECONDS = 60


class ExchangeRateService:
    """Answer "what is the rate from A to B on day D".

    Lookups read the ``exchange_rates`` cache first. Rates for past days are
    final once cached; today's rate is reused while it is younger than the
    refresh interval. Misses go to the providers (historical endpoints first
    for past days) and finally to the inverse of the reverse pair.

    A background :class:`PeriodicTask` keeps foreign -> base rates for every
    currency in use warm.
    """

    def __init__(
        self,
        store: Store,
        preferences: Preferences,
        events: EventBus,
        providers: Sequence[ExchangeRateProvider] | None = None,
        settings: Settings | None = None,
        auto_start_updates: bool = True,
        now: Callable[[], datetime] | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.store = store
        self.rates = ExchangeRateStore(store)
        self.preferences = preferences
        self.events = events
        self.settings = settings or load_settings()
        self.auto_start_updates = auto_start_updates
        self._now = now or utc_now
        self._session = session
        self._providers: list[ExchangeRateProvider] | None = (
            list(providers) if providers is not None else None
        )
        self._initial_fetch_complete = False
        self._task = PeriodicTask(self._update_cycle, name="exchange-rate-updates")

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------
    @property
    def providers(self) -> list[ExchangeRateProvider]:
        if self._providers is None:
            self.initialize_providers()
        return list(self._providers or [])

    def _mempool_provider(self) -> MempoolSpaceProvider:
        return MempoolSpaceProvider(
            self.preferences.get(MEMPOOL_SPACE_BASE_URL),
            session=self._session,
            timeout=self.settings.http_timeout,
        )

    def initialize_providers(self) -> list[ExchangeRateProvider]:
        try:
            app_id = self.preferences.get(OPEN_EXCHANGE_RATES_APP_ID)
            providers: list[ExchangeRateProvider] = []
            if app_id:
                providers.append(
                    OpenExchangeRatesProvider(
                        app_id, session=self._session, timeout=self.settings.http_timeout
                    )
                )
            else:
                LOGGER.warning(
                    "No OpenExchangeRates App ID configured; exchange rates are limited to %s",
                    ", ".join(SUPPORTED_CURRENCIES),
                )
            providers.append(self._mempool_provider())
        except Exception:
            LOGGER.exception("Failed to initialise exchange rate providers")
            providers = [MempoolSpaceProvider(timeout=self.settings.http_timeout)]
        self._providers = providers
        return list(providers)

    def get_next_update_delay(self) -> float:
        """Seconds between refreshes, also the freshness limit of today's rates."""

        if any(provider.quota_limited for provider in self.providers):
            return KEYED_UPDATE_MINUTES * 60.0
        return PUBLIC_UPDATE_MINUTES * 60.0

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------
    def today(self) -> str:
        return self._now().astimezone().date().isoformat()

    def _cache(self, data: Sequence[ExchangeRateData]) -> PersistenceResult:
        fallback = iso_timestamp(self._now())
        try:
            return self.rates.upsert_rates(
                [ExchangeRateEntity.from_data(item, fallback) for item in data]
            )
        except SQLAlchemyError:
            LOGGER.exception("Failed to cache %s exchange rate(s)", len(data))
            return PersistenceResult()

    def fetch_and_cache_rates(self, base: str, targets: Sequence[str]) -> PersistenceResult:
        """Query every provider and cache everything they return."""

        result = PersistenceResult()
        for provider in self.providers:
            try:
                data = provider.fetch_rates(base, list(targets))
            except Exception:
                LOGGER.exception("Failed to fetch rates from %s", provider.name)
                continue
            if data:
                result.merge(self._cache(data))
        return result

    def get_rate(self, from_currency: str, to_currency: str, rate_date: str | None = None) -> float | None:
        if from_currency == to_currency:
            return 1.0
        if self.auto_start_updates and self._task.state is UpdateState.STOPPED:
            self.start_periodic_update()

        today = self.today()
        target = rate_date or today
        is_today = target == today

        cached = self.rates.latest(from_currency, to_currency, target)
        if cached is not None:
            if not is_today:
                return cached.rate
            age = (self._now() - parse_timestamp(cached.timestamp)).total_seconds()
            if age < self.get_next_update_delay():
                return cached.rate

        if not is_today:
            rate = self._fetch_historical(from_currency, to_currency, target)
            if rate is not None:
                return rate

        self.fetch_and_cache_rates(from_currency, [to_currency])
        fresh = self.rates.latest(from_currency, to_currency, target)
        if fresh is not None:
            return fresh.rate

        reverse = self.rates.latest(to_currency, from_currency, target)
        if reverse is not None and reverse.rate != 0:
            return 1 / reverse.rate
        return None

    def _fetch_historical(self, from_currency: str, to_currency: str, target: str) -> float | None:
        for provider in self.providers:
            if not provider.supports_history:
                continue
            try:
                rate = provider.fetch_historical_rate(from_currency, to_currency, target)
            except Exception:
                LOGGER.exception("Failed to fetch historical rate from %s", provider.name)
                continue
            if rate is None:
                continue
            self._cache(
                [
                    ExchangeRateData(
                        from_currency=from_currency,
                        to_currency=to_currency,
                        rate=rate,
                        rate_date=target,
                        source=provider.name,
                        timestamp=iso_timestamp(self._now()),
                    )
                ]
            )
            return rate
        return None

    def add_manual_rate(
        self, from_currency: str, to_currency: str, rate: float, rate_date: str | None = None
    ) -> ExchangeRateEntity:
        if rate is None or rate <= 0:
            raise ValidationError("Exchange rate must be a positive number")
        entity = ExchangeRateEntity(
            from_currency=from_currency,
            to_currency=to_currency,
            rate=float(rate),
            rate_date=rate_date or self.today(),
            timestamp=iso_timestamp(self._now()),
            source=MANUAL_SOURCE,
        )
        self.rates.upsert_rates([entity])
        return entity

    def convert_amount(
        self, amount: int, from_currency: str, to_currency: str, rate_date: str | None = None
    ) -> int | None:
        """Convert integer minor units, rounding half away from zero."""

        rate = self.get_rate(from_currency, to_currency, rate_date)
        if rate is None:
            return None
        converted = amount * rate
        return int(math.copysign(math.floor(abs(converted) + 0.5), converted))

    def get_used_currencies(self) -> list[str]:
        base = self.preferences.get(DEFAULT_CURRENCY_CODE) or ""
        accounts = AccountRow.__table__
        rows = self.store.execute(
            select(distinct(func.coalesce(accounts.c.currency_code, base)).label("currency_code"))
            .where(accounts.c.tombstone == 0)
        )
        currencies: list[str] = []
        for row in rows:
            code = row["currency_code"]
            if code and code not in currencies:
                currencies.append(code)
        return currencies

    def get_open_exchange_rates_usage(self) -> UsageData | None:
        app_id = self.preferences.get(OPEN_EXCHANGE_RATES_APP_ID)
        provider = OpenExchangeRatesProvider(
            app_id, session=self._session, timeout=self.settings.http_timeout
        )
        return provider.get_usage()

    # ------------------------------------------------------------------
    # Periodic updates
    # ------------------------------------------------------------------
    @property
    def update_state(self) -> UpdateState:
        return self._task.state

    def start_periodic_update(self) -> bool:
        started = self._task.start()
        if started:
            LOGGER.info("Periodic exchange rate updates started")
        return started

    def stop_periodic_update(self) -> None:
        self._task.stop()

    def run_update_cycle(self) -> float:
        """Run one refresh cycle synchronously; returns the delay before the next."""

        return self._task.run_once()

    def _update_cycle(self) -> NextRun:
        base = self.preferences.get(DEFAULT_CURRENCY_CODE)
        if not base:
            LOGGER.info("No base currency configured; retrying in %ss", BASE_CURRENCY_RETRY_SECONDS)
            return NextRun(BASE_CURRENCY_RETRY_SECONDS, ready=False)

        fetched = PersistenceResult()
        for currency in self.get_used_currencies():
            if currency != base:
                fetched.merge(self.fetch_and_cache_rates(currency, [base]))
        LOGGER.info("Exchange rate cycle cached %s rate(s) into %s", fetched.total, base)

        if fetched.total and not self._initial_fetch_complete:
            self._initial_fetch_complete = True
            LOGGER.info("Initial exchange rates fetched, triggering balance refresh")
            self.events.send(SYNC_EVENT, {"type": "success", "tables": ["accounts"]})
        return NextRun(self.get_next_update_delay())


__all__ = ["ExchangeRateService", "MANUAL_SOURCE"]
