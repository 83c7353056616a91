"""OpenExchangeRates provider (App ID required, quota limited)."""

from __future__ import annotations

from typing import Any, Sequence

import requests

from fx_ledger.config import DEFAULT_HTTP_TIMEOUT
from fx_ledger.errors import ProviderError
from fx_ledger.exchange_rate.models import ExchangeRateData, UsageData
from fx_ledger.exchange_rate.providers.base import ExchangeRateProvider
from fx_ledger.utils.dates import day_from_epoch, timestamp_from_epoch
from fx_ledger.utils.logger import get_logger

LOGGER = get_logger(__name__)

OPEN_EXCHANGE_RATES_URL = "https://openexchangerates.org/api"
USD = "USD"


class OpenExchangeRatesProvider(ExchangeRateProvider):
    """Client for the OpenExchangeRates REST API.

    Free plans always quote against USD; a custom ``base`` is only sent when
    the plan advertises the ``base`` feature. Otherwise the requested base is
    added to ``symbols`` and every rate is derived as
    ``rate(USD -> target) / rate(USD -> base)``.

    Plan features and usage counters come from ``usage.json``, which does not
    count against the request quota, and are refreshed around each call.
    """

    name = "openexchangerates"
    supports_history = True
    quota_limited = True

    def __init__(
        self,
        app_id: str | None,
        *,
        base_url: str = OPEN_EXCHANGE_RATES_URL,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        super().__init__(session=session, timeout=timeout)
        self.app_id = app_id
        self.base_url = base_url.rstrip("/")
        self.supports_custom_base = False
        self.usage: UsageData | None = None

    # ------------------------------------------------------------------
    # Plan and usage
    # ------------------------------------------------------------------
    def refresh_plan(self) -> UsageData | None:
        """Reload plan features and usage; failures fall back to free plan features."""

        if not self.app_id:
            self.usage = None
            return None
        try:
            payload = self._get_json(f"{self.base_url}/usage.json", {"app_id": self.app_id})
            data = payload["data"]
            plan = data["plan"]
            usage = data["usage"]
            self.supports_custom_base = bool(plan.get("features", {}).get("base"))
            self.usage = UsageData(
                plan_name=plan["name"],
                quota=str(plan.get("quota", "")),
                requests=int(usage["requests"]),
                requests_quota=int(usage["requests_quota"]),
                requests_remaining=int(usage["requests_remaining"]),
                days_remaining=int(usage["days_remaining"]),
                daily_average=float(usage["daily_average"]),
            )
        except (ProviderError, KeyError, TypeError, ValueError) as exc:
            LOGGER.error("Failed to fetch OpenExchangeRates plan features: %s", exc)
            self.supports_custom_base = False
            self.usage = None
        return self.usage

    def get_usage(self) -> UsageData | None:
        return self.refresh_plan()

    # ------------------------------------------------------------------
    # Rates
    # ------------------------------------------------------------------
    def _query_params(self, base: str, symbols: Sequence[str]) -> dict[str, str]:
        params = {"app_id": str(self.app_id)}
        use_base = self.supports_custom_base and base != USD
        if use_base:
            params["base"] = base
        wanted = list(dict.fromkeys(symbols))
        if not use_base and base != USD and base not in wanted:
            wanted.append(base)
        if wanted:
            params["symbols"] = ",".join(wanted)
        return params

    @staticmethod
    def _convert(rates: dict[str, Any], quoted_base: str, base: str, target: str) -> float | None:
        if quoted_base == base:
            rate = rates.get(target)
            return float(rate) if rate else None
        usd_to_target = rates.get(target)
        usd_to_base = rates.get(base)
        if usd_to_target and usd_to_base:
            return float(usd_to_target) / float(usd_to_base)
        return None

    def fetch_rates(self, base: str, targets: Sequence[str]) -> list[ExchangeRateData]:
        if not self.app_id:
            return []
        self.refresh_plan()
        base = base.upper()
        targets = [target.upper() for target in targets]
        try:
            payload = self._get_json(
                f"{self.base_url}/latest.json", self._query_params(base, targets)
            )
            rates = payload.get("rates") or {}
            quoted_base = payload.get("base", USD)
            epoch = payload["timestamp"]
        except (ProviderError, KeyError, AttributeError) as exc:
            LOGGER.error("Failed to fetch rates from OpenExchangeRates: %s", exc)
            return []

        rate_date = day_from_epoch(epoch)
        timestamp = timestamp_from_epoch(epoch)
        results: list[ExchangeRateData] = []
        for target in targets:
            if target == base:
                rate: float | None = 1.0
            else:
                rate = self._convert(rates, quoted_base, base, target)
            if rate is None:
                continue
            results.append(
                ExchangeRateData(
                    from_currency=base,
                    to_currency=target,
                    rate=rate,
                    rate_date=rate_date,
                    source=self.name,
                    timestamp=timestamp,
                )
            )
        self.refresh_plan()
        return results

    def fetch_historical_rate(self, from_currency: str, to_currency: str, rate_date: str) -> float | None:
        if not self.app_id:
            LOGGER.warning("Historical rates require an App ID for OpenExchangeRates")
            return None
        self.refresh_plan()
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        try:
            payload = self._get_json(
                f"{self.base_url}/historical/{rate_date}.json",
                self._query_params(from_currency, [to_currency]),
            )
            rates = payload.get("rates") or {}
            quoted_base = payload.get("base", USD)
        except (ProviderError, AttributeError) as exc:
            LOGGER.warning("OpenExchangeRates error for %s: %s", rate_date, exc)
            return None

        rate = self._convert(rates, quoted_base, from_currency, to_currency)
        if rate is None:
            LOGGER.warning("No rate available for %s -> %s on %s", from_currency, to_currency, rate_date)
            return None
        self.refresh_plan()
        return rate


__all__ = ["OPEN_EXCHANGE_RATES_URL", "OpenExchangeRatesProvider"]
