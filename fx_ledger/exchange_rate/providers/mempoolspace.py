"""mempool.space provider: public BTC prices used for fiat cross rates."""

from __future__ import annotations

from datetime import datetime, time
from typing import Any, Mapping, Sequence

import requests

from fx_ledger.config import DEFAULT_HTTP_TIMEOUT
from fx_ledger.errors import ProviderError
from fx_ledger.exchange_rate.models import ExchangeRateData
from fx_ledger.exchange_rate.providers.base import ExchangeRateProvider
from fx_ledger.utils.dates import day_from_epoch, iso_timestamp, parse_date, timestamp_from_epoch
from fx_ledger.utils.logger import get_logger

LOGGER = get_logger(__name__)

MEMPOOL_SPACE_URL = "https://mempool.space"
API_PATH = "/api/v1"
BTC = "BTC"
USD = "USD"
SUPPORTED_CURRENCIES = ("USD", "EUR", "GBP", "CAD", "CHF", "AUD", "JPY", "BTC")


class MempoolSpaceProvider(ExchangeRateProvider):
    """Derives fiat and BTC rates from mempool.space bitcoin prices.

    Every price is quoted per bitcoin, so ``rate(A -> B) = price(B) / price(A)``.
    Historical snapshots carry ``USDxxx`` exchange rates which are used for
    pairs not covered by the price array.
    """

    name = "mempool.space"
    supports_history = True

    def __init__(
        self,
        base_url: str | None = None,
        *,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        super().__init__(session=session, timeout=timeout)
        self.base_url = (base_url or MEMPOOL_SPACE_URL).rstrip("/")

    @property
    def api_url(self) -> str:
        return f"{self.base_url}{API_PATH}"

    def fetch_rates(self, base: str, targets: Sequence[str]) -> list[ExchangeRateData]:
        base = base.upper()
        try:
            prices = self._get_json(f"{self.api_url}/prices")
            if not isinstance(prices, Mapping):
                raise ProviderError("mempool.space prices payload is not an object")
        except ProviderError as exc:
            LOGGER.error("Failed to fetch rates from mempool.space: %s", exc)
            return []

        epoch = prices.get("time")
        if epoch:
            rate_date = day_from_epoch(epoch)
            timestamp = timestamp_from_epoch(epoch)
        else:
            timestamp = iso_timestamp()
            rate_date = datetime.now().date().isoformat()

        base_price = _price(prices, base)
        results: list[ExchangeRateData] = []
        for target in (currency.upper() for currency in targets):
            if target == base:
                continue
            target_price = _price(prices, target)
            if base_price and target_price:
                rate = target_price / base_price
            elif base == BTC and target_price:
                rate = target_price
            elif target == BTC and base_price:
                rate = 1 / base_price
            else:
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
        return results

    def fetch_historical_rate(self, from_currency: str, to_currency: str, rate_date: str) -> float | None:
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        noon = datetime.combine(parse_date(rate_date), time(12, 0))
        if from_currency not in (USD, BTC):
            primary = from_currency
        elif to_currency not in (USD, BTC):
            primary = to_currency
        else:
            primary = USD
        try:
            payload = self._get_json(
                f"{self.api_url}/historical-price",
                {"currency": primary, "timestamp": int(noon.timestamp())},
            )
            snapshots = payload.get("prices") or []
            exchange_rates = payload.get("exchangeRates") or {}
        except (ProviderError, AttributeError) as exc:
            LOGGER.error(
                "Failed to fetch historical rate %s -> %s for %s from mempool.space: %s",
                from_currency,
                to_currency,
                rate_date,
                exc,
            )
            return None
        if not snapshots:
            return None
        return _historical_cross_rate(snapshots[0], exchange_rates, from_currency, to_currency)


def _price(prices: Mapping[str, Any], currency: str) -> float | None:
    value = prices.get(currency)
    if isinstance(value, (int, float)) and value > 0:
        return float(value)
    return None


def _historical_cross_rate(
    snapshot: Mapping[str, Any],
    exchange_rates: Mapping[str, Any],
    from_currency: str,
    to_currency: str,
) -> float | None:
    btc_usd = _price(snapshot, USD)

    if from_currency == BTC and _price(snapshot, to_currency):
        return _price(snapshot, to_currency)
    if to_currency == BTC and _price(snapshot, from_currency):
        return 1 / _price(snapshot, from_currency)  # type: ignore[operator]
    if btc_usd is None:
        return None

    usd_to_from = _price(exchange_rates, f"{USD}{from_currency}")
    usd_to_to = _price(exchange_rates, f"{USD}{to_currency}")

    if from_currency == BTC:
        return btc_usd * usd_to_to if usd_to_to else None
    if to_currency == BTC:
        return 1 / (btc_usd * usd_to_from) if usd_to_from else None
    if from_currency == USD:
        return usd_to_to
    if to_currency == USD:
        return 1 / usd_to_from if usd_to_from else None
    if usd_to_from and usd_to_to:
        return usd_to_to / usd_to_from
    return None


__all__ = ["MEMPOOL_SPACE_URL", "MempoolSpaceProvider", "SUPPORTED_CURRENCIES"]
