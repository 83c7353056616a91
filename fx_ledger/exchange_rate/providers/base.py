"""Provider contract shared by every exchange rate source."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Mapping, Sequence

import requests

from fx_ledger.config import DEFAULT_HTTP_TIMEOUT
from fx_ledger.errors import ProviderError
from fx_ledger.exchange_rate.models import ExchangeRateData


class ExchangeRateProvider(ABC):
    """Strategy interface for upstream rate sources.

    Implementations must be best-effort: :meth:`fetch_rates` returns an empty
    list and :meth:`fetch_historical_rate` returns ``None`` instead of raising.
    """

    name: str = "provider"
    supports_history: bool = False
    quota_limited: bool = False

    def __init__(
        self,
        *,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout

    @abstractmethod
    def fetch_rates(self, base: str, targets: Sequence[str]) -> list[ExchangeRateData]:
        """Return the latest ``base -> target`` rates the provider knows about."""

    def fetch_historical_rate(self, from_currency: str, to_currency: str, rate_date: str) -> float | None:
        """Return the rate for a past day; providers without history return ``None``."""

        return None

    def _get_json(self, url: str, params: Mapping[str, Any] | None = None) -> Any:
        """GET ``url`` and decode its JSON body, raising :class:`ProviderError`."""

        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ProviderError(f"{self.name} request failed: {exc}") from exc
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(f"{self.name} returned malformed JSON") from exc
        # Keyed APIs report failures in the body with a 4xx status, so the body
        # is decoded before the status is checked.
        if isinstance(payload, Mapping) and payload.get("error"):
            raise ProviderError(
                f"{self.name} API error: {payload.get('message')} - {payload.get('description')}"
            )
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise ProviderError(f"{self.name} HTTP error: {exc}") from exc
        return payload

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"{type(self).__name__}(name={self.name!r})"


__all__ = ["ExchangeRateProvider"]
