"""Data models shared by exchange rate providers, the cache and the service."""

from __future__ import annotations

from dataclasses import dataclass


def rate_id(from_currency: str, to_currency: str, rate_date: str) -> str:
    """Deterministic cache key of a ``(from, to, date)`` triple."""

    return f"{from_currency}-{to_currency}-{rate_date}"


@dataclass(slots=True)
class ExchangeRateData:
    """A single rate returned by a provider.

    ``rate`` converts ``from_currency`` amounts into ``to_currency`` amounts;
    ``rate_date`` is the calendar day the rate applies to and ``timestamp`` the
    optional provider supplied fetch time.
    """

    from_currency: str
    to_currency: str
    rate: float
    rate_date: str
    source: str
    timestamp: str | None = None


@dataclass(slots=True)
class ExchangeRateEntity:
    """Representation of a cached ``exchange_rates`` row."""

    from_currency: str
    to_currency: str
    rate: float
    rate_date: str
    timestamp: str
    source: str

    @property
    def id(self) -> str:
        return rate_id(self.from_currency, self.to_currency, self.rate_date)

    @classmethod
    def from_data(cls, data: ExchangeRateData, fallback_timestamp: str) -> "ExchangeRateEntity":
        return cls(
            from_currency=data.from_currency,
            to_currency=data.to_currency,
            rate=data.rate,
            rate_date=data.rate_date,
            timestamp=data.timestamp or fallback_timestamp,
            source=data.source,
        )


@dataclass(slots=True)
class UsageData:
    """Plan and quota information reported by a keyed provider."""

    plan_name: str
    quota: str
    requests: int
    requests_quota: int
    requests_remaining: int
    days_remaining: int
    daily_average: float


__all__ = ["ExchangeRateData", "ExchangeRateEntity", "UsageData", "rate_id"]
