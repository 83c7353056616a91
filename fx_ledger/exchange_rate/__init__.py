"""Exchange rate cache, providers and refresh service."""

from fx_ledger.exchange_rate.models import ExchangeRateData, ExchangeRateEntity, UsageData

__all__ = ["ExchangeRateData", "ExchangeRateEntity", "UsageData"]
