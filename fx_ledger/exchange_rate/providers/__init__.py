"""Upstream exchange rate sources."""

from fx_ledger.exchange_rate.providers.base import ExchangeRateProvider
from fx_ledger.exchange_rate.providers.mempoolspace import MempoolSpaceProvider
from fx_ledger.exchange_rate.providers.openexchangerates import OpenExchangeRatesProvider

__all__ = ["ExchangeRateProvider", "MempoolSpaceProvider", "OpenExchangeRatesProvider"]
