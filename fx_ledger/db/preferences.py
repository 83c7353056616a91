"""Budget-scoped user preferences stored in the ``preferences`` table."""

from __future__ import annotations

import threading
from typing import Dict, Optional

from sqlalchemy import select

from fx_ledger.db.models import PreferenceRow
from fx_ledger.db.store import Store
from fx_ledger.utils.logger import get_logger

LOGGER = get_logger(__name__)

DEFAULT_CURRENCY_CODE = "defaultCurrencyCode"
OPEN_EXCHANGE_RATES_APP_ID = "openExchangeRatesAppId"
MEMPOOL_SPACE_BASE_URL = "mempoolSpaceBaseUrl"
UPCOMING_SCHEDULED_TRANSACTION_LENGTH = "upcomingScheduledTransactionLength"
LAST_SCHEDULE_RUN = "lastScheduleRun"


class Preferences:
    """Key/value access to preferences with an atomic check-and-set helper."""

    def __init__(self, store: Store) -> None:
        self.store = store
        self._table = PreferenceRow.__table__
        self._claim_lock = threading.Lock()

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        row = self.store.get("preferences", key)
        if row is None or row["value"] is None:
            return default
        return row["value"]

    def set(self, key: str, value: Optional[str]) -> None:
        with self.store.batch():
            if self.store.get("preferences", key) is None:
                self.store.insert("preferences", {"id": key, "value": value})
            else:
                self.store.update("preferences", {"id": key, "value": value})

    def all(self) -> Dict[str, Optional[str]]:
        rows = self.store.execute(select(self._table))
        return {row["id"]: row["value"] for row in rows}

    def claim_daily_run(self, key: str, today: str) -> bool:
        """Record ``today`` under ``key`` unless it is already recorded.

        Returns ``True`` for exactly one caller per day; the read and the
        write happen under one lock and inside one transaction.
        """

        with self._claim_lock:
            with self.store.batch():
                if self.get(key) == today:
                    return False
                self.set(key, today)
        LOGGER.debug("Claimed %s for %s", key, today)
        return True


__all__ = [
    "DEFAULT_CURRENCY_CODE",
    "LAST_SCHEDULE_RUN",
    "MEMPOOL_SPACE_BASE_URL",
    "OPEN_EXCHANGE_RATES_APP_ID",
    "Preferences",
    "UPCOMING_SCHEDULED_TRANSACTION_LENGTH",
]
