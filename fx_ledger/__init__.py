"""Public interface for the fx_ledger package."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from importlib import metadata as importlib_metadata
from typing import Any, Callable, Sequence
from urllib.parse import quote, urlparse, urlunparse

import requests
from sqlalchemy import text

from fx_ledger.app import App, create_exchange_rate_app, create_schedules_app
from fx_ledger.config import Settings, load_settings
from fx_ledger.db import DEFAULT_SQLITE_DB_PATH
from fx_ledger.db.preferences import Preferences
from fx_ledger.db.rate_cache import PersistenceResult
from fx_ledger.db.store import Store
from fx_ledger.events import SYNC, EventBus
from fx_ledger.exchange_rate.providers import ExchangeRateProvider
from fx_ledger.exchange_rate.service import ExchangeRateService
from fx_ledger.rules.repository import RuleStore
from fx_ledger.schedules.service import ScheduleService
from fx_ledger.utils.logger import get_logger

LOGGER = get_logger(__name__)

__all__ = [
    "__version__",
    "DatabaseBackend",
    "DatabaseConnectionInfo",
    "ExchangeRateService",
    "FxLedger",
    "PersistenceResult",
    "ScheduleService",
]

try:
    __version__ = importlib_metadata.version("fx-ledger")
except importlib_metadata.PackageNotFoundError:  # pragma: no cover - fallback for local runs
    __version__ = "0.1.0"


class DatabaseBackend(str, Enum):
    """Supported database engines for FxLedger."""

    SQLITE = "sqlite"
    MYSQL = "mysql"
    POSTGRES = "postgres"

    @classmethod
    def resolve_backend_and_scheme(cls, scheme: str) -> tuple["DatabaseBackend", str]:
        """Return backend enum + canonical scheme used in connection URLs."""

        if not scheme:
            raise ValueError("DB_URL must include a scheme (e.g. sqlite:// or postgres://)")
        scheme_lower = scheme.lower()
        base_scheme, _, driver = scheme_lower.partition("+")
        if base_scheme in {"postgresql", "postgres"}:
            canonical_scheme = f"postgresql+{driver}" if driver else "postgresql"
            return cls.POSTGRES, canonical_scheme
        if base_scheme == "sqlite":
            return cls.SQLITE, "sqlite"
        if base_scheme == "mysql":
            # Keep driver hints such as ``mysql+pymysql``.
            canonical_scheme = scheme_lower if driver else "mysql"
            return cls.MYSQL, canonical_scheme
        raise ValueError(
            "Unsupported database backend. Supported values are SQLite, MySQL and Postgres."
        )


@dataclass(slots=True)
class DatabaseConnectionInfo:
    """Represents where the budget database lives."""

    backend: DatabaseBackend
    url: str
    name: str | None
    username: str | None
    password: str | None
    host: str | None
    port: int | None

    @classmethod
    def from_url(cls, url: str) -> "DatabaseConnectionInfo":
        """Create a connection object by parsing a database URL/DSN."""

        if url.lower().startswith("sqlite:"):
            # urlunparse would collapse ``sqlite:///path`` into ``sqlite:/path``.
            _, _, path = url.partition(":///")
            return cls(
                backend=DatabaseBackend.SQLITE,
                url=url,
                name=path or None,
                username=None,
                password=None,
                host=None,
                port=None,
            )
        parsed = urlparse(url)
        if not parsed.scheme:
            raise ValueError("DB_URL must include a scheme (e.g. sqlite:// or postgres://)")
        backend, canonical_scheme = DatabaseBackend.resolve_backend_and_scheme(parsed.scheme)
        if parsed.scheme != canonical_scheme:
            parsed = parsed._replace(scheme=canonical_scheme)
            url = urlunparse(parsed)
        resolved_name = parsed.path[1:] if parsed.path and parsed.path != "/" else None

        return cls(
            backend=backend,
            url=url,
            name=resolved_name,
            username=parsed.username,
            password=parsed.password,
            host=parsed.hostname,
            port=parsed.port,
        )

    @classmethod
    def bundled_sqlite(cls) -> "DatabaseConnectionInfo":
        return cls(
            backend=DatabaseBackend.SQLITE,
            url=f"sqlite:///{quote(DEFAULT_SQLITE_DB_PATH.as_posix(), safe='/:')}",
            name=str(DEFAULT_SQLITE_DB_PATH),
            username=None,
            password=None,
            host=None,
            port=None,
        )


class FxLedger:
    """Package facade wiring the store, both engines and the command registry.

    Without a DSN (argument or ``FX_LEDGER_DB_URL``) the bundled SQLite file
    is used. Sync outcomes sent on the event bus as ``("sync", {"type": ..})``
    trigger the daily schedule run.
    """

    __slots__ = (
        "connection_info",
        "backend",
        "settings",
        "store",
        "preferences",
        "events",
        "rules",
        "exchange_rates",
        "schedules",
        "app",
        "_unsubscribe",
    )

    _DRIVER_HINTS: dict[DatabaseBackend, str] = {
        DatabaseBackend.POSTGRES: "Install psycopg2 or psycopg2-binary via 'pip install psycopg2-binary'.",
        DatabaseBackend.MYSQL: "Install mysqlclient or PyMySQL via 'pip install mysqlclient' or 'pip install PyMySQL'.",
    }

    __version__ = __version__

    def __init__(
        self,
        db_config: DatabaseConnectionInfo | str | None = None,
        *,
        settings: Settings | None = None,
        providers: Sequence[ExchangeRateProvider] | None = None,
        auto_start_updates: bool = True,
        today: Callable[[], str] | None = None,
        now: Callable[[], datetime] | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.connection_info = self._build_connection_info(db_config or self.settings.database_url)
        self.backend = self.connection_info.backend.value
        try:
            self.store = Store(self.connection_info.url)
        except ModuleNotFoundError as exc:
            raise RuntimeError(self._missing_driver_message(exc)) from exc
        self.preferences = Preferences(self.store)
        self.events = EventBus()
        self.rules = RuleStore(self.store)
        self.exchange_rates = ExchangeRateService(
            self.store,
            self.preferences,
            self.events,
            providers=providers,
            settings=self.settings,
            auto_start_updates=auto_start_updates,
            now=now,
            session=session,
        )
        self.schedules = ScheduleService(
            self.store,
            self.rules,
            self.preferences,
            self.events,
            today=today,
            rate_lookup=self.exchange_rates.get_rate,
        )
        self.app: App = create_schedules_app(self.schedules).combine(
            create_exchange_rate_app(self.exchange_rates)
        )
        self._unsubscribe = self.events.subscribe(SYNC, self._on_sync)

    @staticmethod
    def _build_connection_info(db_config: DatabaseConnectionInfo | str | None) -> DatabaseConnectionInfo:
        if isinstance(db_config, DatabaseConnectionInfo):
            return db_config
        if isinstance(db_config, str):
            return DatabaseConnectionInfo.from_url(db_config)
        return DatabaseConnectionInfo.bundled_sqlite()

    def _on_sync(self, payload: Any) -> None:
        sync_type = payload.get("type") if isinstance(payload, dict) else payload
        if self.schedules.handle_sync_event(sync_type):
            LOGGER.info("Ran daily schedule service after %s sync", sync_type)

    def run(self, command: str, **params: Any) -> Any:
        return self.app.run(command, **params)

    def connection(self) -> tuple[bool, str | None]:
        """Attempt a round trip to the database and report the outcome."""

        try:
            with self.store.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except ModuleNotFoundError as exc:
            return False, self._missing_driver_message(exc)
        except Exception as exc:  # pragma: no cover - SQLAlchemy provides error detail
            return False, str(exc)
        return True, None

    def _missing_driver_message(self, exc: ModuleNotFoundError) -> str:
        module_name = exc.name or str(exc)
        base = (
            f"Missing optional dependency '{module_name}' required for "
            f"{self.connection_info.backend.value} connections."
        )
        hint = self._DRIVER_HINTS.get(self.connection_info.backend)
        return f"{base} {hint}" if hint else base

    def close(self) -> None:
        self._unsubscribe()
        self.exchange_rates.stop_periodic_update()
        self.schedules.close()
        self.store.close()

    def __enter__(self) -> "FxLedger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
