"""Environment driven configuration for fx_ledger.

Budget-scoped settings (base currency, provider credentials, upcoming window)
live in the ``preferences`` table; this module only covers process-level
knobs that have to be known before a database is opened.
"""

from __future__ import annotations

from dataclasses import dataclass
from os import getenv
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_HTTP_TIMEOUT = 15.0
MIN_HTTP_TIMEOUT = 1.0
MAX_HTTP_TIMEOUT = 60.0


@dataclass(frozen=True)
class Settings:
    """Strongly-typed container for runtime configuration.

    Attributes:
        database_url: DSN of the budget database. ``None`` selects the bundled
            SQLite file.
        http_timeout: Seconds a single provider HTTP call may take before it
            is treated as a provider failure.
        log_level: Name of the logging level used by :func:`get_logger`.
    """

    database_url: Optional[str] = None
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Create a :class:`Settings` instance from the environment."""

    return Settings(
        database_url=getenv("FX_LEDGER_DB_URL") or None,
        http_timeout=_parse_timeout(getenv("FX_LEDGER_HTTP_TIMEOUT")),
        log_level=(getenv("FX_LEDGER_LOG_LEVEL") or "INFO").upper(),
    )


def _parse_timeout(raw: Optional[str]) -> float:
    if not raw:
        return DEFAULT_HTTP_TIMEOUT
    try:
        value = float(raw)
    except ValueError:
        return DEFAULT_HTTP_TIMEOUT
    return min(max(value, MIN_HTTP_TIMEOUT), MAX_HTTP_TIMEOUT)


__all__ = ["Settings", "load_settings", "DEFAULT_HTTP_TIMEOUT"]
