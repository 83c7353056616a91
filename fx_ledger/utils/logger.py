"""Logging utilities for the fx_ledger package."""

from __future__ import annotations

import logging
import os
from typing import Optional

_LOGGER: Optional[logging.Logger] = None


def get_logger(name: str = "fx_ledger") -> logging.Logger:
    """Return a module-level logger configured with a simple formatter.

    The root configuration happens once; ``FX_LEDGER_LOG_LEVEL`` selects the
    level (``INFO`` when unset or unknown).
    """
    global _LOGGER
    if _LOGGER is None:
        level_name = os.getenv("FX_LEDGER_LOG_LEVEL", "INFO").upper()
        logging.basicConfig(
            level=getattr(logging, level_name, logging.INFO),
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
        _LOGGER = logging.getLogger("fx_ledger")
    return logging.getLogger(name)
