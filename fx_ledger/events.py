"""In-process notification bus used to signal the surrounding application."""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Callable, DefaultDict, List

from fx_ledger.utils.logger import get_logger

LOGGER = get_logger(__name__)

# Outcome of a budget sync, sent by the host application with {"type": ...}.
SYNC = "sync"
SYNC_EVENT = "sync-event"
SCHEDULES_OFFLINE = "schedules-offline"

Handler = Callable[[Any], None]


class EventBus:
    """Fan out named events to subscribed handlers.

    A failing handler is logged and skipped so one listener cannot break the
    sender or the remaining listeners.
    """

    def __init__(self) -> None:
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event: str, handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._handlers[event].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers[event]:
                    self._handlers[event].remove(handler)

        return unsubscribe

    def send(self, event: str, payload: Any = None) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event, ()))
        LOGGER.debug("Sending %s to %s handler(s)", event, len(handlers))
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                LOGGER.exception("Handler for %s failed", event)


__all__ = ["EventBus", "SCHEDULES_OFFLINE", "SYNC", "SYNC_EVENT"]
