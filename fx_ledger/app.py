"""Named command registry exposed to the surrounding application."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from fx_ledger.exchange_rate.service import ExchangeRateService
from fx_ledger.schedules.service import ScheduleService
from fx_ledger.utils.dates import iso_timestamp
from fx_ledger.utils.logger import get_logger

LOGGER = get_logger(__name__)

Handler = Callable[..., Any]


@dataclass(slots=True)
class MutationRecord:
    command: str
    timestamp: str
    ok: bool
    error: str | None = None


@dataclass(slots=True)
class _Command:
    handler: Handler
    mutates: bool


class App:
    """Dispatch commands by name.

    Commands registered with ``mutates=True`` run one at a time and each run
    is appended to :attr:`journal`, whether it succeeded or raised.
    """

    def __init__(self) -> None:
        self._commands: Dict[str, _Command] = {}
        self._mutation_lock = threading.RLock()
        self.journal: List[MutationRecord] = []

    def method(self, name: str, handler: Handler, mutates: bool = False) -> None:
        if name in self._commands:
            raise ValueError(f"Command already registered: {name}")
        self._commands[name] = _Command(handler, mutates)

    def combine(self, other: "App") -> "App":
        for name, command in other._commands.items():
            self.method(name, command.handler, command.mutates)
        return self

    @property
    def commands(self) -> List[str]:
        return sorted(self._commands)

    def run(self, name: str, **params: Any) -> Any:
        command = self._commands.get(name)
        if command is None:
            raise KeyError(f"Unknown command: {name}")
        if not command.mutates:
            return command.handler(**params)
        with self._mutation_lock:
            try:
                result = command.handler(**params)
            except Exception as exc:
                self.journal.append(MutationRecord(name, iso_timestamp(), False, str(exc)))
                raise
            self.journal.append(MutationRecord(name, iso_timestamp(), True))
            return result


def create_schedules_app(service: ScheduleService) -> App:
    app = App()
    app.method(
        "schedule/create",
        lambda schedule=None, conditions=(): service.create_schedule(schedule, conditions),
        mutates=True,
    )
    app.method(
        "schedule/update",
        lambda schedule, conditions=None, resetNextDate=False: service.update_schedule(
            schedule, conditions, reset_next_date=resetNextDate
        ),
        mutates=True,
    )
    app.method("schedule/delete", lambda id: service.delete_schedule(id), mutates=True)
    app.method("schedule/skip-next-date", lambda id: service.skip_next_date(id), mutates=True)
    app.method(
        "schedule/post-transaction",
        lambda id, today=False: service.post_transaction_for_schedule(id, today=today),
        mutates=True,
    )
    app.method(
        "schedule/force-run-service",
        lambda: service.advance_schedules_service(True),
        mutates=True,
    )
    app.method("schedule/discover", service.discover_schedules)
    app.method(
        "schedule/get-upcoming-dates",
        lambda config, count: service.get_upcoming_dates(config, count),
    )
    app.method("schedule/export", service.export_schedules)
    app.method(
        "schedule/import",
        lambda content: service.import_schedules(content).to_dict(),
        mutates=True,
    )
    return app


def create_exchange_rate_app(service: ExchangeRateService) -> App:
    app = App()
    app.method(
        "exchange-rate/get",
        lambda fromCurrency, toCurrency, date=None: service.get_rate(fromCurrency, toCurrency, date),
    )
    app.method(
        "exchange-rate/add-manual",
        lambda fromCurrency, toCurrency, rate, date=None: service.add_manual_rate(
            fromCurrency, toCurrency, rate, date
        ),
        mutates=True,
    )
    app.method("exchange-rate/usage", service.get_open_exchange_rates_usage)
    return app


__all__ = ["App", "MutationRecord", "create_exchange_rate_app", "create_schedules_app"]
