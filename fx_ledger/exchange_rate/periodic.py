"""Cancellable, self-rescheduling background task."""

from __future__ import annotations

import threading
from enum import Enum
from typing import Callable, NamedTuple

from fx_ledger.utils.logger import get_logger

LOGGER = get_logger(__name__)

FAILURE_BACKOFF_SECONDS = 5 * 60


class UpdateState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


class NextRun(NamedTuple):
    """What a cycle asks for: the delay before the next run, and whether it did real work."""

    delay: float
    ready: bool = True


class PeriodicTask:
    """Run ``cycle`` on a worker thread until :meth:`stop` is called.

    The next run is scheduled only after the current one returns, so slow
    cycles never overlap. A cycle that raises is logged and retried after
    ``failure_backoff`` seconds. The task moves from ``starting`` to
    ``running`` after the first cycle reporting ``ready``.
    """

    def __init__(
        self,
        cycle: Callable[[], NextRun],
        *,
        name: str = "periodic-task",
        failure_backoff: float = FAILURE_BACKOFF_SECONDS,
    ) -> None:
        self._cycle = cycle
        self.name = name
        self.failure_backoff = failure_backoff
        self._state = UpdateState.STOPPED
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> UpdateState:
        return self._state

    def _transition(self, expected: UpdateState, new: UpdateState) -> bool:
        with self._lock:
            if self._state is not expected:
                return False
            self._state = new
            return True

    def start(self) -> bool:
        """Start the worker; returns ``False`` when it is already starting or running."""

        if not self._transition(UpdateState.STOPPED, UpdateState.STARTING):
            return False
        self._cancel = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(self._cancel,), name=self.name, daemon=True
        )
        self._thread.start()
        LOGGER.debug("Started %s", self.name)
        return True

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._lock:
            self._state = UpdateState.STOPPED
            cancel, thread = self._cancel, self._thread
            self._thread = None
        cancel.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        LOGGER.debug("Stopped %s", self.name)

    def run_once(self) -> float:
        """Run a single cycle on the calling thread and return the next delay."""

        try:
            outcome = self._cycle()
        except Exception:
            LOGGER.exception("%s cycle failed; retrying in %ss", self.name, self.failure_backoff)
            return self.failure_backoff
        if outcome.ready:
            self._transition(UpdateState.STARTING, UpdateState.RUNNING)
        return outcome.delay

    def _run(self, cancel: threading.Event) -> None:
        delay = 0.0
        while not cancel.wait(delay):
            delay = self.run_once()


__all__ = ["FAILURE_BACKOFF_SECONDS", "NextRun", "PeriodicTask", "UpdateState"]
