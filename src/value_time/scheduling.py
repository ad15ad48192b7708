"""Cancellable repeating background tasks."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class ScheduledTask(Protocol):
    name: str

    @property
    def cancelled(self) -> bool: ...

    def cancel(self) -> None: ...


#: Called with the task itself; returns the delay before the next run, or
#: ``None`` to finish.
TaskCallback = Callable[[ScheduledTask], Optional[float]]
TaskFactory = Callable[[str, float, TaskCallback], ScheduledTask]


class RepeatingTask:
    """Run a callback on a daemon thread until it finishes or is cancelled.

    The first run happens ``first_delay`` seconds after :meth:`start`; each
    run returns the delay before the next one. Waiting is done on the
    cancellation event, so :meth:`cancel` interrupts a pending wait at once.
    """

    def __init__(self, name: str, first_delay: float, callback: TaskCallback) -> None:
        self.name = name
        self._first_delay = first_delay
        self._callback = callback
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def cancelled(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> "RepeatingTask":
        thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread = thread
        thread.start()
        logger.debug("Started background task %s (first run in %.1fs)", self.name, self._first_delay)
        return self

    def cancel(self) -> None:
        self._stop_event.set()
        logger.debug("Cancelled background task %s", self.name)

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def _run(self) -> None:
        delay = self._first_delay
        while not self._stop_event.wait(max(delay, 0.0)):
            try:
                next_delay = self._callback(self)
            except Exception:
                logger.exception("Background task %s failed", self.name)
                continue
            if next_delay is None:
                break
            delay = next_delay


def start_repeating(name: str, first_delay: float, callback: TaskCallback) -> RepeatingTask:
    return RepeatingTask(name, first_delay, callback).start()
