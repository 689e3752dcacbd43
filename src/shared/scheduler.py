"""Periodic background tasks with explicit cancellation handles."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

log = logging.getLogger(__name__)


class PeriodicTask:
    """Runs *fn* every *interval_sec* seconds on a daemon thread.

    ``stop()`` wakes the thread immediately; exceptions raised by *fn* are
    logged and the loop keeps going.  Tests call the underlying sweep
    directly instead of starting the task.
    """

    def __init__(self, name: str, interval_sec: float, fn: Callable[[], object]) -> None:
        if interval_sec <= 0:
            raise ValueError(f"interval_sec must be positive, got {interval_sec}")
        self.name = name
        self.interval_sec = interval_sec
        self._fn = fn
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        log.debug("Periodic task %s started (every %.1fs)", self.name, self.interval_sec)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        log.debug("Periodic task %s stopped", self.name)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_sec):
            try:
                self._fn()
            except Exception:
                log.exception("Periodic task %s failed", self.name)
