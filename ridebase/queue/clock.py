"""Clocks and the poll-loop handle shared by the queue worker and alert monitor."""

import logging
import threading
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


class Clock:
    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class RunHandle:
    """Runs ``tick`` every ``interval_ms`` on a daemon thread until stopped.

    The first tick runs immediately. ``stop()`` waits for the tick in
    progress to finish; it never interrupts it.
    """

    def __init__(self, name: str, interval_ms: int, tick):
        self.name = name
        self.interval_s = interval_ms / 1000.0
        self._tick = tick
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> "RunHandle":
        self._thread.start()
        return self

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and not self._stop.is_set()

    def _run(self):
        while not self._stop.is_set():
            try:
                self._tick()
            except Exception:
                logger.exception("%s tick failed", self.name)
            self._stop.wait(self.interval_s)

    def stop(self, timeout: float | None = None):
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until stopped; True if stopped within timeout."""
        return self._stop.wait(timeout)
