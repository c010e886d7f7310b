from __future__ import annotations

import logging
import threading
from typing import Callable, Optional


class PeriodicJob:
    """Run ``func`` every ``interval_seconds`` on a daemon thread.

    The next run is scheduled after the previous one returns, so runs of the
    same job never overlap. Exceptions are logged and the schedule continues.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], object],
        *,
        run_immediately: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.name = name
        self.interval_seconds = max(0.0, interval_seconds)
        self.func = func
        self.run_immediately = run_immediately
        self.log = logger or logging.getLogger(self.__class__.__name__)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        self.log.info("Started %s (every %ss)", self.name, self.interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self.log.info("Stopped %s", self.name)

    def run_once(self) -> bool:
        try:
            self.func()
        except Exception:
            self.log.exception("%s run failed", self.name)
            return False
        return True

    def _loop(self) -> None:
        if self.run_immediately:
            self.run_once()
        while not self._stop.wait(self.interval_seconds):
            self.run_once()
