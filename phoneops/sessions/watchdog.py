from __future__ import annotations

import logging
import threading

from phoneops.sessions.controller import SessionController

logger = logging.getLogger(__name__)


class SessionWatchdog:
    """Background sweep that applies session deadlines and refreshes device lock leases."""

    def __init__(self, controller: SessionController, interval_seconds: float):
        self._controller = controller
        self._interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="session-watchdog", daemon=True)
        self._thread.start()
        logger.info("Session watchdog started (interval %.1fs)", self._interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Session watchdog stopped")

    def run_once(self) -> int:
        return self._controller.enforce_deadlines()

    def _loop(self) -> None:
        while not self._stop.wait(self._interval_seconds):
            try:
                forced = self.run_once()
            except Exception:
                logger.exception("Session watchdog sweep failed")
                continue
            if forced:
                logger.info("Session watchdog finished %d overdue sessions", forced)
