"""Repeating timer thread for scheduled sync passes."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

LOGGER = logging.getLogger(__name__)


class IntervalScheduler:
    """Calls `callback` every `interval_seconds` on a daemon thread until stopped."""

    def __init__(self, interval_seconds: float, callback: Callable[[], object], name: str = "sync-scheduler") -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._interval_seconds = interval_seconds
        self._callback = callback
        self._name = name
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def interval_seconds(self) -> float:
        return self._interval_seconds

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the timer thread."""
        if self.is_running:
            LOGGER.warning("Scheduler already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        LOGGER.info("Scheduled sync every %s seconds", self._interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the timer thread and wait for it to exit."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        LOGGER.info("Scheduler stopped")

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval_seconds):
            try:
                self._callback()
            except Exception as exc:
                LOGGER.error("Scheduled sync trigger failed: %s", exc)
