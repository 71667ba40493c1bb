"""File-system watcher dispatching debounced change batches."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from pathlib import Path

from watchfiles import Change, DefaultFilter, watch

LOGGER = logging.getLogger(__name__)

WATCHED_SUFFIXES: tuple[str, ...] = (".json",)
WATCHED_DATABASE_NAMES: tuple[str, ...] = ("opencode.db",)
DATABASE_SIDECAR_SUFFIXES: tuple[str, ...] = ("", "-wal", "-shm")


class SourceFileFilter(DefaultFilter):
    """Accept JSON message files and embedded databases with their WAL/SHM sidecars."""

    def __init__(
        self,
        suffixes: Iterable[str] = WATCHED_SUFFIXES,
        database_names: Iterable[str] = WATCHED_DATABASE_NAMES,
    ) -> None:
        super().__init__()
        self._suffixes = tuple(suffix.lower() for suffix in suffixes)
        self._database_files = frozenset(
            f"{name}{sidecar}" for name in database_names for sidecar in DATABASE_SIDECAR_SUFFIXES
        )

    def is_supported(self, path: Path) -> bool:
        """Return True when `path` names a file that can hold usage events."""
        return path.name in self._database_files or path.suffix.lower() in self._suffixes

    def __call__(self, change: Change, path: str) -> bool:
        return self.is_supported(Path(path)) and super().__call__(change, path)


class SourceWatcher:
    """Background watcher that reports changed source paths in debounced batches."""

    def __init__(
        self,
        paths: Iterable[Path],
        callback: Callable[[set[Path]], object],
        debounce_ms: int = 5000,
        watch_filter: SourceFileFilter | None = None,
    ) -> None:
        self._paths = list(paths)
        self._callback = callback
        self._debounce_ms = debounce_ms
        self._watch_filter = watch_filter or SourceFileFilter()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start watching existing paths on a daemon thread."""
        if self.is_running:
            LOGGER.warning("File watcher already running")
            return
        watch_paths = [path for path in self._paths if path.exists()]
        if not watch_paths:
            LOGGER.warning("No watch paths exist, watcher has nothing to monitor")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, args=(watch_paths,), name="source-watcher", daemon=True)
        self._thread.start()
        LOGGER.info("Watching %d directories: %s", len(watch_paths), [str(path) for path in watch_paths])

    def stop(self, timeout: float | None = 5.0) -> None:
        """Signal the watch loop to exit and wait for the thread."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        LOGGER.info("File watcher stopped")

    def _run(self, watch_paths: list[Path]) -> None:
        try:
            for changes in watch(
                *watch_paths,
                watch_filter=self._watch_filter,
                debounce=self._debounce_ms,
                stop_event=self._stop_event,
            ):
                changed = {Path(path) for _change, path in changes}
                if not changed:
                    continue
                LOGGER.info("Detected %d changed sources", len(changed))
                try:
                    self._callback(changed)
                except Exception as exc:
                    LOGGER.error("Error dispatching changed sources: %s", exc)
        except OSError as exc:
            LOGGER.error("File watcher error: %s", exc)
