"""Sync coordinator owning the strategy state machine and single-flight passes."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from ..ingestion.adapters import ToolAdapterRegistry
from ..ingestion.change_tracker import current_time_ms
from ..ingestion.schemas import SourceError, SyncProgress
from ..ingestion.service import IngestionService
from ..settings import SyncSettings
from .scheduler import IntervalScheduler
from .strategy import SyncStrategy
from .watcher import SourceFileFilter, SourceWatcher

LOGGER = logging.getLogger(__name__)

ADAPTER_FAILURE = "adapter_failure"

DataChangedListener = Callable[[], None]


class _Runner(Protocol):
    @property
    def is_running(self) -> bool: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...


WatcherFactory = Callable[[list[Path], Callable[[set[Path]], object]], _Runner]
SchedulerFactory = Callable[[int, Callable[[], object]], _Runner]


class CoordinatorState(Enum):
    """Steady-state sync mode."""

    IDLE = "idle"
    WATCHING = "watching"
    SCHEDULED = "scheduled"


@dataclass
class PassReport:
    """Outcome of one pass over every registered adapter."""

    trigger: str
    started_at_ms: int
    finished_at_ms: int | None = None
    progress: list[SyncProgress] = field(default_factory=list)
    adapter_errors: list[SourceError] = field(default_factory=list)

    @property
    def events_inserted(self) -> int:
        return sum(item.events_inserted for item in self.progress)

    @property
    def imported_sources(self) -> int:
        return sum(item.imported_sources for item in self.progress)

    @property
    def skipped_sources(self) -> int:
        return sum(item.skipped_sources for item in self.progress)

    @property
    def changed(self) -> bool:
        return self.events_inserted > 0


class SyncCoordinator:
    """Drives ingestion passes across adapters in watch or scheduled mode."""

    def __init__(
        self,
        service: IngestionService,
        registry: ToolAdapterRegistry,
        settings: SyncSettings | None = None,
        watcher_factory: WatcherFactory | None = None,
        scheduler_factory: SchedulerFactory | None = None,
        clock: Callable[[], int] = current_time_ms,
    ) -> None:
        self._service = service
        self._registry = registry
        self._settings = settings or SyncSettings()
        self._strategy = self._settings.strategy
        self._watcher_factory = watcher_factory or self._default_watcher
        self._scheduler_factory = scheduler_factory or _default_scheduler
        self._clock = clock

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sync-pass")
        self._lock = threading.RLock()
        self._in_flight: Future[PassReport] | None = None
        self._listeners: list[DataChangedListener] = []
        self._state = CoordinatorState.IDLE
        self._runner: _Runner | None = None
        self._closed = False

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def strategy(self) -> SyncStrategy:
        return self._strategy

    @property
    def is_syncing(self) -> bool:
        with self._lock:
            return self._in_flight is not None and not self._in_flight.done()

    def on_data_changed(self, listener: DataChangedListener) -> Callable[[], None]:
        """Register a listener fired after a pass that inserted events; returns an unsubscribe hook."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def start(self) -> Future[PassReport]:
        """Run the initial backlog pass, then enter the configured steady-state mode."""
        with self._lock:
            if self._state is not CoordinatorState.IDLE:
                raise RuntimeError(f"Coordinator already started in {self._state.value} mode")
            initial = self.perform_initial_sync()
            self._enter(self._strategy)
        return initial

    def stop(self) -> None:
        """Tear down the active mode and return to idle; a running pass completes."""
        with self._lock:
            runner = self._detach()
        if runner is not None:
            runner.stop()

    def close(self, wait: bool = True) -> None:
        """Stop and release the worker thread."""
        with self._lock:
            runner = self._detach()
            self._closed = True
        if runner is not None:
            runner.stop()
        self._executor.shutdown(wait=wait)

    def apply_strategy(self, strategy: SyncStrategy) -> None:
        """Switch strategy, re-entering the matching mode when started."""
        with self._lock:
            previous = self._strategy
            self._strategy = strategy
            if self._state is CoordinatorState.IDLE:
                return
            runner = self._detach()
        if runner is not None:
            runner.stop()
        with self._lock:
            if self._state is CoordinatorState.IDLE and not self._closed:
                self._enter(self._strategy)
        LOGGER.info("Sync strategy changed from %s to %s", previous, strategy)

    def perform_initial_sync(self) -> Future[PassReport]:
        """Catch up on backlog over every adapter regardless of strategy."""
        return self._submit("initial")

    def perform_full_sync(self) -> Future[PassReport]:
        """Run one pass over every adapter, coalescing with a pass already in flight."""
        return self._submit("full")

    def _submit(self, trigger: str) -> Future[PassReport]:
        with self._lock:
            if self._closed:
                raise RuntimeError("Coordinator is closed")
            if self._in_flight is not None and not self._in_flight.done():
                LOGGER.info("Sync pass already running; coalescing %s request.", trigger)
                return self._in_flight
            future = self._executor.submit(self._run_pass, trigger)
            self._in_flight = future
            return future

    def _run_pass(self, trigger: str) -> PassReport:
        report = PassReport(trigger=trigger, started_at_ms=self._clock())
        for adapter in self._registry:
            try:
                report.progress.append(self._service.sync_directory(adapter))
            except Exception as exc:
                LOGGER.error("Sync failed for %s: %s", adapter.tool_id, exc)
                report.adapter_errors.append(
                    SourceError(source_key=adapter.tool_id, kind=ADAPTER_FAILURE, message=str(exc))
                )
        report.finished_at_ms = self._clock()
        LOGGER.info(
            "Finished %s sync pass: imported=%d skipped=%d events_inserted=%d adapter_errors=%d",
            trigger,
            report.imported_sources,
            report.skipped_sources,
            report.events_inserted,
            len(report.adapter_errors),
        )
        if report.changed:
            self._notify()
        return report

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener()
            except Exception as exc:
                LOGGER.error("Data-changed listener failed: %s", exc)

    def _enter(self, strategy: SyncStrategy) -> None:
        if strategy.interval_seconds is None:
            self._runner = self._watcher_factory(self._watch_paths(), self._on_sources_changed)
            self._state = CoordinatorState.WATCHING
        else:
            self._runner = self._scheduler_factory(strategy.interval_seconds, self.perform_full_sync)
            self._state = CoordinatorState.SCHEDULED
        self._runner.start()
        LOGGER.info("Coordinator entered %s mode", self._state.value)

    def _detach(self) -> _Runner | None:
        runner = self._runner
        self._runner = None
        self._state = CoordinatorState.IDLE
        return runner

    def _on_sources_changed(self, paths: set[Path]) -> None:
        LOGGER.info("Sources changed (%d paths); requesting sync pass.", len(paths))
        _ = self.perform_full_sync()

    def _watch_paths(self) -> list[Path]:
        paths: list[Path] = []
        for adapter in self._registry:
            directory = adapter.resolve_directory()
            if directory not in paths:
                paths.append(directory)
        return paths

    def _default_watcher(self, paths: list[Path], callback: Callable[[set[Path]], object]) -> _Runner:
        suffixes = {suffix for adapter in self._registry if not adapter.is_database for suffix in adapter.file_suffixes}
        database_names = [adapter.database_filename for adapter in self._registry if adapter.database_filename]
        return SourceWatcher(
            paths,
            callback,
            debounce_ms=self._settings.watch_debounce_ms,
            watch_filter=SourceFileFilter(suffixes=sorted(suffixes), database_names=database_names),
        )


def _default_scheduler(interval_seconds: int, callback: Callable[[], object]) -> _Runner:
    return IntervalScheduler(interval_seconds, callback)
