"""Runtime settings bundled for the sync coordinator and ingestion services."""

from __future__ import annotations

from dataclasses import dataclass, field

from .sync.strategy import DEFAULT_STRATEGY, SyncStrategy


@dataclass(frozen=True)
class SyncSettings:
    """Tunables shared by the coordinator, ingestion and rollup maintenance."""

    strategy: SyncStrategy = field(default_factory=lambda: DEFAULT_STRATEGY)
    watch_debounce_ms: int = 5000
    rollup_batch_size: int = 5000
    session_batch_size: int = 500
    source_batch_size: int = 1000
    stable_read_attempts: int = 3
    stable_read_delay_seconds: float = 0.05

    def __post_init__(self) -> None:
        for name in ("watch_debounce_ms", "rollup_batch_size", "session_batch_size", "source_batch_size"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
