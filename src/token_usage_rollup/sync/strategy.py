"""Sync strategy values: continuous watch or a fixed polling interval."""

from __future__ import annotations

import re
from dataclasses import dataclass

AUTO_STRATEGY_VALUE = "auto"
PRESET_INTERVAL_SECONDS: dict[str, int] = {"1m": 60, "5m": 300, "10m": 600, "15m": 900}

_DURATION_PATTERN = re.compile(r"^(?P<amount>\d+)\s*(?P<unit>s|m|h)?$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600}


@dataclass(frozen=True)
class SyncStrategy:
    """Either watch mode (`interval_seconds is None`) or a polling interval."""

    interval_seconds: int | None = None

    def __post_init__(self) -> None:
        if self.interval_seconds is not None and self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

    @property
    def is_auto(self) -> bool:
        return self.interval_seconds is None

    @classmethod
    def parse(cls, value: str) -> SyncStrategy:
        """Parse `auto`, a preset such as `5m`, or a number of seconds."""
        text = value.strip().lower()
        if text == AUTO_STRATEGY_VALUE:
            return AUTO_STRATEGY
        if text in PRESET_INTERVAL_SECONDS:
            return cls(interval_seconds=PRESET_INTERVAL_SECONDS[text])
        match = _DURATION_PATTERN.match(text)
        if match is None:
            raise ValueError(f"Invalid sync strategy: {value!r}. Expected 'auto', a preset like '5m', or seconds.")
        seconds = int(match.group("amount")) * _UNIT_SECONDS[match.group("unit") or "s"]
        if seconds <= 0:
            raise ValueError(f"Invalid sync strategy: {value!r}. Interval must be positive.")
        return cls(interval_seconds=seconds)

    def __str__(self) -> str:
        if self.interval_seconds is None:
            return AUTO_STRATEGY_VALUE
        for name, seconds in PRESET_INTERVAL_SECONDS.items():
            if seconds == self.interval_seconds:
                return name
        return f"{self.interval_seconds}s"


AUTO_STRATEGY = SyncStrategy()
DEFAULT_STRATEGY = AUTO_STRATEGY
