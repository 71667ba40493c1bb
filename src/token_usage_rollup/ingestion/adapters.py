"""Registry mapping tool ids to their parser and source location."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

from ..paths import get_default_claude_code_dir, get_default_cursor_dir, get_default_opencode_db_path
from .change_tracker import Fingerprinter
from .errors import AdapterError
from .parser import JsonMessageParser, Parser
from .source_reader import OpenCodeDatabaseParser

OPENCODE_TOOL_ID = "opencode"
CLAUDE_CODE_TOOL_ID = "claude_code"
CURSOR_TOOL_ID = "cursor"

DEFAULT_FILE_SUFFIXES: tuple[str, ...] = (".json",)


@dataclass(frozen=True)
class ToolAdapter:
    """Capabilities needed to sync one tool's sources."""

    tool_id: str
    display_name: str
    parser: Parser
    resolve_directory: Callable[[], Path]
    file_suffixes: tuple[str, ...] = DEFAULT_FILE_SUFFIXES
    database_filename: str | None = None
    fingerprint: Fingerprinter | None = None

    @property
    def is_database(self) -> bool:
        return self.database_filename is not None

    def accepts(self, path: Path) -> bool:
        """Return True when `path` is a source this adapter can parse."""
        if self.database_filename is not None:
            return path.name == self.database_filename
        return path.suffix.lower() in self.file_suffixes


class ToolAdapterRegistry:
    """Ordered collection of tool adapters keyed by tool id."""

    def __init__(self, adapters: Iterable[ToolAdapter] = ()) -> None:
        self._adapters: dict[str, ToolAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ToolAdapter) -> None:
        """Add an adapter; tool ids must be unique."""
        if adapter.tool_id in self._adapters:
            raise ValueError(f"Adapter already registered for tool: {adapter.tool_id}")
        self._adapters[adapter.tool_id] = adapter

    def get(self, tool_id: str) -> ToolAdapter:
        """Return the adapter registered for `tool_id`."""
        try:
            return self._adapters[tool_id]
        except KeyError as exc:
            raise AdapterError(f"Unknown tool: {tool_id}") from exc

    @property
    def tool_ids(self) -> list[str]:
        return list(self._adapters)

    def __iter__(self) -> Iterator[ToolAdapter]:
        return iter(list(self._adapters.values()))

    def __len__(self) -> int:
        return len(self._adapters)


def opencode_adapter(database_path: Path | None = None, batch_size: int = 1000) -> ToolAdapter:
    """Adapter reading the OpenCode SQLite message store."""
    resolved = database_path or get_default_opencode_db_path()
    parser = OpenCodeDatabaseParser(tool_id=OPENCODE_TOOL_ID, batch_size=batch_size)
    return ToolAdapter(
        tool_id=OPENCODE_TOOL_ID,
        display_name="OpenCode",
        parser=parser,
        resolve_directory=lambda: resolved.parent,
        database_filename=resolved.name,
        fingerprint=parser.fingerprint,
    )


def json_directory_adapter(tool_id: str, display_name: str, directory: Path) -> ToolAdapter:
    """Adapter reading one JSON message file per source under `directory`."""
    return ToolAdapter(
        tool_id=tool_id,
        display_name=display_name,
        parser=JsonMessageParser(tool_id=tool_id),
        resolve_directory=lambda: directory,
    )


def build_default_registry(
    opencode_db: Path | None = None,
    claude_code_dir: Path | None = None,
    cursor_dir: Path | None = None,
    database_batch_size: int = 1000,
) -> ToolAdapterRegistry:
    """Registry with the OpenCode, Claude Code and Cursor adapters."""
    return ToolAdapterRegistry(
        [
            opencode_adapter(opencode_db, batch_size=database_batch_size),
            json_directory_adapter(CLAUDE_CODE_TOOL_ID, "Claude Code", claude_code_dir or get_default_claude_code_dir()),
            json_directory_adapter(CURSOR_TOOL_ID, "Cursor", cursor_dir or get_default_cursor_dir()),
        ]
    )
