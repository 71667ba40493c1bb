"""Shared path utilities for token-usage-rollup."""

from __future__ import annotations

import os
from pathlib import Path

APP_DIRECTORY_NAME = "token-usage-rollup"


def get_data_home() -> Path:
    """Return the XDG data home directory."""
    xdg_data_home = os.environ.get("XDG_DATA_HOME")
    if xdg_data_home:
        return Path(xdg_data_home).expanduser()
    return Path("~/.local/share").expanduser()


def get_default_database_path() -> Path:
    """Return the default DuckDB path following XDG data directory conventions."""
    return get_data_home() / APP_DIRECTORY_NAME / "usage.duckdb"


def get_default_opencode_db_path() -> Path:
    """Return the default OpenCode SQLite path following XDG data directory conventions."""
    return get_data_home() / "opencode" / "opencode.db"


def get_default_claude_code_dir() -> Path:
    """Return the default directory holding Claude Code message exports."""
    return Path("~/.claude_code").expanduser()


def get_default_cursor_dir() -> Path:
    """Return the default directory holding Cursor message exports."""
    return get_data_home() / "cursor" / "messages"
