"""Parsers turning tool message payloads into canonical usage events."""

from __future__ import annotations

import logging
import math
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

import orjson

from ..aggregation.buckets import datetime_to_ms
from .errors import ParseError, SourceUnreadableError
from .schemas import CodeDiffSummary, ParseResult, UsageEvent

LOGGER = logging.getLogger(__name__)

# Epoch values at or above this are milliseconds, below are seconds.
EPOCH_MS_THRESHOLD = 1_000_000_000_000
# Accepted creation times; the upper bound keeps the following monthly bucket representable.
MIN_TIMESTAMP_MS = datetime_to_ms(datetime(1, 1, 1, tzinfo=UTC))
MAX_TIMESTAMP_MS = datetime_to_ms(datetime(9999, 12, 1, tzinfo=UTC))


class Parser(Protocol):
    """Turns one source into canonical events."""

    def parse(self, path: Path, watermark: str | None = None) -> ParseResult: ...


class JsonMessageParser:
    """Parse one JSON message object, or an array of them, per file."""

    def __init__(self, tool_id: str) -> None:
        self._tool_id = tool_id

    def parse(self, path: Path, watermark: str | None = None) -> ParseResult:
        """Parse every message in `path`; files holding no message yield no events."""
        try:
            raw = path.read_bytes()
        except OSError as exc:
            raise SourceUnreadableError(f"Failed to read {path}: {exc}") from exc

        try:
            payload = orjson.loads(raw)
        except orjson.JSONDecodeError as exc:
            raise ParseError(f"Invalid JSON in {path}: {exc}") from exc

        if isinstance(payload, dict):
            items: list[Any] = [payload] if _looks_like_message(payload) else []
        elif isinstance(payload, list):
            items = payload
        else:
            raise ParseError(f"Expected object or array payload in {path}")

        events: list[UsageEvent] = []
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                raise ParseError(f"Expected object at index {index} in {path}")
            events.append(parse_message_payload(item, tool_id=self._tool_id, source=str(path)))
        if not events:
            LOGGER.info("No messages found in %s", path)
        return ParseResult.from_events(events)


def parse_message_payload(payload: dict[str, Any], tool_id: str, source: str) -> UsageEvent:
    """Convert one message object into a canonical event."""
    message_id = _require_str(payload, ("id", "messageID", "message_id"), source)
    session_id = _require_str(payload, ("sessionID", "session_id", "sessionId"), message_id)
    role = _require_str(payload, ("role",), message_id)

    time_payload = _optional_dict(payload, "time", message_id) or {}
    created_at_ms = _parse_timestamp(
        _first_present(time_payload, ("created",), payload, ("created_at", "createdAt")),
        message_id,
        "time.created",
    )
    if created_at_ms is None:
        raise ParseError(f"Missing time.created in message {message_id}")
    completed_at_ms = _parse_timestamp(
        _first_present(time_payload, ("completed",), payload, ("completed_at", "completedAt")),
        message_id,
        "time.completed",
    )

    model_payload = _model_payload(payload.get("model"), message_id)
    path_payload = _optional_dict(payload, "path", message_id) or {}
    tokens_payload = _optional_dict(payload, "tokens", message_id) or {}
    cache_payload = _optional_dict(tokens_payload, "cache", message_id) or {}

    return UsageEvent(
        event_id=message_id,
        session_id=session_id,
        role=role,
        created_at_ms=created_at_ms,
        completed_at_ms=completed_at_ms,
        tool_id=tool_id,
        provider_id=_label(payload, ("providerID", "provider_id"), model_payload, ("providerID",), message_id),
        model_id=_label(payload, ("modelID", "model_id"), model_payload, ("modelID", "id"), message_id),
        agent=_optional_str(payload, ("agent",), message_id),
        mode=_optional_str(payload, ("mode",), message_id),
        variant=_optional_str(payload, ("variant",), message_id),
        project_root=_optional_str(path_payload, ("root",), message_id)
        or _optional_str(payload, ("root", "project_root"), message_id),
        project_cwd=_optional_str(path_payload, ("cwd",), message_id) or _optional_str(payload, ("cwd",), message_id),
        input_tokens=_optional_int(tokens_payload, "input", message_id),
        output_tokens=_optional_int(tokens_payload, "output", message_id),
        reasoning_tokens=_optional_int(tokens_payload, "reasoning", message_id),
        cache_read_tokens=_optional_int(cache_payload, "read", message_id) or 0,
        cache_write_tokens=_optional_int(cache_payload, "write", message_id) or 0,
        cost_usd=_optional_float(payload, "cost", message_id) or 0.0,
        summary=_parse_summary(payload.get("summary"), message_id),
        finish_reason=_optional_str(payload, ("finish", "finish_reason"), message_id),
    )


def _model_payload(value: Any, message_id: str) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return {"modelID": value}
    if not isinstance(value, dict):
        raise ParseError(f"Invalid model in message {message_id}: expected object or string")
    return value


def _looks_like_message(payload: dict[str, Any]) -> bool:
    return "role" in payload


def _parse_summary(value: Any, message_id: str) -> CodeDiffSummary | None:
    if value is None or isinstance(value, bool):
        return None
    if not isinstance(value, dict):
        raise ParseError(f"Invalid summary in message {message_id}: expected object")

    title = _optional_str(value, ("title",), message_id)
    diffs = value.get("diffs")
    if diffs is None:
        return CodeDiffSummary(
            title=title,
            additions=_optional_int(value, "totalAdditions", message_id) or 0,
            deletions=_optional_int(value, "totalDeletions", message_id) or 0,
            file_count=_optional_int(value, "fileCount", message_id) or 0,
        )
    if not isinstance(diffs, list):
        raise ParseError(f"Invalid summary.diffs in message {message_id}: expected array")

    additions = 0
    deletions = 0
    files: list[str] = []
    for diff in diffs:
        if not isinstance(diff, dict):
            raise ParseError(f"Invalid summary.diffs entry in message {message_id}: expected object")
        additions += _optional_int(diff, "additions", message_id) or 0
        deletions += _optional_int(diff, "deletions", message_id) or 0
        file_path = _optional_str(diff, ("file",), message_id)
        if file_path:
            files.append(file_path)
    return CodeDiffSummary(
        title=title,
        additions=additions,
        deletions=deletions,
        file_count=len(diffs),
        files=tuple(dict.fromkeys(files)),
    )


def _parse_timestamp(value: Any, message_id: str, field_name: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ParseError(f"Invalid {field_name} in message {message_id}: expected timestamp")
    if isinstance(value, int | float):
        timestamp_ms = _epoch_to_ms(value, message_id, field_name)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        timestamp_ms = _text_to_ms(text, message_id, field_name)
    else:
        raise ParseError(f"Invalid {field_name} in message {message_id}: expected timestamp")

    if not MIN_TIMESTAMP_MS <= timestamp_ms < MAX_TIMESTAMP_MS:
        raise ParseError(f"Invalid {field_name} in message {message_id}: {value!r} is out of range")
    return timestamp_ms


def _text_to_ms(text: str, message_id: str, field_name: str) -> int:
    try:
        number = float(text)
    except ValueError:
        pass
    else:
        return _epoch_to_ms(number, message_id, field_name)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ParseError(f"Invalid {field_name} in message {message_id}: {text!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    try:
        return datetime_to_ms(parsed)
    except OverflowError as exc:
        raise ParseError(f"Invalid {field_name} in message {message_id}: {text!r} is out of range") from exc


def _epoch_to_ms(value: float, message_id: str, field_name: str) -> int:
    if not math.isfinite(value):
        raise ParseError(f"Invalid {field_name} in message {message_id}: {value!r} is not finite")
    if abs(value) >= EPOCH_MS_THRESHOLD:
        return int(value)
    return int(round(value * 1000))


def _first_present(
    primary: dict[str, Any],
    primary_fields: tuple[str, ...],
    fallback: dict[str, Any],
    fallback_fields: tuple[str, ...],
) -> Any:
    for field_name in primary_fields:
        if primary.get(field_name) is not None:
            return primary[field_name]
    for field_name in fallback_fields:
        if fallback.get(field_name) is not None:
            return fallback[field_name]
    return None


def _label(
    payload: dict[str, Any],
    fields: tuple[str, ...],
    nested: dict[str, Any],
    nested_fields: tuple[str, ...],
    message_id: str,
) -> str | None:
    return _optional_str(payload, fields, message_id) or _optional_str(nested, nested_fields, message_id)


def _require_str(payload: dict[str, Any], fields: tuple[str, ...], context: str) -> str:
    value = _optional_str(payload, fields, context)
    if value is None:
        raise ParseError(f"Missing {fields[0]} in message {context}")
    return value


def _optional_str(payload: dict[str, Any], fields: tuple[str, ...], message_id: str) -> str | None:
    for field_name in fields:
        value = payload.get(field_name)
        if value is None:
            continue
        if not isinstance(value, str):
            raise ParseError(f"Invalid {field_name} in message {message_id}: expected string or null")
        stripped = value.strip()
        if stripped:
            return stripped
    return None


def _optional_dict(payload: dict[str, Any], field_name: str, message_id: str) -> dict[str, Any] | None:
    value = payload.get(field_name)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ParseError(f"Invalid {field_name} in message {message_id}: expected object")
    return value


def _optional_int(payload: dict[str, Any], field_name: str, message_id: str) -> int | None:
    value = payload.get(field_name)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ParseError(f"Invalid {field_name} in message {message_id}: expected int")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError as exc:
            raise ParseError(f"Invalid {field_name} in message {message_id}: expected int") from exc
    raise ParseError(f"Invalid {field_name} in message {message_id}: expected int")


def _optional_float(payload: dict[str, Any], field_name: str, message_id: str) -> float | None:
    value = payload.get(field_name)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ParseError(f"Invalid {field_name} in message {message_id}: expected number")
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError as exc:
            raise ParseError(f"Invalid {field_name} in message {message_id}: expected number") from exc
    raise ParseError(f"Invalid {field_name} in message {message_id}: expected number")
