"""Best-effort parsing of agent CLI output lines into events."""

import json
import math
import re
from dataclasses import dataclass
from typing import Any

from patchpilot.agents.protocol import (
    ErrorEvent,
    FileEditEvent,
    StreamName,
    TokenEvent,
    ToolUseEvent,
)

_INPUT_RE = re.compile(r"(?:input|prompt)\s*tokens?\s*[:=]\s*(\d+)", re.IGNORECASE)
_OUTPUT_RE = re.compile(r"(?:output|completion)\s*tokens?\s*[:=]\s*(\d+)", re.IGNORECASE)
_TOTAL_RE = re.compile(r"(?:total|cumulative|used)\s*tokens?\s*[:=]\s*(\d+)", re.IGNORECASE)
_FILE_ACTION_RE = re.compile(r"\b(created|modified|deleted)\s+(?:file\s+)?([^\s\"'`]+)", re.IGNORECASE)
_STDERR_ERROR_RE = re.compile(r"error|failed|exception", re.IGNORECASE)

_LINE_ACTIONS = {"created": "create", "modified": "modify", "deleted": "delete"}
_TOOL_ACTIONS = {
    "create_file": "create",
    "delete_file": "delete",
    "write_file": "modify",
    "edit_file": "modify",
    "replace_file": "modify",
}

_INPUT_KEYS = ("inputTokens", "input_tokens", "promptTokens", "prompt_tokens")
_OUTPUT_KEYS = ("outputTokens", "output_tokens", "completionTokens", "completion_tokens")
_TOTAL_KEYS = ("cumulativeTokens", "cumulative_tokens", "totalTokens", "total_tokens")


@dataclass
class TokenState:
    """Running token totals for one execution."""

    input_tokens: int = 0
    output_tokens: int = 0
    cumulative_tokens: int = 0

    @property
    def total(self) -> int:
        return max(self.cumulative_tokens, self.input_tokens + self.output_tokens)


def parse_json_payload(line: str) -> dict[str, Any] | None:
    """Parse a JSON object from a line, or from the braces embedded in it."""
    trimmed = line.strip()
    if not trimmed:
        return None

    candidates = [trimmed]
    start, end = trimmed.find("{"), trimmed.rfind("}")
    if 0 <= start < end:
        fragment = trimmed[start : end + 1]
        if fragment != trimmed:
            candidates.append(fragment)

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _read_number(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return max(0, math.floor(value))


def _read_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _first(sources: list[dict[str, Any]], keys: tuple[str, ...]) -> int | None:
    for source in sources:
        for key in keys:
            if source.get(key) is not None:
                return _read_number(source[key])
    return None


def parse_token_event(line: str, state: TokenState) -> TokenEvent | None:
    """Update ``state`` from a usage report and return the new totals."""
    payload = parse_json_payload(line)
    if payload is not None:
        sources = [payload]
        if isinstance(payload.get("usage"), dict):
            sources.append(payload["usage"])
        input_tokens = _first(sources, _INPUT_KEYS)
        output_tokens = _first(sources, _OUTPUT_KEYS)
        cumulative = _first(sources, _TOTAL_KEYS)
    else:
        matches = [r.search(line) for r in (_INPUT_RE, _OUTPUT_RE, _TOTAL_RE)]
        input_tokens, output_tokens, cumulative = (int(m.group(1)) if m else None for m in matches)

    if input_tokens is None and output_tokens is None and cumulative is None:
        return None

    if input_tokens is not None:
        state.input_tokens = input_tokens
    if output_tokens is not None:
        state.output_tokens = output_tokens
    reported = cumulative if cumulative is not None else state.input_tokens + state.output_tokens
    state.cumulative_tokens = max(state.cumulative_tokens, reported)

    return TokenEvent(state.input_tokens, state.output_tokens, state.cumulative_tokens)


def _tool_name(payload: dict[str, Any]) -> str | None:
    return _read_string(payload.get("tool") or payload.get("tool_name") or payload.get("name"))


def parse_file_edit_event(line: str) -> FileEditEvent | None:
    payload = parse_json_payload(line)
    if payload is None:
        match = _FILE_ACTION_RE.search(line)
        if not match:
            return None
        return FileEditEvent(path=match.group(2).strip(), action=_LINE_ACTIONS[match.group(1).lower()])

    if payload.get("type") == "file_edit":
        path = _read_string(payload.get("path"))
        action = payload.get("action")
        if path and action in ("create", "modify", "delete"):
            return FileEditEvent(path=path, action=action)

    tool = _tool_name(payload)
    tool_input = payload.get("input")
    if not tool or tool not in _TOOL_ACTIONS or not isinstance(tool_input, dict):
        return None
    path = _read_string(
        tool_input.get("path") or tool_input.get("file_path") or tool_input.get("filePath")
    )
    if not path:
        return None
    return FileEditEvent(path=path, action=_TOOL_ACTIONS[tool])


def parse_tool_use_event(line: str) -> ToolUseEvent | None:
    payload = parse_json_payload(line)
    if payload is None:
        return None
    tool = _tool_name(payload)
    if not tool:
        return None
    return ToolUseEvent(tool=tool, input=payload.get("input"))


def parse_error_event(line: str, stream: StreamName, default_message: str = "Unknown agent error") -> ErrorEvent | None:
    payload = parse_json_payload(line)
    if payload is not None and payload.get("type") == "error":
        return ErrorEvent(
            message=_read_string(payload.get("message")) or default_message,
            recoverable=payload.get("recoverable") is not False,
        )
    if stream == "stderr" and _STDERR_ERROR_RE.search(line):
        return ErrorEvent(message=line.strip(), recoverable=True)
    return None
