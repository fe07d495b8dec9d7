"""Defensive tool-argument parsing and implicit tool-call extraction.

Everything here is a total function: malformed input degrades to an empty
dict (parse_args) or an empty list (extractors), never an exception.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Mapping, Protocol

from tether.protocol.models import ToolCall
from tether.utils import new_id

logger = logging.getLogger(__name__)

_CONTROL_TOKEN = re.compile(r"<\|?(?:begin|end)[^>]*\|?>", re.IGNORECASE)
_XML_TAG = re.compile(r"<[^>]+>")

_INDICATOR = re.compile(r"(tool[_\s-]?call|tool[_\s-]?use|function[_\s-]?call|<\s*(?:tool|function)_call)", re.IGNORECASE)
_CODE_BLOCK = re.compile(r"```(?:json)?([\s\S]*?)```", re.IGNORECASE)
_CALL_TAG = re.compile(r"<\s*(?:tool|function)_call[^>]*>([\s\S]*?)<\s*/\s*(?:tool|function)_call\s*>", re.IGNORECASE)

_NAME_KEYS = ("name", "tool_name", "tool", "function_name", "action", "command")
_ARG_KEYS = ("arguments", "args", "input", "parameters", "params", "payload", "data", "options")
_NESTED_ARG_KEYS = ("arguments", "args", "input", "parameters", "params")
_CANDIDATE_LISTS = ("toolCalls", "tool_calls", "actions", "steps")


def parse_args(raw: Any) -> dict[str, Any]:
    """Coerce tool-call arguments into a dict.

    Order: mapping as-is; list wrapped as {"value": list}; string parsed as
    JSON after stripping model control tokens and XML-like tags; the first
    balanced {...} / [...] span parsed as JSON; otherwise {}.
    """
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, list):
        return {"value": raw}
    if not isinstance(raw, str):
        return {}

    text = raw.strip()
    if not text:
        return {}
    parsed = _try_json(text)
    if parsed is None:
        text = _XML_TAG.sub("", _CONTROL_TOKEN.sub("", text)).strip()
        parsed = _try_json(text) if text else None
    if parsed is None:
        for segment in extract_json_segments(text):
            parsed = _try_json(segment)
            if parsed is not None:
                break
    return _as_args(parsed)


def extract_json_segments(text: str) -> list[str]:
    """Return every top-level balanced {...} or [...] span, in order.

    Brackets inside JSON string literals are ignored. A mismatched closer
    resets the scan.
    """
    segments: list[str] = []
    stack: list[str] = []
    start = -1
    in_string = False
    escaped = False

    for i, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and stack:
            in_string = True
        elif char in "{[":
            if not stack:
                start = i
            stack.append("}" if char == "{" else "]")
        elif char in "}]":
            if not stack:
                continue
            if stack.pop() != char:
                stack.clear()
                start = -1
                continue
            if not stack and start != -1:
                segments.append(text[start : i + 1])
                start = -1
    return segments


def _try_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None


def _as_args(parsed: Any) -> dict[str, Any]:
    if isinstance(parsed, dict):
        return parsed
    if isinstance(parsed, list):
        return {"value": parsed}
    return {}


# ---------------------------------------------------------------------------
# Implicit tool calls
# ---------------------------------------------------------------------------


class ToolCallExtractor(Protocol):
    """Fallback stage that finds tool calls described in plain text."""

    def extract(self, text: str) -> list[ToolCall]: ...


class NullToolCallExtractor:
    """Disabled fallback: never finds anything."""

    def extract(self, text: str) -> list[ToolCall]:
        return []


class ImplicitToolCallExtractor:
    """Best-effort recovery of tool calls from model text.

    Weaker models sometimes describe a call ("tool_call: ```json {...}```")
    instead of emitting a structured one. Only text that mentions a tool
    call is scanned; snippets come from fenced code blocks and
    <tool_call>/<function_call> tags, falling back to the whole text.
    """

    def extract(self, text: str) -> list[ToolCall]:
        if not text or not isinstance(text, str):
            return []
        if not _INDICATOR.search(text):
            return []

        snippets = [m.group(1) for m in _CODE_BLOCK.finditer(text) if m.group(1)]
        snippets += [m.group(1) for m in _CALL_TAG.finditer(text) if m.group(1)]
        if not snippets:
            snippets.append(text)

        for snippet in snippets:
            calls: list[ToolCall] = []
            for obj in self._json_objects(snippet):
                calls.extend(self._normalize(obj))
            if calls:
                logger.debug("Recovered %d implicit tool call(s) from text", len(calls))
                return calls
        return []

    def _json_objects(self, snippet: str) -> list[dict[str, Any]]:
        trimmed = snippet.strip()
        if not trimmed:
            return []
        direct = _try_json(trimmed)
        values = [direct] if direct is not None else [_try_json(s) for s in extract_json_segments(trimmed)]

        objects: list[dict[str, Any]] = []
        for value in values:
            if isinstance(value, list):
                objects.extend(item for item in value if isinstance(item, dict))
            elif isinstance(value, dict):
                objects.append(value)
        return objects

    def _normalize(self, payload: dict[str, Any]) -> list[ToolCall]:
        candidates: list[Any] = []
        if self._tool_name(payload):
            candidates.append(payload)
        else:
            for key in ("tool", "function"):
                if isinstance(payload.get(key), dict):
                    candidates.append(payload[key])
            for key in _CANDIDATE_LISTS:
                if isinstance(payload.get(key), list):
                    candidates.extend(payload[key])

        calls: list[ToolCall] = []
        for candidate in candidates:
            if not isinstance(candidate, dict):
                continue
            name = self._tool_name(candidate)
            if not name:
                continue
            calls.append(ToolCall(id=new_id("implicit"), name=name, args=parse_args(self._args_source(candidate))))
        return calls

    @staticmethod
    def _tool_name(candidate: dict[str, Any]) -> str:
        names = [candidate.get(key) for key in _NAME_KEYS]
        fn = candidate.get("function")
        if isinstance(fn, dict):
            names += [fn.get("name"), fn.get("tool_name"), fn.get("action")]
        tool = candidate.get("tool")
        if isinstance(tool, dict):
            names += [tool.get("name"), tool.get("tool_name")]
        for value in names:
            if isinstance(value, str) and value.strip():
                return value.strip()
        return ""

    @staticmethod
    def _args_source(candidate: dict[str, Any]) -> Any:
        for key in _ARG_KEYS:
            if candidate.get(key) is not None:
                return candidate[key]
        for nested in ("function", "tool"):
            inner = candidate.get(nested)
            if isinstance(inner, dict):
                for key in _NESTED_ARG_KEYS:
                    if inner.get(key) is not None:
                        return inner[key]
        return None


def make_extractor(enabled: bool) -> ToolCallExtractor:
    """Pick the fallback extractor for the implicit_tool_calls setting."""
    return ImplicitToolCallExtractor() if enabled else NullToolCallExtractor()
