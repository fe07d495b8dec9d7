"""Sequence sanitizer: repair a canonical history into a protocol-valid shape.

Histories arrive with orphaned tool calls, results out of order or
duplicated, tool results parked in the wrong message and runs of same-role
messages. Providers reject all of these. sanitize() returns a derived copy
in which every tool call is immediately followed by exactly one result, in
call order, and roles alternate as the target wire style requires.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Iterable, Literal

from tether.protocol.models import (
    Content,
    ImagePart,
    Message,
    Part,
    Role,
    TextPart,
    ToolCall,
    ToolResultPart,
    ToolUsePart,
)

logger = logging.getLogger(__name__)

WireStyle = Literal["openai", "anthropic"]

PLACEHOLDER_RESULT = "Tool execution was skipped or failed"
EMPTY_USER_TEXT = "."


class SequenceSanitizer:
    """Collect, rebuild, alternate. Never mutates the input history."""

    def __init__(self, style: WireStyle = "openai"):
        if style not in ("openai", "anthropic"):
            raise ValueError(f"Unknown wire style: {style!r}")
        self.style = style

    def sanitize(self, history: Iterable[Message]) -> list[Message]:
        messages = list(history)
        results = self._collect(messages)
        rebuilt = self._rebuild(messages, results)
        return enforce_alternation(rebuilt, self.style)

    # -- pass 1 -----------------------------------------------------------

    @staticmethod
    def _collect(messages: list[Message]) -> dict[str, ToolResultPart]:
        """Map tool_call_id -> result from anywhere in the history (last wins)."""
        results: dict[str, ToolResultPart] = {}
        for msg in messages:
            for result in msg.tool_results():
                if result.tool_call_id:
                    results[result.tool_call_id] = result
        return results

    # -- pass 2 -----------------------------------------------------------

    def _rebuild(self, messages: list[Message], results: dict[str, ToolResultPart]) -> list[Message]:
        out: list[Message] = []
        emitted_ids: set[str] = set()
        placeholders = 0

        for msg in messages:
            if msg.role == Role.TOOL:
                continue

            if msg.role == Role.ASSISTANT:
                calls = [c for c in msg.all_tool_calls() if c.id not in emitted_ids]
                if not calls:
                    stripped = self._without_tool_parts(msg)
                    if stripped is not None:
                        out.append(stripped)
                    continue
                emitted_ids.update(c.id for c in calls)
                out.append(self._assistant_with_calls(msg, calls))
                paired: list[ToolResultPart] = []
                for call in calls:
                    result = results.pop(call.id, None)
                    if result is None:
                        placeholders += 1
                        result = ToolResultPart(tool_call_id=call.id, content=PLACEHOLDER_RESULT, is_error=True)
                    paired.append(result)
                out.extend(self._result_messages(calls, paired))
                continue

            if msg.role == Role.USER:
                cleaned = self._clean_user(msg)
                if cleaned is not None:
                    out.append(cleaned)
                continue

            out.append(msg)

        if placeholders:
            logger.debug("Sanitizer inserted %d placeholder tool result(s)", placeholders)
        if results:
            logger.debug("Sanitizer dropped %d orphaned tool result(s)", len(results))
        return out

    def _assistant_with_calls(self, msg: Message, calls: list[ToolCall]) -> Message:
        if self.style == "anthropic":
            kept = [p for p in msg.parts if not isinstance(p, ToolUsePart)]
            uses: list[Part] = [ToolUsePart(id=c.id, name=c.name, input=dict(c.args)) for c in calls]
            return replace(msg, content=kept + uses, tool_calls=[])
        return replace(msg, content=msg.text, tool_calls=list(calls))

    def _result_messages(self, calls: list[ToolCall], results: list[ToolResultPart]) -> list[Message]:
        if self.style == "anthropic":
            return [Message(role=Role.USER, content=list(results))]
        return [
            Message.tool_result(r.tool_call_id, r.content, name=c.name, is_error=r.is_error)
            for c, r in zip(calls, results)
        ]

    @staticmethod
    def _without_tool_parts(msg: Message) -> Message | None:
        """Assistant whose calls were all emitted earlier: keep its text, drop every call."""
        if isinstance(msg.content, str):
            return replace(msg, tool_calls=[]) if msg.content else None
        kept = [p for p in msg.content if not isinstance(p, (ToolUsePart, ToolResultPart))]
        if not kept:
            return None
        return replace(msg, content=kept, tool_calls=[])

    @staticmethod
    def _clean_user(msg: Message) -> Message | None:
        if isinstance(msg.content, str):
            return msg if msg.content else replace(msg, content=EMPTY_USER_TEXT)
        kept = [p for p in msg.content if not isinstance(p, (ToolResultPart, ToolUsePart))]
        if not kept:
            return None
        if len(kept) == len(msg.content):
            return msg
        return replace(msg, content=kept)


def strip_tool_interactions(history: Iterable[Message], style: WireStyle = "openai") -> list[Message]:
    """Aggressive repair: drop every tool call and tool result.

    Only text and image content survives; messages left empty are dropped
    and alternation is re-applied. This is lossy: tool outputs are gone.
    """
    out: list[Message] = []
    for msg in history:
        if msg.role == Role.TOOL:
            continue
        if isinstance(msg.content, str):
            content: Content = msg.content
        else:
            content = [p for p in msg.content if isinstance(p, (TextPart, ImagePart))]
        if not content:
            continue
        out.append(replace(msg, content=content, tool_calls=[]))
    return enforce_alternation(out, style)


def enforce_alternation(messages: list[Message], style: WireStyle = "anthropic") -> list[Message]:
    """Merge runs of same-role messages.

    Anthropic style merges across every non-system role and compares each
    message with the previous non-system one. OpenAI style only merges
    user/user and assistant/assistant neighbours; tool and system messages
    are passed through and break a run.
    """
    out: list[Message] = []
    last_index = -1  # index in out of the message adjacency is judged against

    for msg in messages:
        if msg.role == Role.SYSTEM:
            out.append(msg)
            if style == "openai":
                last_index = -1
            continue
        if style == "openai" and msg.role == Role.TOOL:
            out.append(msg)
            last_index = -1
            continue

        prev = out[last_index] if last_index >= 0 else None
        if prev is not None and prev.role == msg.role:
            if _is_duplicate_assistant(prev, msg):
                continue
            out[last_index] = merge_messages(prev, msg)
            continue

        out.append(msg)
        last_index = len(out) - 1
    return out


def merge_messages(first: Message, second: Message) -> Message:
    """Merge two same-role messages into one, keeping the first's identity."""
    thinking = "\n\n".join(t for t in (first.thinking, second.thinking) if t) or None
    usage = second.usage or first.usage
    return replace(
        first,
        content=merge_content(first.content, second.content),
        tool_calls=[*first.tool_calls, *second.tool_calls],
        thinking=thinking,
        usage=usage,
    )


def merge_content(first: Content, second: Content) -> Content:
    if isinstance(first, str) and isinstance(second, str):
        if not first:
            return second
        if not second:
            return first
        return f"{first}\n{second}"
    return [*_as_parts(first), *_as_parts(second)]


def _as_parts(content: Content) -> list[Part]:
    if isinstance(content, str):
        return [TextPart(content)] if content else []
    return list(content)


def _is_duplicate_assistant(prev: Message, msg: Message) -> bool:
    return (
        msg.role == Role.ASSISTANT
        and not prev.all_tool_calls()
        and not msg.all_tool_calls()
        and prev.content == msg.content
    )


def check_pairing(messages: list[Message]) -> list[str]:
    """Describe pairing violations in a sanitized history (empty when valid).

    Every tool call must be followed immediately by its results, in order,
    and no result may reference an unknown call.
    """
    problems: list[str] = []
    i = 0
    while i < len(messages):
        msg = messages[i]
        calls = msg.all_tool_calls()
        if calls:
            expected = [c.id for c in calls]
            got: list[str] = []
            j = i + 1
            while j < len(messages) and len(got) < len(expected):
                following = messages[j]
                if following.role == Role.TOOL or (
                    following.role == Role.USER and following.tool_results()
                ):
                    got.extend(r.tool_call_id for r in following.tool_results())
                    j += 1
                    continue
                break
            if got[: len(expected)] != expected:
                problems.append(f"message {i}: expected results {expected}, got {got}")
            i = j
            continue
        if msg.tool_results():
            problems.append(f"message {i}: tool result without a preceding call")
        i += 1
    return problems
