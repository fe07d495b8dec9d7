"""Streaming delta aggregation for OpenAI and Anthropic SSE responses.

An aggregator owns the buffers for exactly one HTTP response. Lines go in,
typed stream events come out, and finalize() hands back one complete
assistant Message. Text deltas carry the cumulative text so consumers can
render idempotently; reasoning is surfaced once, at completion.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Union

from tether.protocol.args import NullToolCallExtractor, ToolCallExtractor, parse_args
from tether.protocol.models import Message, ToolCall, Usage
from tether.utils import dedupe_thinking, extract_thinking, new_id

logger = logging.getLogger(__name__)

DONE = "[DONE]"


class StreamError(RuntimeError):
    """Provider reported an error inside an otherwise successful stream."""


@dataclass
class StreamStarted:
    pass


@dataclass
class TextDelta:
    text: str  # cumulative
    delta: str = ""  # this fragment only


@dataclass
class ReasoningDelta:
    text: str


@dataclass
class StreamDone:
    message: Message
    stop_reason: str | None = None


StreamEvent = Union[StreamStarted, TextDelta, ReasoningDelta, StreamDone]


@dataclass
class PartialToolCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


def parse_sse_line(line: str) -> dict[str, Any] | str | None:
    """Decode one SSE line.

    Returns the JSON payload of a data: line, DONE for the terminator, or
    None for comments, event: lines, blanks and malformed JSON.
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if not data:
        return None
    if data == DONE:
        return DONE
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed SSE frame: %s", data[:200])
        return None
    return payload if isinstance(payload, dict) else None


class StreamAggregator(ABC):
    """Base class: feed lines (or decoded payloads), then finalize()."""

    def __init__(self, extractor: ToolCallExtractor | None = None):
        self._extractor = extractor or NullToolCallExtractor()
        self._text = ""
        self._reasoning = ""
        self.usage: Usage | None = None
        self.stop_reason: str | None = None
        self.done = False

    @property
    def text(self) -> str:
        return self._text

    @property
    def reasoning(self) -> str:
        return self._reasoning

    def feed_line(self, line: str) -> list[StreamEvent]:
        payload = parse_sse_line(line)
        if payload is None:
            return []
        if payload == DONE:
            self.done = True
            return []
        try:
            return self.feed(payload)
        except StreamError:
            raise
        except (TypeError, ValueError, AttributeError, KeyError):
            logger.warning("Skipping unexpected stream frame: %s", str(payload)[:200])
            return []

    @abstractmethod
    def feed(self, payload: dict[str, Any]) -> list[StreamEvent]:
        """Apply one decoded frame, returning the events it produced."""

    @abstractmethod
    def tool_calls(self) -> list[ToolCall]:
        """Tool calls accumulated so far, in provider order."""

    def _append_text(self, fragment: str) -> list[StreamEvent]:
        if not fragment:
            return []
        self._text += fragment
        return [TextDelta(text=self._text, delta=fragment)]

    def finalize(self) -> Message:
        """Build the complete assistant message from the buffers."""
        content, thinking = extract_thinking(self._text, dedupe_thinking(self._reasoning) or None)
        calls = self.tool_calls()
        if not calls and content:
            calls = self._extractor.extract(content)
        return Message.assistant(content=content, tool_calls=calls, thinking=thinking, usage=self.usage)

    def finish(self) -> list[StreamEvent]:
        """Final events: one ReasoningDelta (if any) then StreamDone."""
        message = self.finalize()
        events: list[StreamEvent] = []
        if message.thinking:
            events.append(ReasoningDelta(text=message.thinking))
        events.append(StreamDone(message=message, stop_reason=self.stop_reason))
        return events

    async def consume(self, lines: AsyncIterator[str]) -> AsyncIterator[StreamEvent]:
        """Drive the aggregator over an async line source."""
        yield StreamStarted()
        async for line in lines:
            for event in self.feed_line(line):
                yield event
            if self.done:
                break
        for event in self.finish():
            yield event


class OpenAIStreamAggregator(StreamAggregator):
    """Chat-completions SSE: choices[0].delta.{content, reasoning_content, tool_calls}."""

    def __init__(self, extractor: ToolCallExtractor | None = None):
        super().__init__(extractor)
        self._calls: dict[int, PartialToolCall] = {}

    def feed(self, payload: dict[str, Any]) -> list[StreamEvent]:
        if isinstance(payload.get("error"), dict):
            error = payload["error"]
            raise StreamError(f"{error.get('type', 'error')}: {error.get('message', '')}")

        usage = Usage.normalize(payload.get("usage"))
        if usage is not None:
            self.usage = usage

        choices = payload.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return []
        choice = choices[0]
        if choice.get("finish_reason"):
            self.stop_reason = choice["finish_reason"]
        delta = choice.get("delta") or {}

        events: list[StreamEvent] = []
        content = delta.get("content")
        if isinstance(content, str):
            events += self._append_text(content)
        elif isinstance(content, list):
            fragment = "".join(p.get("text", "") for p in content if isinstance(p, dict) and isinstance(p.get("text"), str))
            events += self._append_text(fragment)

        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if isinstance(reasoning, str):
            self._reasoning += reasoning

        for fragment in delta.get("tool_calls") or []:
            if isinstance(fragment, dict):
                self._merge_tool_call(fragment)
        return events

    def _merge_tool_call(self, fragment: dict[str, Any]) -> None:
        index = fragment.get("index")
        if not isinstance(index, int) or isinstance(index, bool):
            index = len(self._calls)
        entry = self._calls.setdefault(index, PartialToolCall())
        if fragment.get("id"):
            entry.id = str(fragment["id"])
        fn = fragment.get("function") or {}
        if fn.get("name"):
            entry.name = str(fn["name"])
        arguments = fn.get("arguments")
        if isinstance(arguments, str):
            entry.arguments += arguments
        elif isinstance(arguments, dict):
            entry.arguments += json.dumps(arguments)

    def tool_calls(self) -> list[ToolCall]:
        calls = []
        for index in sorted(self._calls):
            partial = self._calls[index]
            if not partial.name:
                logger.debug("Dropping streamed tool call %d without a name", index)
                continue
            calls.append(
                ToolCall(id=partial.id or new_id("call"), name=partial.name, args=parse_args(partial.arguments))
            )
        return calls


@dataclass
class _AnthropicBlock:
    type: str
    text: str = ""
    tool: PartialToolCall = field(default_factory=PartialToolCall)


class AnthropicStreamAggregator(StreamAggregator):
    """Messages-API SSE: content_block_* events keyed by block index.

    ping frames are skipped; stop_reason arrives in message_delta, usage in
    message_start and message_delta; an in-stream error event raises
    StreamError.
    """

    def __init__(self, extractor: ToolCallExtractor | None = None):
        super().__init__(extractor)
        self._blocks: dict[int, _AnthropicBlock] = {}
        self._input_tokens = 0
        self._output_tokens = 0

    def feed(self, payload: dict[str, Any]) -> list[StreamEvent]:
        event_type = payload.get("type")

        if event_type == "ping":
            return []

        if event_type == "error":
            error = payload.get("error") or {}
            raise StreamError(f"{error.get('type', 'unknown')}: {error.get('message', '')}")

        if event_type == "message_start":
            self._record_usage((payload.get("message") or {}).get("usage"))
            return []

        if event_type == "content_block_start":
            block = payload.get("content_block") or {}
            entry = _AnthropicBlock(type=block.get("type", "text"))
            if entry.type == "tool_use":
                entry.tool = PartialToolCall(id=block.get("id", ""), name=block.get("name", ""))
            self._blocks[payload.get("index", len(self._blocks))] = entry
            if entry.type == "text" and block.get("text"):
                entry.text = block["text"]
                return self._append_text(block["text"])
            return []

        if event_type == "content_block_delta":
            delta = payload.get("delta") or {}
            index = payload.get("index", 0)
            entry = self._blocks.setdefault(index, _AnthropicBlock(type="text"))
            kind = delta.get("type")
            if kind == "text_delta":
                fragment = delta.get("text", "")
                entry.text += fragment
                return self._append_text(fragment)
            if kind == "thinking_delta":
                self._reasoning += delta.get("thinking", "")
            elif kind == "input_json_delta":
                entry.tool.arguments += delta.get("partial_json", "")
            return []

        if event_type == "message_delta":
            stop_reason = (payload.get("delta") or {}).get("stop_reason")
            if stop_reason:
                self.stop_reason = stop_reason
            self._record_usage(payload.get("usage"))
            return []

        if event_type == "message_stop":
            self.done = True
        return []

    def _record_usage(self, raw: Any) -> None:
        if not isinstance(raw, dict):
            return
        self._input_tokens = int(raw.get("input_tokens") or self._input_tokens)
        self._output_tokens = int(raw.get("output_tokens") or self._output_tokens)
        self.usage = Usage(
            input_tokens=self._input_tokens,
            output_tokens=self._output_tokens,
            total_tokens=self._input_tokens + self._output_tokens,
        )

    def tool_calls(self) -> list[ToolCall]:
        calls = []
        for index in sorted(self._blocks):
            block = self._blocks[index]
            if block.type != "tool_use" or not block.tool.name:
                continue
            calls.append(
                ToolCall(id=block.tool.id or new_id("toolu"), name=block.tool.name, args=parse_args(block.tool.arguments))
            )
        return calls

    def finalize(self) -> Message:
        """Text emitted before the first tool_use block counts as reasoning."""
        message = super().finalize()
        tool_indices = [i for i, b in self._blocks.items() if b.type == "tool_use" and b.tool.name]
        if not tool_indices:
            return message
        first_tool = min(tool_indices)
        leading = "".join(b.text for i, b in sorted(self._blocks.items()) if b.type == "text" and i < first_tool).strip()
        trailing = "".join(b.text for i, b in sorted(self._blocks.items()) if b.type == "text" and i > first_tool).strip()
        if not leading:
            return message
        thinking = "\n\n".join(t for t in (message.thinking, leading) if t)
        return Message.assistant(content=trailing, tool_calls=message.tool_calls, thinking=thinking, usage=message.usage)
