"""Anthropic Messages API adapter.

The system prompt travels in a top-level field, the messages array only
holds user/assistant turns, tool calls are tool_use blocks in the assistant
turn and their results are tool_result blocks in the following user turn.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from tether.engine.retry import RepairLevel
from tether.protocol.adapter import ParsedResponse, WireAdapter, WireRequest, join_url
from tether.protocol.args import parse_args
from tether.protocol.models import (
    ImagePart,
    Message,
    Part,
    Role,
    TextPart,
    ToolCall,
    ToolResultPart,
    ToolUsePart,
    Usage,
)
from tether.protocol.sanitizer import EMPTY_USER_TEXT
from tether.protocol.streaming import AnthropicStreamAggregator
from tether.utils import extract_thinking, new_id

logger = logging.getLogger(__name__)

API_VERSION = "2023-06-01"


class AnthropicAdapter(WireAdapter):
    style = "anthropic"
    url_path = "/v1/messages"
    default_base_url = "https://api.anthropic.com"

    def endpoint(self, base_url: str | None = None) -> str:
        base = (base_url or self.default_base_url).rstrip("/")
        if base.endswith("/v1/messages") or base.endswith("/messages"):
            return base
        if base.endswith("/v1"):
            return join_url(base, "/messages")
        return join_url(base, self.url_path)

    def headers(self, api_key: str = "", auth_token: str = "") -> dict[str, str]:
        headers = {"content-type": "application/json", "anthropic-version": API_VERSION}
        # Explicit auth token always uses Bearer
        if auth_token:
            headers["authorization"] = f"Bearer {auth_token}"
        elif api_key:
            headers["x-api-key"] = api_key
        return headers

    def convert_tools(self, tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [
            {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "input_schema": tool.get("input_schema") or {"type": "object", "properties": {}},
            }
            for tool in tools
        ]

    def build_request(
        self,
        history: Iterable[Message],
        tools: list[dict[str, Any]] | None,
        system_prompt: str | None,
        *,
        model: str,
        temperature: float | None = None,
        max_tokens: int = 1024,
        stream: bool = False,
        level: RepairLevel = RepairLevel.SANITIZE,
    ) -> WireRequest:
        system_chunks = [system_prompt] if system_prompt else []
        messages: list[dict[str, Any]] = []
        for msg in self.prepare(history, level):
            if msg.role == Role.SYSTEM:
                if msg.text:
                    system_chunks.append(msg.text)
                continue
            messages.append(self.encode_message(msg))

        # The Messages API requires the first turn to come from the user
        if messages and messages[0]["role"] == "assistant":
            messages.insert(0, {"role": "user", "content": EMPTY_USER_TEXT})

        payload: dict[str, Any] = {"model": model, "max_tokens": max_tokens, "messages": messages}
        if system_chunks:
            payload["system"] = "\n\n".join(system_chunks)
        if tools:
            payload["tools"] = self.convert_tools(tools)
        if temperature is not None:
            payload["temperature"] = temperature
        if stream:
            payload["stream"] = True
        return WireRequest(url_path=self.url_path, payload=payload)

    def encode_message(self, msg: Message) -> dict[str, Any]:
        if msg.role == Role.ASSISTANT:
            return {"role": "assistant", "content": self._encode_assistant(msg)}
        if msg.role == Role.TOOL:
            results = msg.tool_results()
            return {"role": "user", "content": [self._encode_part(r) for r in results]}
        if isinstance(msg.content, str):
            return {"role": "user", "content": msg.content or EMPTY_USER_TEXT}
        blocks = [b for b in (self._encode_part(p) for p in msg.content) if b is not None]
        return {"role": "user", "content": blocks or EMPTY_USER_TEXT}

    def _encode_assistant(self, msg: Message) -> str | list[dict[str, Any]]:
        calls = msg.all_tool_calls()
        if not calls:
            if isinstance(msg.content, str):
                return msg.content
            return [b for b in (self._encode_part(p) for p in msg.content if not isinstance(p, ToolUsePart)) if b]

        blocks: list[dict[str, Any]] = []
        if not msg.text and msg.thinking:
            blocks.append({"type": "text", "text": msg.thinking})
        for part in msg.parts:
            if isinstance(part, ToolUsePart):
                continue
            block = self._encode_part(part)
            if block is not None:
                blocks.append(block)
        blocks.extend({"type": "tool_use", "id": c.id, "name": c.name, "input": c.args} for c in calls)
        return blocks

    def _encode_part(self, part: Part) -> dict[str, Any] | None:
        if isinstance(part, TextPart):
            return {"type": "text", "text": part.text} if part.text else None
        if isinstance(part, ImagePart):
            if part.data:
                return {
                    "type": "image",
                    "source": {"type": "base64", "media_type": part.media_type, "data": part.data},
                }
            return {"type": "image", "source": {"type": "url", "url": part.url or ""}}
        if isinstance(part, ToolUsePart):
            return {"type": "tool_use", "id": part.id, "name": part.name, "input": part.input}
        if isinstance(part, ToolResultPart):
            block: dict[str, Any] = {"type": "tool_result", "tool_use_id": part.tool_call_id}
            if isinstance(part.content, str):
                block["content"] = part.content
            else:
                block["content"] = [b for b in (self._encode_part(p) for p in part.content) if b is not None]
            if part.is_error:
                block["is_error"] = True
            return block
        raise TypeError(f"Unsupported content part: {type(part).__name__}")

    def parse_response(self, data: Any) -> ParsedResponse:
        """Text before the first tool_use block is surfaced as thinking."""
        if not isinstance(data, Mapping):
            logger.warning("Unexpected response body type: %s", type(data).__name__)
            data = {}

        leading: list[str] = []
        trailing: list[str] = []
        thinking_blocks: list[str] = []
        calls: list[ToolCall] = []
        for block in data.get("content") or []:
            if not isinstance(block, Mapping):
                continue
            kind = block.get("type")
            if kind == "text":
                (trailing if calls else leading).append(block.get("text", ""))
            elif kind == "thinking":
                thinking_blocks.append(block.get("thinking", ""))
            elif kind == "tool_use":
                calls.append(
                    ToolCall(
                        id=str(block.get("id") or new_id("toolu")),
                        name=str(block.get("name", "")),
                        args=parse_args(block.get("input")),
                    )
                )

        reasoning = "\n\n".join(t for t in thinking_blocks if t) or None
        if calls:
            pre = "\n".join(t for t in leading if t).strip()
            reasoning = "\n\n".join(t for t in (reasoning, pre) if t) or None
            text = "\n".join(t for t in trailing if t)
        else:
            text = "\n".join(t for t in leading if t)
        text, thinking = extract_thinking(text, reasoning)

        if not calls and text:
            calls = self.extractor.extract(text)

        usage = Usage.normalize(data.get("usage"))
        message = Message.assistant(content=text, tool_calls=calls, thinking=thinking, usage=usage)
        return ParsedResponse(message=message, usage=usage, tool_calls=calls, stop_reason=data.get("stop_reason"))

    def new_stream_aggregator(self) -> AnthropicStreamAggregator:
        return AnthropicStreamAggregator(self.extractor)
