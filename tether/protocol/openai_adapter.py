"""OpenAI-style chat-completions adapter.

Also used for OpenAI-compatible gateways (provider "custom"), which is why
parsing tolerates several non-standard tool-call shapes.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Mapping

from tether.engine.retry import RepairLevel
from tether.protocol.adapter import ParsedResponse, WireAdapter, WireRequest, join_url
from tether.protocol.models import (
    ImagePart,
    Message,
    Role,
    TextPart,
    ToolCall,
    ToolUsePart,
    Usage,
    content_text,
    normalize_content,
    normalize_tool_calls,
)
from tether.protocol.streaming import OpenAIStreamAggregator
from tether.utils import extract_thinking

logger = logging.getLogger(__name__)

TOOL_IMAGE_TEXT = "Here is the screenshot you requested:"


class OpenAIAdapter(WireAdapter):
    style = "openai"
    url_path = "/chat/completions"
    default_base_url = "https://api.openai.com/v1"

    def endpoint(self, base_url: str | None = None) -> str:
        base = (base_url or self.default_base_url).rstrip("/")
        if base.endswith(self.url_path):
            return base
        return join_url(base, self.url_path)

    def headers(self, api_key: str = "", auth_token: str = "") -> dict[str, str]:
        headers = {"content-type": "application/json"}
        token = auth_token or api_key
        if token:
            headers["authorization"] = f"Bearer {token}"
        return headers

    def convert_tools(self, tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool.get("description", ""),
                    "parameters": tool.get("input_schema") or {"type": "object", "properties": {}},
                },
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
        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        images: list[ImagePart] = []
        for msg in self.prepare(history, level):
            if images and msg.role != Role.TOOL:
                messages.append(_tool_image_message(images))
                images = []
            messages.append(self.encode_message(msg))
            if msg.role == Role.TOOL:
                images.extend(p for p in msg.parts if isinstance(p, ImagePart))
        if images:
            messages.append(_tool_image_message(images))

        payload: dict[str, Any] = {"model": model, "messages": messages, "max_tokens": max_tokens}
        if temperature is not None:
            payload["temperature"] = temperature
        if tools:
            payload["tools"] = self.convert_tools(tools)
            payload["tool_choice"] = "auto"
        if stream:
            payload["stream"] = True
            if self.provider == "openai":
                payload["stream_options"] = {"include_usage": True}
        return WireRequest(url_path=self.url_path, payload=payload)

    def encode_message(self, msg: Message) -> dict[str, Any]:
        if msg.role == Role.TOOL:
            return {
                "role": "tool",
                "tool_call_id": msg.tool_call_id or "",
                "content": _tool_result_text(msg),
            }
        if msg.role == Role.ASSISTANT:
            data: dict[str, Any] = {"role": "assistant", "content": msg.text}
            calls = msg.all_tool_calls()
            if calls:
                data["tool_calls"] = [
                    {
                        "id": c.id,
                        "type": "function",
                        "function": {"name": c.name, "arguments": json.dumps(c.args, ensure_ascii=False)},
                    }
                    for c in calls
                ]
            return data
        return {"role": msg.role.value, "content": self._encode_content(msg)}

    @staticmethod
    def _encode_content(msg: Message) -> str | list[dict[str, Any]]:
        if isinstance(msg.content, str) or not msg.has_images:
            return msg.text
        parts: list[dict[str, Any]] = []
        for part in msg.content:
            if isinstance(part, TextPart) and part.text:
                parts.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                parts.append({"type": "image_url", "image_url": {"url": part.as_url}})
        return parts

    def parse_response(self, data: Any) -> ParsedResponse:
        if not isinstance(data, Mapping):
            logger.warning("Unexpected response body type: %s", type(data).__name__)
            data = {}
        choices = data.get("choices") or []
        choice = choices[0] if choices and isinstance(choices[0], Mapping) else {}
        raw = choice.get("message") or {}

        content = normalize_content(raw.get("content"))
        text = content_text(content)
        reasoning = raw.get("reasoning_content") or raw.get("reasoning")
        text, thinking = extract_thinking(text, reasoning if isinstance(reasoning, str) else None)

        calls = self.extract_tool_calls(raw, content)
        if not calls and text:
            calls = self.extractor.extract(text)

        usage = Usage.normalize(data.get("usage"))
        message = Message.assistant(content=text, tool_calls=calls, thinking=thinking, usage=usage)
        return ParsedResponse(message=message, usage=usage, tool_calls=calls, stop_reason=choice.get("finish_reason"))

    @staticmethod
    def extract_tool_calls(raw: Mapping[str, Any], content: Any = None) -> list[ToolCall]:
        """Structured tool_calls, the legacy function_call, or tool_use content parts."""
        if isinstance(raw.get("tool_calls"), list) and raw["tool_calls"]:
            return [c for c in normalize_tool_calls(raw["tool_calls"]) if c.name]
        if isinstance(raw.get("function_call"), Mapping):
            return [c for c in normalize_tool_calls([raw["function_call"]]) if c.name]
        if isinstance(content, list):
            return [ToolCall(id=p.id, name=p.name, args=dict(p.input)) for p in content if isinstance(p, ToolUsePart) and p.name]
        return []

    def new_stream_aggregator(self) -> OpenAIStreamAggregator:
        return OpenAIStreamAggregator(self.extractor)


def _tool_result_text(msg: Message) -> str:
    """Tool messages carry text only; their images follow in a separate user message."""
    if isinstance(msg.content, str):
        return msg.content
    return msg.text or ("[image omitted]" if msg.has_images else "")


def _tool_image_message(images: list[ImagePart]) -> dict[str, Any]:
    """Tool-result images, re-sent as a user turn after the run of tool messages."""
    parts: list[dict[str, Any]] = [{"type": "text", "text": TOOL_IMAGE_TEXT}]
    parts.extend({"type": "image_url", "image_url": {"url": image.as_url}} for image in images)
    return {"role": "user", "content": parts}
