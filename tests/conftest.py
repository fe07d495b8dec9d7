"""Shared fixtures: settings, scripted provider transports and message builders."""

from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest

from tether.config import Settings
from tether.protocol.models import Message, ToolCall


@pytest.fixture
def settings() -> Settings:
    """OpenAI-style settings with fast retries and no streaming."""
    return Settings(
        provider="openai",
        api_key="test-key",
        model="test-model",
        stream=False,
        retry_delay=0.0,
        transport_retries=2,
        max_steps=3,
    )


@pytest.fixture
def anthropic_settings() -> Settings:
    return Settings(
        provider="anthropic",
        api_key="test-key",
        model="claude-test",
        stream=False,
        retry_delay=0.0,
    )


# ---------------------------------------------------------------------------
# Provider simulation
# ---------------------------------------------------------------------------


class ScriptedTransport:
    """httpx.MockTransport driven by a list of canned responses.

    Each entry is an httpx.Response, an exception instance to raise, or a
    callable taking the request. Every request is recorded with its JSON body.
    """

    def __init__(self, script: list) -> None:
        self.script = list(script)
        self.requests: list[httpx.Request] = []
        self.payloads: list[dict] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.payloads.append(json.loads(request.content or b"{}"))
        if not self.script:
            raise AssertionError("Unexpected extra request")
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        if isinstance(step, Callable):
            return step(request)
        return step


def openai_reply(text: str = "", tool_calls: list[dict] | None = None, usage: dict | None = None) -> httpx.Response:
    message: dict = {"role": "assistant", "content": text}
    if tool_calls:
        message["tool_calls"] = tool_calls
    body = {
        "choices": [{"index": 0, "message": message, "finish_reason": "tool_calls" if tool_calls else "stop"}],
        "usage": usage or {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }
    return httpx.Response(200, json=body)


def openai_call(call_id: str, name: str, args: dict) -> dict:
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": json.dumps(args)}}


def sse_response(events: list) -> httpx.Response:
    """SSE body from a list of JSON-able frames (strings pass through)."""
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {payload}\n\n")
    return httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        content="".join(lines).encode(),
    )


# ---------------------------------------------------------------------------
# History builders
# ---------------------------------------------------------------------------


def call(call_id: str, name: str = "click", /, **args) -> ToolCall:
    return ToolCall(id=call_id, name=name, args=args)


def tool_turn(call_id: str, result: str = '{"success": true}', name: str = "click") -> list[Message]:
    """An assistant tool call followed by its result."""
    return [
        Message.assistant("", tool_calls=[call(call_id, name)]),
        Message.tool_result(call_id, result, name=name),
    ]
