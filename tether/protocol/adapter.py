"""Wire adapter contract shared by the provider-specific adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Iterable

from tether.engine.retry import RepairLevel
from tether.protocol.args import NullToolCallExtractor, ToolCallExtractor
from tether.protocol.models import Message, ToolCall, Usage
from tether.protocol.sanitizer import SequenceSanitizer, WireStyle, strip_tool_interactions
from tether.protocol.streaming import StreamAggregator


@dataclass
class WireRequest:
    """Provider request body plus the path it is posted to."""

    url_path: str
    payload: dict[str, Any]


@dataclass
class ParsedResponse:
    message: Message
    usage: Usage | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: str | None = None


class WireAdapter(ABC):
    """Translate canonical histories to one provider's JSON and back.

    build_request() always sends a derived copy: SANITIZE runs the
    sequence sanitizer, STRIP_TOOLS removes every tool interaction.
    """

    style: ClassVar[WireStyle]
    url_path: ClassVar[str]
    default_base_url: ClassVar[str]
    supports_streaming: ClassVar[bool] = True

    def __init__(self, provider: str | None = None, extractor: ToolCallExtractor | None = None):
        self.provider = provider or self.style
        self.extractor = extractor or NullToolCallExtractor()
        self.sanitizer = SequenceSanitizer(self.style)

    def prepare(self, history: Iterable[Message], level: RepairLevel = RepairLevel.SANITIZE) -> list[Message]:
        """Derived wire-ready copy of the history for the given repair level."""
        if level >= RepairLevel.STRIP_TOOLS:
            return strip_tool_interactions(history, self.style)
        return self.sanitizer.sanitize(history)

    @abstractmethod
    def endpoint(self, base_url: str | None = None) -> str:
        """Absolute request URL, honoring a configured base URL."""

    @abstractmethod
    def headers(self, api_key: str = "", auth_token: str = "") -> dict[str, str]:
        """Auth and protocol headers for every request."""

    @abstractmethod
    def convert_tools(self, tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Map canonical {name, description, input_schema} tool definitions."""

    @abstractmethod
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
    ) -> WireRequest: ...

    @abstractmethod
    def parse_response(self, data: Any) -> ParsedResponse:
        """Parse a non-streaming response body. Malformed bodies degrade to an empty message."""

    @abstractmethod
    def new_stream_aggregator(self) -> StreamAggregator: ...


def join_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"
