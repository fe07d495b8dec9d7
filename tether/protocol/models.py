"""Canonical message model shared by every component.

Content is a tagged variant: either a plain string or an ordered list of
typed parts (TextPart, ImagePart, ToolUsePart, ToolResultPart). Adapters
translate this model to and from each provider's wire schema; nothing
outside the adapters ever touches provider-shaped dicts.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Iterable, Mapping, Union

from tether.utils import new_id, safe_json_dumps


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


def normalize_role(value: Any) -> Role | None:
    """Return the Role for a case-insensitive string, None if unknown."""
    if not isinstance(value, str):
        return None
    try:
        return Role(value.strip().lower())
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Content parts
# ---------------------------------------------------------------------------


@dataclass
class TextPart:
    text: str = ""


@dataclass
class ImagePart:
    """An image, either by URL (data URLs included) or as raw base64 data."""

    url: str | None = None
    media_type: str = "image/png"
    data: str | None = None

    @classmethod
    def from_url(cls, url: str) -> ImagePart:
        """Split data URLs into media type + base64 payload; keep others as URL."""
        if url.startswith("data:") and "," in url:
            header, payload = url.split(",", 1)
            media_type = header[5:].split(";", 1)[0] or "image/png"
            return cls(media_type=media_type, data=payload)
        return cls(url=url)

    @property
    def as_url(self) -> str:
        """URL form of the image (a data URL when only base64 data is held)."""
        if self.data:
            return f"data:{self.media_type};base64,{self.data}"
        return self.url or ""


@dataclass
class ToolUsePart:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResultPart:
    tool_call_id: str
    content: str | list[Part] = ""
    is_error: bool = False


Part = Union[TextPart, ImagePart, ToolUsePart, ToolResultPart]
Content = Union[str, list[Part]]


@dataclass
class ToolCall:
    """A model-requested action. Produced only by assistant messages."""

    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "args": self.args}


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def normalize(cls, raw: Any) -> Usage | None:
        """Accept canonical, camelCase, OpenAI and Anthropic usage shapes."""
        if isinstance(raw, Usage):
            return raw
        if not isinstance(raw, Mapping):
            return None

        def _pick(*keys: str) -> int:
            for key in keys:
                value = raw.get(key)
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    return int(value)
            return 0

        input_tokens = _pick("input_tokens", "inputTokens", "prompt_tokens")
        output_tokens = _pick("output_tokens", "outputTokens", "completion_tokens")
        total = _pick("total_tokens", "totalTokens") or input_tokens + output_tokens
        return cls(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total)

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------


@dataclass
class Message:
    """One turn of conversation, provider-agnostic.

    Immutable by convention: components derive new messages instead of
    editing ones they did not create. id and created_at do not take part in
    equality, so two histories with the same turns compare equal.
    """

    role: Role
    content: Content = ""
    thinking: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    name: str | None = None
    usage: Usage | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: new_id("msg"), compare=False)
    created_at: float = field(default_factory=time.time, compare=False)

    def __post_init__(self) -> None:
        self.role = Role(self.role)
        if self.content is None:
            self.content = ""

    # -- constructors -----------------------------------------------------

    @classmethod
    def system(cls, text: str, **meta: Any) -> Message:
        return cls(role=Role.SYSTEM, content=text, meta=dict(meta))

    @classmethod
    def user(cls, content: Content) -> Message:
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls,
        content: Content = "",
        tool_calls: list[ToolCall] | None = None,
        thinking: str | None = None,
        usage: Usage | None = None,
    ) -> Message:
        return cls(
            role=Role.ASSISTANT,
            content=content,
            tool_calls=list(tool_calls or []),
            thinking=thinking,
            usage=usage,
        )

    @classmethod
    def tool_result(cls, tool_call_id: str, content: Content, name: str | None = None, is_error: bool = False) -> Message:
        meta = {"is_error": True} if is_error else {}
        return cls(role=Role.TOOL, content=content, tool_call_id=tool_call_id, name=name, meta=meta)

    # -- views ------------------------------------------------------------

    @property
    def parts(self) -> list[Part]:
        """Content as a part list (a string becomes one TextPart, empty -> [])."""
        if isinstance(self.content, str):
            return [TextPart(self.content)] if self.content else []
        return list(self.content)

    @property
    def text(self) -> str:
        """Visible text only; tool parts and images are skipped."""
        return content_text(self.content)

    @property
    def has_images(self) -> bool:
        return image_count(self.content) > 0

    @property
    def is_summary(self) -> bool:
        return self.meta.get("kind") == "summary"

    def all_tool_calls(self) -> list[ToolCall]:
        """Structured tool calls plus ToolUseParts, de-duplicated by id."""
        if self.role != Role.ASSISTANT:
            return []
        calls = list(self.tool_calls)
        seen = {c.id for c in calls}
        if isinstance(self.content, list):
            for part in self.content:
                if isinstance(part, ToolUsePart) and part.id not in seen:
                    calls.append(ToolCall(id=part.id, name=part.name, args=dict(part.input)))
                    seen.add(part.id)
        return calls

    def tool_results(self) -> list[ToolResultPart]:
        """Tool results carried by this message, in canonical form.

        A tool-role message yields one result (or its ToolResultParts when
        it carries several); a user message yields its ToolResultParts.
        """
        if self.role == Role.TOOL:
            if isinstance(self.content, list):
                nested = [p for p in self.content if isinstance(p, ToolResultPart)]
                if nested:
                    return nested
            return [
                ToolResultPart(
                    tool_call_id=self.tool_call_id or "",
                    content=self.content,
                    is_error=bool(self.meta.get("is_error")),
                )
            ]
        if self.role == Role.USER and isinstance(self.content, list):
            return [p for p in self.content if isinstance(p, ToolResultPart)]
        return []

    # -- serialization ----------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Lossless canonical dict, the inverse of Message.from_dict()."""
        data: dict[str, Any] = {
            "id": self.id,
            "created_at": self.created_at,
            "role": self.role.value,
            "content": content_to_data(self.content),
        }
        if self.thinking:
            data["thinking"] = self.thinking
        if self.tool_calls:
            data["tool_calls"] = [c.to_dict() for c in self.tool_calls]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            data["name"] = self.name
        if self.usage is not None:
            data["usage"] = self.usage.to_dict()
        if self.meta:
            data["meta"] = dict(self.meta)
        return data

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Message:
        """Build a Message from a canonical, OpenAI- or Anthropic-shaped dict.

        Raises ValueError when the role is missing or unknown.
        """
        role = normalize_role(raw.get("role"))
        if role is None:
            raise ValueError(f"Unknown message role: {raw.get('role')!r}")

        kwargs: dict[str, Any] = {"role": role, "content": normalize_content(raw.get("content"))}

        thinking = raw.get("thinking") or raw.get("reasoning_content") or raw.get("reasoning")
        if isinstance(thinking, str) and thinking:
            kwargs["thinking"] = thinking

        if role == Role.ASSISTANT:
            calls = raw.get("tool_calls") or raw.get("toolCalls")
            if isinstance(calls, list):
                kwargs["tool_calls"] = normalize_tool_calls(calls)
            elif isinstance(raw.get("function_call"), Mapping):
                kwargs["tool_calls"] = normalize_tool_calls([raw["function_call"]])

        if role == Role.TOOL:
            call_id = raw.get("tool_call_id") or raw.get("toolCallId")
            if call_id:
                kwargs["tool_call_id"] = str(call_id)
        if raw.get("name"):
            kwargs["name"] = str(raw["name"])

        usage = Usage.normalize(raw.get("usage"))
        if usage is not None:
            kwargs["usage"] = usage
        if isinstance(raw.get("meta"), Mapping):
            kwargs["meta"] = dict(raw["meta"])
        if isinstance(raw.get("id"), str) and raw["id"]:
            kwargs["id"] = raw["id"]
        created_at = raw.get("created_at")
        if isinstance(created_at, (int, float)) and not isinstance(created_at, bool):
            kwargs["created_at"] = float(created_at)
        return cls(**kwargs)


# ---------------------------------------------------------------------------
# Normalization helpers
# ---------------------------------------------------------------------------


def content_text(content: Content) -> str:
    """Flatten content to its visible text."""
    if isinstance(content, str):
        return content
    return "\n".join(p.text for p in content if isinstance(p, TextPart) and p.text)


def image_count(content: Content) -> int:
    """Number of image-bearing parts, including images nested in tool results."""
    if isinstance(content, str):
        return 0
    count = 0
    for part in content:
        if isinstance(part, ImagePart):
            count += 1
        elif isinstance(part, ToolResultPart) and isinstance(part.content, list):
            count += image_count(part.content)
    return count


def content_to_data(content: Content) -> str | list[dict[str, Any]]:
    """Canonical JSON form of content."""
    if isinstance(content, str):
        return content
    return [part_to_data(p) for p in content]


def part_to_data(part: Part) -> dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    if isinstance(part, ImagePart):
        data: dict[str, Any] = {"type": "image", "media_type": part.media_type}
        if part.url is not None:
            data["url"] = part.url
        if part.data is not None:
            data["data"] = part.data
        return data
    if isinstance(part, ToolUsePart):
        return {"type": "tool_use", "id": part.id, "name": part.name, "input": part.input}
    return {
        "type": "tool_result",
        "tool_call_id": part.tool_call_id,
        "content": content_to_data(part.content),
        "is_error": part.is_error,
    }


def normalize_content(raw: Any) -> Content:
    """Coerce loosely-typed content into the canonical variant. Never None."""
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    if isinstance(raw, list):
        return [part_from_data(item) for item in raw if item is not None]
    if isinstance(raw, Mapping) and "type" in raw:
        return [part_from_data(raw)]
    return safe_json_dumps(raw)


def part_from_data(raw: Any) -> Part:
    """Parse one content part from canonical, OpenAI or Anthropic shapes.

    Unrecognized objects degrade to a TextPart holding their JSON.
    """
    from tether.protocol.args import parse_args

    if isinstance(raw, (TextPart, ImagePart, ToolUsePart, ToolResultPart)):
        return raw
    if isinstance(raw, str):
        return TextPart(raw)
    if not isinstance(raw, Mapping):
        return TextPart(safe_json_dumps(raw))

    kind = str(raw.get("type") or "")

    if kind in ("tool_use", "tool_call", "tool-call"):
        return ToolUsePart(
            id=str(raw.get("id") or raw.get("tool_call_id") or raw.get("toolCallId") or new_id("call")),
            name=str(raw.get("name") or raw.get("tool") or raw.get("toolName") or ""),
            input=parse_args(_first_present(raw, "input", "arguments", "args", "parameters")),
        )

    if kind in ("tool_result", "tool-result"):
        call_id = raw.get("tool_call_id") or raw.get("tool_use_id") or raw.get("toolCallId") or ""
        if "output" in raw and "content" not in raw:
            content: Content = _sdk_output_text(raw.get("output"))
        else:
            inner = raw.get("content")
            content = normalize_content(inner) if isinstance(inner, (str, list)) else safe_json_dumps(inner)
        return ToolResultPart(tool_call_id=str(call_id), content=content, is_error=bool(raw.get("is_error")))

    if kind == "image_url":
        image_url = raw.get("image_url")
        url = image_url.get("url") if isinstance(image_url, Mapping) else image_url
        return ImagePart.from_url(str(url or ""))

    if kind == "image":
        source = raw.get("source")
        if isinstance(source, Mapping):
            if source.get("type") == "url":
                return ImagePart(url=str(source.get("url") or ""))
            return ImagePart(
                media_type=str(source.get("media_type") or "image/png"),
                data=str(source.get("data") or ""),
            )
        if raw.get("data"):
            return ImagePart(media_type=str(raw.get("media_type") or "image/png"), data=str(raw["data"]))
        url = raw.get("url") or raw.get("image")
        return ImagePart.from_url(str(url)) if isinstance(url, str) else ImagePart()

    if isinstance(raw.get("text"), str):
        return TextPart(raw["text"])

    return TextPart(safe_json_dumps(dict(raw)))


def normalize_tool_calls(raw: Iterable[Any]) -> list[ToolCall]:
    """Accept canonical {id, name, args} and OpenAI {id, function: {...}} shapes."""
    from tether.protocol.args import parse_args

    calls: list[ToolCall] = []
    for item in raw:
        if isinstance(item, ToolCall):
            calls.append(item)
            continue
        if not isinstance(item, Mapping):
            continue
        fn = item.get("function") or item.get("func") or item.get("tool")
        fn = fn if isinstance(fn, Mapping) else {}
        name = item.get("name") or fn.get("name") or ""
        args_raw = _first_present(item, "args", "arguments", "input")
        if args_raw is None:
            args_raw = fn.get("arguments")
        calls.append(
            ToolCall(
                id=str(item.get("id") or new_id("call")),
                name=str(name),
                args=parse_args(args_raw),
            )
        )
    return calls


def normalize_history(raw: Iterable[Any]) -> list[Message]:
    """Coerce a loosely-typed history into canonical messages.

    Entries that are not mappings or carry an unknown role are skipped.
    """
    messages: list[Message] = []
    for item in raw or []:
        if isinstance(item, Message):
            messages.append(item)
            continue
        if not isinstance(item, Mapping):
            continue
        try:
            messages.append(Message.from_dict(item))
        except ValueError:
            continue
    return messages


def _first_present(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _sdk_output_text(output: Any) -> str:
    """Flatten an SDK-style {type: text|json, value} tool output."""
    if isinstance(output, Mapping) and "value" in output:
        value = output["value"]
        return value if isinstance(value, str) else safe_json_dumps(value)
    if isinstance(output, str):
        return output
    return safe_json_dumps(output)
