"""Tool execution boundary.

Provides:
- ToolExecutor: the protocol the turn loop calls tools through
- ToolDispatcher: registers async handlers with their schemas, enforces the
  permission policy (blocked tools, allowed domains) and turns every
  failure into a structured {"success": False, "error": ...} result

Nothing raised by a handler ever crosses this boundary.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any, Protocol
from urllib.parse import urlparse

from tether.config import Settings

logger = logging.getLogger(__name__)


class ToolExecutor(Protocol):
    async def execute(self, name: str, args: dict[str, Any]) -> dict[str, Any]: ...

    def tool_definitions(self) -> list[dict[str, Any]]: ...


def tool_error(message: str) -> dict[str, Any]:
    return {"success": False, "error": message}


# ---------------------------------------------------------------------------
# ToolDispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """Registers tool handlers and dispatches tool calls from the model.

    Each handler is an async callable that accepts **kwargs and returns a
    JSON-serializable dict. Non-dict return values are wrapped as
    {"success": True, "result": value}.
    """

    def __init__(self, blocked_tools: Iterable[str] = (), allowed_domains: Iterable[str] = ()) -> None:
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._schemas: dict[str, dict[str, Any]] = {}
        self._blocked = {name for name in blocked_tools}
        self._allowed_domains = [d.strip().lower().lstrip(".") for d in allowed_domains if d.strip()]

    @classmethod
    def from_settings(cls, settings: Settings) -> ToolDispatcher:
        return cls(blocked_tools=settings.blocked_tools, allowed_domains=settings.allowed_domains)

    def register(self, name: str, handler: Callable[..., Any], schema: dict[str, Any]) -> None:
        """Register a tool handler with its JSON schema."""
        self._handlers[name] = handler
        self._schemas[name] = schema

    def has(self, name: str) -> bool:
        return name in self._handlers

    def is_blocked(self, name: str) -> bool:
        return name in self._blocked

    def domain_allowed(self, url: str) -> bool:
        """True when no allow-list is set or the URL host is on it (subdomains included)."""
        if not self._allowed_domains:
            return True
        host = (urlparse(url if "://" in url else f"https://{url}").hostname or "").lower()
        return any(host == d or host.endswith(f".{d}") for d in self._allowed_domains)

    async def execute(self, name: str, args: dict[str, Any]) -> dict[str, Any]:
        """Run a tool. Always returns a dict, never raises."""
        if self.is_blocked(name):
            logger.info("Blocked tool call: %s", name)
            return tool_error(f"Tool '{name}' is blocked by the permission policy")

        handler = self._handlers.get(name)
        if not handler:
            return tool_error(f"Unknown tool: {name}")

        url = args.get("url")
        if isinstance(url, str) and url and not self.domain_allowed(url):
            logger.info("Tool %s refused for disallowed domain: %s", name, url)
            return tool_error(f"Domain not allowed: {url}")

        try:
            result = await handler(**args)
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return tool_error(f"Tool error: {e}")

        if isinstance(result, dict):
            return result
        return {"success": True, "result": result}

    def tool_definitions(self) -> list[dict[str, Any]]:
        """All non-blocked tools as {name, description, input_schema}."""
        return [
            {
                "name": name,
                "description": schema.get("description", ""),
                "input_schema": {k: v for k, v in schema.items() if k != "description"},
            }
            for name, schema in self._schemas.items()
            if name not in self._blocked
        ]
