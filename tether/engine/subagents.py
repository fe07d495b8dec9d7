"""Sub-agents: bounded, independent runs of the turn loop.

A sub-agent gets a private history seeded from its task list, its own
system prompt, step bound and timeout. The parent only ever sees one
tool result and one subagent_complete event per spawn.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from tether.config import Settings
from tether.engine.tools import tool_error
from tether.protocol.models import Message
from tether.utils import new_id

logger = logging.getLogger(__name__)

SPAWN_SUBAGENT = "spawn_subagent"
SUBAGENT_COMPLETE = "subagent_complete"

DEFAULT_SUBAGENT_PROMPT = "You are a focused sub-agent working under an orchestrator. Be concise and tool-driven."
SUBAGENT_PROMPT_SUFFIX = (
    "Always cite evidence from tools. Finish by calling subagent_complete with a short "
    "summary and any structured findings."
)
NO_SUMMARY = "Sub-agent finished without a final summary."


@dataclass
class ChildRun:
    """What a finished child loop reports back."""

    text: str = ""
    completion: dict[str, Any] | None = None  # args of the subagent_complete call, if any


# (system_prompt, seeded history) -> ChildRun
ChildLoop = Callable[[str, list[Message]], Awaitable[ChildRun]]


@dataclass
class SubagentOutcome:
    id: str
    name: str
    success: bool
    summary: str
    tasks: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    def to_result(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "success": self.success,
            "source": "subagent",
            "id": self.id,
            "name": self.name,
            "summary": self.summary,
            "tasks": self.tasks,
        }
        if self.data:
            result["data"] = self.data
        return result


def task_lines(args: dict[str, Any]) -> str:
    tasks = args.get("tasks")
    if isinstance(tasks, list) and tasks:
        return "\n".join(f"{i}. {t}" for i, t in enumerate(tasks, 1))
    for key in ("goal", "task", "prompt"):
        if isinstance(args.get(key), str) and args[key].strip():
            return args[key].strip()
    return ""


class SubagentManager:
    """Per-session spawn counter plus the spawn/timeout wrapper.

    The cap is checked and incremented under a lock so concurrent spawns
    can never exceed it.
    """

    def __init__(self, limit: int = 10, timeout: float = 300.0) -> None:
        self._limit = limit
        self._timeout = timeout
        self._count = 0
        self._lock = asyncio.Lock()

    @property
    def count(self) -> int:
        return self._count

    @classmethod
    def from_settings(cls, settings: Settings) -> SubagentManager:
        return cls(limit=settings.max_subagents, timeout=settings.subagent_timeout)

    @property
    def limit(self) -> int:
        return self._limit

    def reset(self) -> None:
        self._count = 0

    async def _reserve(self) -> int | None:
        async with self._lock:
            if self._count >= self.limit:
                return None
            self._count += 1
            return self._count

    async def spawn(self, args: dict[str, Any], run_child: ChildLoop) -> tuple[dict[str, Any], SubagentOutcome | None]:
        """Run one sub-agent to completion. Returns (tool result, outcome)."""
        ordinal = await self._reserve()
        if ordinal is None:
            logger.info("Sub-agent limit reached (%d)", self.limit)
            return tool_error(f"Sub-agent limit reached for this session (max {self.limit})."), None

        subagent_id = new_id("subagent")
        name = str(args.get("name") or f"Sub-Agent {ordinal}")
        tasks = task_lines(args)
        prompt = args.get("prompt") if isinstance(args.get("prompt"), str) and args["prompt"].strip() else DEFAULT_SUBAGENT_PROMPT
        system_prompt = f"{prompt}\n{SUBAGENT_PROMPT_SUFFIX}"
        history = [Message.user(f"Task group:\n{tasks or 'Follow the provided prompt and complete the goal.'}")]

        timeout = self._timeout
        logger.info("Starting %s (%s): %s", subagent_id, name, tasks[:80])
        try:
            child = await asyncio.wait_for(run_child(system_prompt, history), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Sub-agent %s timed out after %.0fs", subagent_id, timeout)
            outcome = SubagentOutcome(subagent_id, name, False, f"Sub-agent timed out after {timeout:.0f}s", tasks)
        except Exception as e:
            logger.exception("Sub-agent %s failed", subagent_id)
            outcome = SubagentOutcome(subagent_id, name, False, f"Sub-agent failed: {e}", tasks)
        else:
            outcome = SubagentOutcome(subagent_id, name, True, self._summary(child), tasks, self._data(child))
        return outcome.to_result(), outcome

    @staticmethod
    def _summary(child: ChildRun) -> str:
        if child.completion and isinstance(child.completion.get("summary"), str) and child.completion["summary"].strip():
            return child.completion["summary"].strip()
        return child.text.strip() or NO_SUMMARY

    @staticmethod
    def _data(child: ChildRun) -> dict[str, Any]:
        data = (child.completion or {}).get("data")
        return data if isinstance(data, dict) else {}


SUBAGENT_TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": SPAWN_SUBAGENT,
        "description": "Start a focused sub-agent with its own goal, prompt, and task list.",
        "input_schema": {
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "Display name for the sub-agent"},
                "prompt": {"type": "string", "description": "System prompt for the sub-agent"},
                "tasks": {"type": "array", "items": {"type": "string"}, "description": "Task list for the sub-agent"},
                "goal": {"type": "string", "description": "Single goal string if tasks not provided"},
            },
        },
    },
]

SUBAGENT_COMPLETE_DEFINITION: dict[str, Any] = {
    "name": SUBAGENT_COMPLETE,
    "description": "Sub-agent calls this when finished to return a summary payload.",
    "input_schema": {
        "type": "object",
        "properties": {"summary": {"type": "string"}, "data": {"type": "object"}},
        "required": ["summary"],
    },
}
