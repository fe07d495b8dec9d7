"""Tests for SubagentManager: spawn cap, timeout, summaries and failures."""

import asyncio

import pytest

from tether.config import Settings
from tether.engine.subagents import (
    DEFAULT_SUBAGENT_PROMPT,
    NO_SUMMARY,
    SUBAGENT_PROMPT_SUFFIX,
    ChildRun,
    SubagentManager,
    task_lines,
)


def _child(text: str = "", completion: dict | None = None):
    seen: list[tuple[str, list]] = []

    async def run(system_prompt, history):
        seen.append((system_prompt, history))
        return ChildRun(text=text, completion=completion)

    run.seen = seen
    return run


class TestTaskLines:
    def test_numbered_tasks(self):
        assert task_lines({"tasks": ["open", "read"]}) == "1. open\n2. read"

    def test_goal_fallback(self):
        assert task_lines({"goal": "  find price "}) == "find price"

    def test_nothing(self):
        assert task_lines({}) == ""


class TestSpawn:
    @pytest.mark.asyncio
    async def test_child_gets_seeded_history_and_prompt(self):
        run = _child(text="found it")
        result, outcome = await SubagentManager().spawn({"name": "Scout", "tasks": ["open", "read"]}, run)

        system_prompt, history = run.seen[0]
        assert system_prompt == f"{DEFAULT_SUBAGENT_PROMPT}\n{SUBAGENT_PROMPT_SUFFIX}"
        assert history[0].text == "Task group:\n1. open\n2. read"
        assert result["success"]
        assert result["source"] == "subagent"
        assert result["name"] == "Scout"
        assert result["summary"] == "found it"
        assert outcome.id == result["id"]

    @pytest.mark.asyncio
    async def test_custom_prompt(self):
        run = _child()
        await SubagentManager().spawn({"prompt": "You check prices.", "goal": "x"}, run)
        assert run.seen[0][0].startswith("You check prices.\n")

    @pytest.mark.asyncio
    async def test_completion_summary_wins(self):
        run = _child(text="rambling text", completion={"summary": " $5/month ", "data": {"price": 5}})
        result, _ = await SubagentManager().spawn({}, run)
        assert result["summary"] == "$5/month"
        assert result["data"] == {"price": 5}
        assert result["name"] == "Sub-Agent 1"

    @pytest.mark.asyncio
    async def test_no_summary_at_all(self):
        result, _ = await SubagentManager().spawn({}, _child())
        assert result["summary"] == NO_SUMMARY
        assert "data" not in result

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow(system_prompt, history):
            await asyncio.sleep(10)

        result, outcome = await SubagentManager(timeout=0.01).spawn({"name": "Slow"}, slow)
        assert not result["success"]
        assert "timed out" in result["summary"]
        assert outcome.name == "Slow"

    @pytest.mark.asyncio
    async def test_child_exception_is_a_result(self):
        async def boom(system_prompt, history):
            raise RuntimeError("provider down")

        result, outcome = await SubagentManager().spawn({}, boom)
        assert not result["success"]
        assert result["summary"] == "Sub-agent failed: provider down"
        assert outcome is not None


class TestLimit:
    @pytest.mark.asyncio
    async def test_limit_reached(self):
        manager = SubagentManager(limit=1)
        await manager.spawn({}, _child("a"))
        result, outcome = await manager.spawn({}, _child("b"))
        assert outcome is None
        assert result == {"success": False, "error": "Sub-agent limit reached for this session (max 1)."}

    @pytest.mark.asyncio
    async def test_concurrent_spawns_respect_cap(self):
        manager = SubagentManager(limit=3)
        started = 0

        async def run(system_prompt, history):
            nonlocal started
            started += 1
            await asyncio.sleep(0.01)
            return ChildRun(text="ok")

        results = await asyncio.gather(*(manager.spawn({}, run) for _ in range(8)))
        assert started == 3
        assert sum(1 for _, outcome in results if outcome is not None) == 3
        assert manager.count == 3

    @pytest.mark.asyncio
    async def test_reset_and_disabled(self):
        manager = SubagentManager(limit=1)
        await manager.spawn({}, _child())
        manager.reset()
        assert manager.count == 0
        _, outcome = await SubagentManager(limit=0).spawn({}, _child())
        assert outcome is None

    def test_from_settings(self):
        manager = SubagentManager.from_settings(Settings(api_key="k", max_subagents=4, subagent_timeout=9.0))
        assert manager.limit == 4
