"""Tests for context estimation, cut points, summaries and tool-output pruning."""

from unittest.mock import AsyncMock

import pytest

from tether.config import CompactionSettings, Settings
from tether.engine.compaction import (
    IMAGE_TOKENS,
    SUMMARY_SYSTEM_PROMPT,
    UPDATE_SYSTEM_PROMPT,
    ContextCompactor,
    LLMSummarizer,
    build_summary_message,
    estimate_context_tokens,
    estimate_message_tokens,
    find_cut_point,
    is_valid_cut_point,
    prune_tool_results,
    serialize_for_summary,
    should_compact,
)
from tether.engine.client import ProviderError
from tether.protocol.adapter import ParsedResponse
from tether.protocol.models import ImagePart, Message, Role, ToolResultPart, Usage

from conftest import call, tool_turn

GOOD_SUMMARY = "- User wants the pricing page checked.\n- Navigated to example.com and clicked 'Pricing'.\n- Open: compare plans."


def _compaction_settings(**overrides) -> Settings:
    values = dict(
        api_key="test-key",
        context_limit=1000,
        compaction_reserve_tokens=200,
        compaction_keep_recent_tokens=50,
    )
    values.update(overrides)
    return Settings(**values)


def _long_history(turns: int = 6) -> list[Message]:
    """User/assistant/tool cycles, each roughly 100+ estimated tokens."""
    history: list[Message] = []
    for i in range(turns):
        history.append(Message.user(f"step {i}: " + "x" * 200))
        history.extend(tool_turn(f"c{i}", result="r" * 400))
        history.append(Message.assistant(f"finished step {i}"))
    return history


class TestEstimates:
    def test_chars_over_four_rounded_up(self):
        assert estimate_message_tokens(Message.user("abcde")) == 2
        assert estimate_message_tokens(Message.user("")) == 0

    def test_images_have_fixed_cost(self):
        msg = Message.user([ImagePart(url="https://x/a.png"), ImagePart(data="AAAA")])
        assert estimate_message_tokens(msg) == 2 * IMAGE_TOKENS

    def test_tool_calls_and_thinking_count(self):
        bare = estimate_message_tokens(Message.assistant("hi"))
        rich = estimate_message_tokens(Message.assistant("hi", tool_calls=[call("c1", x=1)], thinking="because"))
        assert rich > bare

    def test_anchor_on_last_usage(self):
        history = [
            Message.user("x" * 400),
            Message.assistant("ok", usage=Usage(100, 20, 120)),
            Message.user("y" * 40),
        ]
        estimate = estimate_context_tokens(history)
        assert estimate.usage_tokens == 120
        assert estimate.trailing_tokens == 10
        assert estimate.tokens == 130
        assert estimate.last_usage_index == 1

    def test_without_usage_sums_everything(self):
        estimate = estimate_context_tokens([Message.user("a" * 8), Message.assistant("b" * 4)])
        assert estimate.tokens == 3
        assert estimate.last_usage_index == -1


class TestShouldCompact:
    """Compaction fires once fewer than reserve_tokens remain."""

    def test_threshold(self):
        config = CompactionSettings(reserve_tokens=200)
        assert not should_compact(800, 1000, config)
        assert should_compact(801, 1000, config)

    def test_disabled(self):
        assert not should_compact(10_000, 1000, CompactionSettings(enabled=False, reserve_tokens=200))


class TestCutPoints:
    def test_tool_messages_are_never_cut_points(self):
        assert not is_valid_cut_point(Message.tool_result("c1", "ok"))
        assert not is_valid_cut_point(Message.user([ToolResultPart(tool_call_id="c1", content="ok")]))
        assert is_valid_cut_point(Message.user("hi"))
        assert is_valid_cut_point(Message.assistant("", tool_calls=[call("c1")]))

    @pytest.mark.parametrize("keep", [1, 10, 60, 120, 300, 600])
    def test_cut_never_lands_on_tool_result(self, keep):
        history = _long_history()
        cut = find_cut_point(history, 0, keep)
        if cut < len(history):
            assert history[cut].role != Role.TOOL

    def test_whole_history_fits(self):
        history = _long_history(2)
        assert find_cut_point(history, 0, 1_000_000) == 0

    def test_moves_forward_past_tool_results(self):
        history = [Message.user("a" * 400), *tool_turn("c1", result="r" * 40), Message.assistant("done")]
        # boundary lands on the tool result, the cut moves to the next assistant
        cut = find_cut_point(history, 0, 11)
        assert history[cut].role == Role.ASSISTANT
        assert cut == 3

    def test_summary_message_shape(self):
        msg = build_summary_message("  summary text  ", trimmed_count=7)
        assert msg.role == Role.SYSTEM
        assert msg.is_summary
        assert msg.text == "summary text"
        assert msg.meta == {"kind": "summary", "summary_of_count": 7, "source": "auto"}


# ---------------------------------------------------------------------------
# Compactor
# ---------------------------------------------------------------------------


class TestContextCompactor:
    @pytest.mark.asyncio
    async def test_below_threshold_does_nothing(self):
        compactor = ContextCompactor(_compaction_settings())
        summarizer = AsyncMock()
        result = await compactor.maybe_compact([Message.user("hi")], summarizer)
        assert result is None
        summarizer.summarize.assert_not_called()

    @pytest.mark.asyncio
    async def test_compacts_prefix_into_summary(self):
        compactor = ContextCompactor(_compaction_settings())
        summarizer = AsyncMock()
        summarizer.summarize.return_value = GOOD_SUMMARY
        history = _long_history()

        result = await compactor.maybe_compact(history, summarizer)

        assert result is not None
        assert not result.fallback
        assert result.compacted[0].is_summary
        assert result.summary == GOOD_SUMMARY
        assert result.trimmed_count + result.preserved_count == len(history)
        assert result.compacted[1:] == history[result.trimmed_count:]
        assert result.compacted[1].role != Role.TOOL
        summarized, previous = summarizer.summarize.call_args.args
        assert list(summarized) == history[: result.trimmed_count]
        assert previous is None

    @pytest.mark.asyncio
    async def test_high_water_triggers(self):
        compactor = ContextCompactor(_compaction_settings())
        summarizer = AsyncMock()
        summarizer.summarize.return_value = GOOD_SUMMARY
        history = _long_history(2)
        assert estimate_context_tokens(history).tokens < 800

        assert await compactor.maybe_compact(history, summarizer, high_water=0) is None
        result = await compactor.maybe_compact(history, summarizer, high_water=950)
        assert result is not None

    @pytest.mark.asyncio
    async def test_existing_summary_is_updated(self):
        compactor = ContextCompactor(_compaction_settings())
        summarizer = AsyncMock()
        summarizer.summarize.return_value = GOOD_SUMMARY
        previous = build_summary_message("- older facts " + "z" * 80, trimmed_count=4)
        history = [previous, *_long_history()]

        result = await compactor.compact(history, summarizer)

        summarized, previous_text = summarizer.summarize.call_args.args
        assert previous_text == previous.text
        assert not any(m.is_summary for m in summarized)
        assert sum(1 for m in result.compacted if m.is_summary) == 1
        assert result.trimmed_count == len(summarized)
        assert result.summary_message.meta["summary_of_count"] == len(summarized)
        assert result.trimmed_count + result.preserved_count == len(history) - 1

    @pytest.mark.asyncio
    async def test_short_summary_falls_back_to_truncation(self):
        compactor = ContextCompactor(_compaction_settings())
        summarizer = AsyncMock()
        summarizer.summarize.return_value = "too short"
        result = await compactor.compact(_long_history(), summarizer)
        assert result.fallback
        assert "earlier messages were removed" in result.summary
        assert str(result.trimmed_count) in result.summary

    @pytest.mark.asyncio
    async def test_summarizer_error_falls_back(self):
        compactor = ContextCompactor(_compaction_settings())
        summarizer = AsyncMock()
        summarizer.summarize.side_effect = ProviderError("boom", status=500)
        result = await compactor.compact(_long_history(), summarizer)
        assert result.fallback
        assert result.compacted[0].is_summary

    @pytest.mark.asyncio
    async def test_no_cut_point_returns_none(self):
        compactor = ContextCompactor(_compaction_settings(compaction_keep_recent_tokens=100_000))
        summarizer = AsyncMock()
        assert await compactor.compact(_long_history(), summarizer) is None
        summarizer.summarize.assert_not_called()


class TestLLMSummarizer:
    @pytest.mark.asyncio
    async def test_uses_fixed_prompt_and_budget(self):
        settings = _compaction_settings()
        client = AsyncMock()
        client.complete.return_value = ParsedResponse(message=Message.assistant(f"  {GOOD_SUMMARY}  "))

        summary = await LLMSummarizer(client, settings).summarize(_long_history(1))

        assert summary == GOOD_SUMMARY
        kwargs = client.complete.call_args.kwargs
        assert kwargs["system_prompt"] == SUMMARY_SYSTEM_PROMPT
        assert kwargs["tools"] is None
        assert kwargs["temperature"] == 0.2
        assert kwargs["max_tokens"] == 1600

    @pytest.mark.asyncio
    async def test_update_prompt_with_previous(self):
        client = AsyncMock()
        client.complete.return_value = ParsedResponse(message=Message.assistant(GOOD_SUMMARY))
        await LLMSummarizer(client, _compaction_settings()).summarize([Message.user("hi")], "old summary")
        kwargs = client.complete.call_args.kwargs
        assert kwargs["system_prompt"] == UPDATE_SYSTEM_PROMPT
        sent = client.complete.call_args.args[0][0].text
        assert "## Existing Summary\n\nold summary" in sent

    def test_serialization_has_no_tool_protocol(self):
        text = serialize_for_summary([Message.user("go"), *tool_turn("c1", result="page loaded")])
        assert "**User:** go" in text
        assert "[called click {}]" in text
        assert "**Tool result (click):** page loaded" in text


# ---------------------------------------------------------------------------
# Tool output pruning
# ---------------------------------------------------------------------------


class TestPruneToolResults:
    def _settings(self, **overrides) -> Settings:
        values = dict(
            api_key="test-key",
            keep_last_tool_results=1,
            tool_soft_trim_chars=100,
            tool_soft_trim_head=20,
            tool_soft_trim_tail=20,
            tool_hard_clear_after=3,
        )
        values.update(overrides)
        return Settings(**values)

    def test_soft_trims_old_results_and_protects_recent(self):
        history = [*tool_turn("a", result="A" * 500), *tool_turn("b", result="B" * 500)]
        pruned = prune_tool_results(history, self._settings())
        assert "trimmed (kept 20 head + 20 tail of 500 chars)" in pruned[1].text
        assert pruned[3].text == "B" * 500
        assert history[1].text == "A" * 500

    def test_hard_clears_very_old_results(self):
        history = []
        for i in range(6):
            history.extend(tool_turn(f"c{i}", result="short"))
        pruned = prune_tool_results(history, self._settings())
        assert pruned[1].text.startswith("[Tool output cleared")
        assert pruned[-1].text == "short"

    def test_disabled(self):
        history = tool_turn("a", result="A" * 500)
        assert prune_tool_results(history, self._settings(tool_pruning_enabled=False)) == history

    def test_images_untouched(self):
        image_result = Message.user([ToolResultPart(tool_call_id="a", content=[ImagePart(url="u")])])
        history = [Message.assistant("", tool_calls=[call("a")]), image_result, *tool_turn("b")]
        pruned = prune_tool_results(history, self._settings(tool_hard_clear_after=0))
        assert pruned[1] is image_result
