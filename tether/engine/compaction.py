"""Context compaction: token estimates, cut points, summaries, tool pruning.

Two layers:
  Layer 1: Tool output pruning (per-request derived copy, no LLM)
  Layer 2: History compaction (rare, LLM-powered), which replaces a prefix
           of the canonical history with one summary message

Estimates are deliberately crude (chars/4 plus fixed image cost). They only
need to grow monotonically with the real token count.
"""

from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Protocol, Sequence

from tether.config import CompactionSettings, Settings
from tether.protocol.models import (
    Content,
    Message,
    Role,
    TextPart,
    ToolResultPart,
    ToolUsePart,
    image_count,
)

if TYPE_CHECKING:
    from tether.engine.client import ProviderClient

logger = logging.getLogger(__name__)

IMAGE_TOKENS = 1200
MIN_SUMMARY_CHARS = 80

# ------------------------------------------------------------------
# Summarization Prompts (co-located with compaction logic)
# ------------------------------------------------------------------

SUMMARY_SYSTEM_PROMPT = (
    "Summarize the conversation so far for the next model run. Include: user goals, "
    "key context, decisions, tool outputs, open tasks, and constraints. Use bullet "
    "points. Keep it between 1,000 and 2,000 tokens."
)

UPDATE_SYSTEM_PROMPT = """\
You are updating a conversation summary with new messages.
Keep it between 1,000 and 2,000 tokens, in bullet points.

RULES:
1. PRESERVE existing info unless explicitly superseded
2. ADD new goals, decisions, tool outputs and open tasks
3. MARK tasks done when the new messages complete them
4. PRESERVE exact URLs, selectors, error messages and values
5. Use the SAME format as the existing summary

Output ONLY the updated summary."""

TRUNCATION_NOTICE = (
    "[{count} earlier messages were removed to stay within the context window. "
    "No summary could be generated for them.]"
)

_TOOL_OUTPUT_CLEARED = "[Tool output cleared - content was processed in earlier turns]"


class Summarizer(Protocol):
    """Produces the body of a compaction summary."""

    async def summarize(self, messages: Sequence[Message], previous_summary: str | None = None) -> str: ...


# ------------------------------------------------------------------
# Token estimates
# ------------------------------------------------------------------


def _ceil_quarter(length: int) -> int:
    return math.ceil(length / 4) if length > 0 else 0


def serialized_text(content: Content) -> str:
    """Text the model will read for this content: text, tool results, tool_use JSON."""
    if isinstance(content, str):
        return content
    chunks: list[str] = []
    for part in content:
        if isinstance(part, TextPart):
            chunks.append(part.text)
        elif isinstance(part, ToolResultPart):
            chunks.append(serialized_text(part.content))
        elif isinstance(part, ToolUsePart):
            chunks.append(json.dumps({"id": part.id, "name": part.name, "input": part.input}, default=str))
    return "".join(chunks)


def estimate_message_tokens(message: Message) -> int:
    tokens = _ceil_quarter(len(serialized_text(message.content)))
    tokens += IMAGE_TOKENS * image_count(message.content)
    if message.role == Role.ASSISTANT and message.tool_calls:
        tokens += _ceil_quarter(len(json.dumps([c.to_dict() for c in message.tool_calls], default=str)))
    if message.thinking:
        tokens += _ceil_quarter(len(message.thinking))
    return tokens


@dataclass
class ContextEstimate:
    tokens: int
    usage_tokens: int = 0
    trailing_tokens: int = 0
    last_usage_index: int = -1


def estimate_context_tokens(history: Sequence[Message]) -> ContextEstimate:
    """Anchor on the last provider-reported usage, estimate what came after.

    Without any usage report the estimate is the sum over the whole history.
    """
    for i in range(len(history) - 1, -1, -1):
        msg = history[i]
        if msg.role == Role.ASSISTANT and msg.usage is not None and msg.usage.total_tokens >= 0:
            trailing = sum(estimate_message_tokens(m) for m in history[i + 1 :])
            return ContextEstimate(
                tokens=msg.usage.total_tokens + trailing,
                usage_tokens=msg.usage.total_tokens,
                trailing_tokens=trailing,
                last_usage_index=i,
            )
    naive = sum(estimate_message_tokens(m) for m in history)
    return ContextEstimate(tokens=naive, trailing_tokens=naive)


def should_compact(tokens: int, limit: int, settings: CompactionSettings) -> bool:
    """Hard headroom reservation: compact once fewer than reserve_tokens remain."""
    return settings.enabled and tokens > limit - settings.reserve_tokens


# ------------------------------------------------------------------
# Cut points
# ------------------------------------------------------------------


def is_valid_cut_point(message: Message) -> bool:
    """A cut may not land on a tool result, or the pair would be orphaned."""
    if message.role == Role.TOOL:
        return False
    return not (message.role == Role.USER and message.tool_results())


def find_cut_point(history: Sequence[Message], start_index: int, keep_recent_tokens: int) -> int:
    """Index splitting summarized (before) from preserved (at/after) messages.

    Walks backwards until keep_recent_tokens are accumulated, then moves
    forward to the first valid cut point. If there is none, walks backward
    past the run of tool results instead. Returns start_index when the
    whole history fits.
    """
    accumulated = 0
    boundary: int | None = None
    for i in range(len(history) - 1, start_index - 1, -1):
        accumulated += estimate_message_tokens(history[i])
        if accumulated >= keep_recent_tokens:
            boundary = i
            break
    if boundary is None:
        return start_index

    for j in range(boundary, len(history)):
        if is_valid_cut_point(history[j]):
            return j

    j = boundary
    while j > start_index and not is_valid_cut_point(history[j]):
        j -= 1
    return j


def build_summary_message(summary: str, trimmed_count: int, source: str = "auto") -> Message:
    return Message.system(summary.strip(), kind="summary", summary_of_count=trimmed_count, source=source)


# ------------------------------------------------------------------
# Conversation Compactor
# ------------------------------------------------------------------


@dataclass
class CompactionResult:
    compacted: list[Message]
    summary_message: Message
    trimmed_count: int
    preserved_count: int
    tokens_before: int
    fallback: bool = False

    @property
    def summary(self) -> str:
        return self.summary_message.text


class ContextCompactor:
    """Manages tool result pruning (Layer 1) and history compaction (Layer 2)."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def settings(self) -> CompactionSettings:
        return self._settings.compaction

    # ------------------------------------------------------------------
    # Layer 1: Tool Output Pruning
    # ------------------------------------------------------------------

    def prune_tool_results(self, messages: Sequence[Message]) -> list[Message]:
        return prune_tool_results(messages, self._settings)

    # ------------------------------------------------------------------
    # Layer 2: History Compaction
    # ------------------------------------------------------------------

    async def maybe_compact(
        self,
        history: Sequence[Message],
        summarizer: Summarizer,
        *,
        context_limit: int | None = None,
        high_water: int = 0,
    ) -> CompactionResult | None:
        """Compact when the larger of the estimate and the usage high-water mark crosses the limit."""
        limit = context_limit or self._settings.context_limit
        estimate = estimate_context_tokens(history)
        tokens = max(estimate.tokens, high_water)
        if not should_compact(tokens, limit, self.settings):
            return None
        logger.info(
            "Context at ~%d tokens (estimate=%d, high-water=%d, limit=%d) - compacting",
            tokens,
            estimate.tokens,
            high_water,
            limit,
        )
        return await self.compact(history, summarizer, tokens_before=tokens)

    async def compact(
        self,
        history: Sequence[Message],
        summarizer: Summarizer,
        *,
        tokens_before: int = 0,
    ) -> CompactionResult | None:
        """Replace history[:cut] with one summary message.

        Returns None when no safe cut point leaves anything to summarize.
        """
        history = list(history)
        start = 1 if history and history[0].is_summary else 0
        cut = find_cut_point(history, start, self.settings.keep_recent_tokens)
        if cut <= start:
            logger.info("Compaction skipped: no safe cut point beyond index %d", start)
            return None

        previous = history[0].text if start else None
        started = time.monotonic()
        fallback = False
        try:
            summary = await summarizer.summarize(history[start:cut], previous)
            if not self._validate_summary(summary):
                raise ValueError("Summary failed validation")
        except Exception as e:
            logger.error("Compaction failed: %s - falling back to truncation", e)
            notice = TRUNCATION_NOTICE.format(count=cut - start)
            summary = f"{previous}\n\n{notice}" if previous else notice
            fallback = True

        summary_message = build_summary_message(summary, trimmed_count=cut - start)
        preserved = history[cut:]
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Compacted history: %d messages -> %d + summary (%d chars, %d ms)",
            len(history),
            len(preserved),
            len(summary),
            duration_ms,
        )
        return CompactionResult(
            compacted=[summary_message, *preserved],
            summary_message=summary_message,
            trimmed_count=cut - start,
            preserved_count=len(preserved),
            tokens_before=tokens_before,
            fallback=fallback,
        )

    @staticmethod
    def _validate_summary(summary: str) -> bool:
        """Length check only; a bad summary falls back to truncation."""
        if not summary or len(summary.strip()) < MIN_SUMMARY_CHARS:
            logger.warning("Summary too short (%d chars)", len((summary or "").strip()))
            return False
        return True


# ------------------------------------------------------------------
# Tool output pruning
# ------------------------------------------------------------------


def prune_tool_results(messages: Sequence[Message], settings: Settings) -> list[Message]:
    """Shrink old tool outputs in a derived copy of the history.

    Soft-trim keeps head + tail of oversized results; hard-clear replaces
    very old results with a placeholder. The last keep_last_tool_results
    results are protected and image content is never touched.
    """
    out = list(messages)
    if not settings.tool_pruning_enabled:
        return out

    tool_indices = [i for i, msg in enumerate(out) if msg.tool_results()]
    if not tool_indices:
        return out

    keep = settings.keep_last_tool_results
    protected = set(tool_indices[-keep:]) if keep > 0 else set()
    head, tail = settings.tool_soft_trim_head, settings.tool_soft_trim_tail

    def soft_trim(text: str) -> str:
        if len(text) <= settings.tool_soft_trim_chars:
            return text
        return (
            f"{text[:head]}\n\n"
            f"--- trimmed (kept {head} head + {tail} tail of {len(text)} chars) ---\n\n"
            f"{text[-tail:]}"
        )

    soft_trimmed = 0
    hard_cleared = 0
    for pos, idx in enumerate(tool_indices):
        if idx in protected:
            continue
        age = len(tool_indices) - pos
        if age > settings.tool_hard_clear_after:
            pruned = _rewrite_results(out[idx], lambda _text: _TOOL_OUTPUT_CLEARED)
            hard_cleared += pruned is not out[idx]
        else:
            pruned = _rewrite_results(out[idx], soft_trim)
            soft_trimmed += pruned is not out[idx]
        out[idx] = pruned

    if soft_trimmed or hard_cleared:
        logger.info(
            "Pruned tool results: soft-trimmed=%d, hard-cleared=%d (total tool msgs=%d, protected=%d)",
            soft_trimmed,
            hard_cleared,
            len(tool_indices),
            len(protected),
        )
    return out


def _rewrite_results(msg: Message, fn) -> Message:
    """Apply fn to the text of each string tool result; the original if nothing changed."""
    if msg.role == Role.TOOL and isinstance(msg.content, str):
        new_text = fn(msg.content)
        return msg if new_text == msg.content else replace(msg, content=new_text)
    if isinstance(msg.content, str):
        return msg

    changed = False
    parts = []
    for part in msg.content:
        if isinstance(part, ToolResultPart) and isinstance(part.content, str):
            new_text = fn(part.content)
            if new_text != part.content:
                part = replace(part, content=new_text)
                changed = True
        parts.append(part)
    return replace(msg, content=parts) if changed else msg


# ------------------------------------------------------------------
# LLM summarizer
# ------------------------------------------------------------------


class LLMSummarizer:
    """Summarizes through the provider client with a fixed prompt."""

    def __init__(self, client: ProviderClient, settings: Settings) -> None:
        self._client = client
        self._settings = settings

    async def summarize(self, messages: Sequence[Message], previous_summary: str | None = None) -> str:
        if previous_summary:
            system = UPDATE_SYSTEM_PROMPT
            user_content = (
                f"## Existing Summary\n\n{previous_summary}\n\n"
                f"## New Conversation\n\n{serialize_for_summary(messages)}"
            )
        else:
            system = SUMMARY_SYSTEM_PROMPT
            user_content = serialize_for_summary(messages)

        response = await self._client.complete(
            [Message.user(user_content)],
            tools=None,
            system_prompt=system,
            temperature=self._settings.summary_temperature,
            max_tokens=self._settings.summary_max_tokens,
        )
        return response.message.text.strip()


def serialize_for_summary(messages: Sequence[Message], max_result_chars: int = 2000) -> str:
    """Render messages as readable text, so the summary call carries no tool protocol."""
    lines = []
    for msg in messages:
        if msg.role == Role.TOOL:
            text = serialized_text(msg.content)[:max_result_chars]
            lines.append(f"**Tool result ({msg.name or msg.tool_call_id}):** {text}")
            continue
        role = msg.role.value.capitalize()
        body = msg.text
        for result in msg.tool_results():
            body += f"\n[tool result {result.tool_call_id}] {serialized_text(result.content)[:max_result_chars]}"
        for call in msg.all_tool_calls():
            body += f"\n[called {call.name} {json.dumps(call.args, default=str)}]"
        lines.append(f"**{role}:** {body.strip()}")
    return "\n\n".join(lines)
