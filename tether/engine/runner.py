"""Turn loop: user message in, events out.

Drives one session turn at a time: send the history, stream the reply,
execute requested tools, repeat until the model stops calling tools or
max_steps is hit, then compact if the context has grown too large.

Sub-agents reuse the same loop with a private Session and no event
fan-out; their only visible effect is one subagent_complete event.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Sequence

from tether.config import Settings
from tether.engine.client import ConfigurationError, ProviderClient, ProviderError
from tether.engine.compaction import ContextCompactor, LLMSummarizer, Summarizer, prune_tool_results
from tether.engine.plan import PLAN_TOOL_DEFINITIONS, SET_PLAN, UPDATE_PLAN_STEP, RunPlan, apply_plan_tool, plan_prompt
from tether.engine.subagents import (
    SPAWN_SUBAGENT,
    SUBAGENT_COMPLETE,
    SUBAGENT_COMPLETE_DEFINITION,
    SUBAGENT_TOOL_DEFINITIONS,
    ChildRun,
    SubagentManager,
)
from tether.engine.tools import ToolExecutor, tool_error
from tether.events import (
    ASSISTANT_FINAL,
    ASSISTANT_STREAM_DELTA,
    ASSISTANT_STREAM_START,
    ASSISTANT_STREAM_STOP,
    CONTEXT_COMPACTED,
    PLAN_UPDATE,
    RUN_ERROR,
    TOOL_EXECUTION_RESULT,
    TOOL_EXECUTION_START,
    Event,
    EventBus,
)
from tether.events import SUBAGENT_COMPLETE as SUBAGENT_COMPLETE_EVENT
from tether.protocol.models import Content, ImagePart, Message, TextPart, ToolCall, Usage
from tether.protocol.streaming import ReasoningDelta, StreamDone, TextDelta
from tether.utils import new_id, safe_json_dumps

logger = logging.getLogger(__name__)

MAX_SESSIONS = 100

QUIT_PHRASES: tuple[str, ...] = (
    "please try again",
    "i could not produce a final summary",
    "i could not produce a final response",
    "unable to produce a final summary",
    "unable to provide a final response",
)

FALLBACK_FINAL_TEXT = (
    "I completed the requested actions but could not produce a final summary. Please try again."
)
SCREENSHOT_CAPTURED = "Screenshot captured successfully."
SCREENSHOT_OMITTED = "Screenshot captured successfully. (Image data not included)"
FINAL_RESPONSE_NUDGE = (
    "You have reached the maximum number of tool steps for this turn. Do not call any more "
    "tools. Provide a final response summarizing what you did and what you found."
)


def is_valid_final_response(
    text: str | None,
    allow_empty: bool = False,
    quit_phrases: Sequence[str] = QUIT_PHRASES,
) -> bool:
    """False for give-up phrases, and for empty text unless allow_empty."""
    stripped = (text or "").strip()
    if not stripped:
        return allow_empty
    lowered = stripped.lower()
    return not any(phrase in lowered for phrase in quit_phrases)


def tool_result_content(result: Any, send_images: bool = True) -> Content:
    """Content stored for a tool result.

    A successful result carrying a data:image/ dataUrl becomes JSON text plus
    an ImagePart when send_images is set; otherwise the dataUrl is replaced
    by a short notice so base64 never reaches the model as text.
    """
    data_url = result.get("dataUrl") if isinstance(result, dict) else None
    if not isinstance(data_url, str) or not data_url:
        return safe_json_dumps(result)
    rest = {k: v for k, v in result.items() if k != "dataUrl"}
    if send_images and result.get("success") and data_url.startswith("data:image/"):
        rest.setdefault("message", SCREENSHOT_CAPTURED)
        return [TextPart(safe_json_dumps(rest)), ImagePart.from_url(data_url)]
    rest["message"] = SCREENSHOT_OMITTED
    return safe_json_dumps(rest)


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


@dataclass
class Session:
    """Everything one conversation owns. Lives in memory only."""

    id: str = field(default_factory=lambda: new_id("session"))
    history: list[Message] = field(default_factory=list)
    plan: RunPlan | None = None
    subagents: SubagentManager = field(default_factory=SubagentManager)
    usage: Usage = field(default_factory=Usage)
    high_water: int = 0  # largest total_tokens reported by one call since last compaction
    summary: str | None = None
    compaction_count: int = 0
    parent_id: str | None = None

    @property
    def is_child(self) -> bool:
        return self.parent_id is not None

    def record_usage(self, usage: Usage | None) -> None:
        if usage is None:
            return
        self.usage = self.usage + usage
        self.high_water = max(self.high_water, usage.total_tokens)

    def reset(self) -> None:
        self.history.clear()
        self.plan = None
        self.subagents.reset()
        self.usage = Usage()
        self.high_water = 0
        self.summary = None
        self.compaction_count = 0


@dataclass
class LoopConfig:
    system_prompt: str
    max_steps: int
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool = True


@dataclass
class TurnState:
    """Scratch state for one pass of the loop."""

    start_index: int
    last_message: Message | None = None
    had_tool_calls: bool = False
    usage: Usage = field(default_factory=Usage)
    completion: dict[str, Any] | None = None  # subagent_complete args, child loops only


# ---------------------------------------------------------------------------
# AgentRunner
# ---------------------------------------------------------------------------


class AgentRunner:
    """Runs turns for in-memory sessions against one provider client."""

    def __init__(
        self,
        settings: Settings,
        dispatcher: ToolExecutor,
        client: ProviderClient | None = None,
        summarizer: Summarizer | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._settings = settings
        self._dispatcher = dispatcher
        self._client = client or ProviderClient(settings)
        self._summarizer = summarizer or LLMSummarizer(self._client, settings)
        self._compactor = ContextCompactor(settings)
        self._bus = bus
        self._sessions: OrderedDict[str, Session] = OrderedDict()

    async def start(self) -> None:
        await self._client.start()

    async def close(self) -> None:
        await self._client.close()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def new_session(self, session_id: str | None = None) -> Session:
        return Session(
            id=session_id or new_id("session"),
            subagents=SubagentManager.from_settings(self._settings),
        )

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_or_create_session(self, session_id: str) -> Session:
        """Get existing or create new session with LRU eviction."""
        if session_id in self._sessions:
            self._sessions.move_to_end(session_id)
            return self._sessions[session_id]

        while len(self._sessions) >= MAX_SESSIONS:
            evicted, _ = self._sessions.popitem(last=False)
            logger.info("Evicted session %s", evicted)

        session = self.new_session(session_id)
        self._sessions[session_id] = session
        return session

    def reset_session(self, session_id: str) -> bool:
        """Clear a session's history, plan and counters. False if unknown."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.reset()
        logger.info("Reset session %s", session_id)
        return True

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def run_turn(self, session: Session, user_message: Content | Message) -> AsyncIterator[Event]:
        """Run one user turn, yielding events as they happen.

        Provider failures end the turn with a single run_error event. The
        history keeps whatever progress was made before the failure.
        """
        message = user_message if isinstance(user_message, Message) else Message.user(user_message)
        session.history.append(message)
        state = TurnState(start_index=len(session.history))
        config = LoopConfig(
            system_prompt=self._settings.system_prompt,
            max_steps=self._settings.max_steps,
            stream=self._settings.stream,
        )

        try:
            async for event in self._run_loop(session, state, config):
                yield event
        except (ProviderError, ConfigurationError) as e:
            logger.error("Turn failed for session %s: %s", session.id, e)
            yield await self._emit(session, RUN_ERROR, message=str(e), status=getattr(e, "status", None))
            return

        final = state.last_message or Message.assistant("")
        text = final.text
        if not is_valid_final_response(text, allow_empty=state.had_tool_calls):
            logger.warning("Replacing unusable final response for session %s: %r", session.id, text[:80])
            text = FALLBACK_FINAL_TEXT
            if session.history and session.history[-1] is final:
                session.history[-1] = replace(final, content=text)

        yield await self._emit(
            session,
            ASSISTANT_FINAL,
            content=text,
            thinking=final.thinking,
            usage=state.usage.to_dict(),
            response_messages=[m.to_dict() for m in session.history[state.start_index:]],
        )

        async for event in self._maybe_compact(session):
            yield event

    async def _maybe_compact(self, session: Session) -> AsyncIterator[Event]:
        result = await self._compactor.maybe_compact(session.history, self._summarizer, high_water=session.high_water)
        if result is None:
            return
        session.history = result.compacted
        session.summary = result.summary
        session.compaction_count += 1
        session.high_water = 0
        yield await self._emit(
            session,
            CONTEXT_COMPACTED,
            summary=result.summary,
            trimmed_count=result.trimmed_count,
            preserved_count=result.preserved_count,
            fallback=result.fallback,
            context_messages=[m.to_dict() for m in result.compacted],
        )

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run_loop(self, session: Session, state: TurnState, config: LoopConfig) -> AsyncIterator[Event]:
        tools = self._tool_definitions(session)
        for _ in range(config.max_steps):
            async for event in self._request(session, state, config, tools):
                yield event
            message = state.last_message
            session.history.append(message)

            calls = message.all_tool_calls()
            if not calls:
                return

            state.had_tool_calls = True
            for call in calls:
                async for event in self._execute_tool(session, state, call):
                    yield event
            if state.completion is not None:
                return
        else:
            logger.warning("Session %s reached max_steps=%d, requesting final response", session.id, config.max_steps)

        async for event in self._request(session, state, config, None, extra=[Message.user(FINAL_RESPONSE_NUDGE)]):
            yield event
        message = state.last_message
        if message.tool_calls:
            logger.info("Dropping %d tool call(s) from the final response", len(message.tool_calls))
            message = replace(message, tool_calls=[])
            state.last_message = message
        session.history.append(message)

    async def _request(
        self,
        session: Session,
        state: TurnState,
        config: LoopConfig,
        tools: list[dict[str, Any]] | None,
        extra: Sequence[Message] = (),
    ) -> AsyncIterator[Event]:
        """One provider call. Leaves the reply in state.last_message."""
        state.last_message = None
        history = prune_tool_results([*session.history, *extra], self._settings)
        system_prompt = self._system_prompt(session, config)
        kwargs = {"temperature": config.temperature, "max_tokens": config.max_tokens}

        if config.stream and self._client.supports_streaming:
            yield await self._emit(session, ASSISTANT_STREAM_START)
            error: Exception | None = None
            try:
                async for chunk in self._client.stream(history, tools, system_prompt, **kwargs):
                    if isinstance(chunk, TextDelta):
                        yield await self._emit(
                            session, ASSISTANT_STREAM_DELTA, channel="text", content=chunk.text, delta=chunk.delta
                        )
                    elif isinstance(chunk, ReasoningDelta):
                        yield await self._emit(session, ASSISTANT_STREAM_DELTA, channel="reasoning", content=chunk.text)
                    elif isinstance(chunk, StreamDone):
                        state.last_message = chunk.message
            except Exception as e:
                error = e
            yield await self._emit(session, ASSISTANT_STREAM_STOP)
            if error is not None:
                raise error
        else:
            response = await self._client.complete(history, tools, system_prompt, **kwargs)
            state.last_message = response.message

        if state.last_message is None:
            logger.warning("Provider stream ended without a message for session %s", session.id)
            state.last_message = Message.assistant("")
        usage = state.last_message.usage
        session.record_usage(usage)
        if usage is not None:
            state.usage = state.usage + usage

    def _system_prompt(self, session: Session, config: LoopConfig) -> str:
        if session.is_child:
            return config.system_prompt
        return f"{config.system_prompt}\n\n{plan_prompt(session.plan)}"

    def _tool_definitions(self, session: Session) -> list[dict[str, Any]]:
        tools = list(self._dispatcher.tool_definitions())
        if session.is_child:
            tools.append(SUBAGENT_COMPLETE_DEFINITION)
            return tools
        tools.extend(PLAN_TOOL_DEFINITIONS)
        if session.subagents.limit > 0:
            tools.extend(SUBAGENT_TOOL_DEFINITIONS)
        return tools

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def _execute_tool(self, session: Session, state: TurnState, call: ToolCall) -> AsyncIterator[Event]:
        """Run one tool call and append its result message to the history."""
        yield await self._emit(session, TOOL_EXECUTION_START, tool_call_id=call.id, name=call.name, args=call.args)
        started = time.monotonic()

        if call.name in (SET_PLAN, UPDATE_PLAN_STEP) and not session.is_child:
            session.plan, result = apply_plan_tool(session.plan, call.name, call.args)
            if result.get("success"):
                yield await self._emit(session, PLAN_UPDATE, plan=session.plan.model_dump())
        elif call.name == SPAWN_SUBAGENT and not session.is_child:
            result, outcome = await session.subagents.spawn(
                call.args, lambda prompt, seed: self._run_child(session, prompt, seed)
            )
            if outcome is not None:
                yield await self._emit(
                    session,
                    SUBAGENT_COMPLETE_EVENT,
                    id=outcome.id,
                    name=outcome.name,
                    success=outcome.success,
                    summary=outcome.summary,
                )
        elif call.name == SUBAGENT_COMPLETE and session.is_child:
            state.completion = dict(call.args)
            result = {"success": True}
        else:
            try:
                result = await self._dispatcher.execute(call.name, call.args)
            except Exception as e:
                logger.exception("Tool executor raised for %s", call.name)
                result = tool_error(f"Tool error: {e}")

        duration_ms = int((time.monotonic() - started) * 1000)
        is_error = isinstance(result, dict) and result.get("success") is False
        session.history.append(
            Message.tool_result(
                call.id,
                tool_result_content(result, self._settings.send_screenshots_as_images),
                name=call.name,
                is_error=is_error,
            )
        )
        logger.debug("Tool %s finished in %d ms (error=%s)", call.name, duration_ms, is_error)
        yield await self._emit(
            session,
            TOOL_EXECUTION_RESULT,
            tool_call_id=call.id,
            name=call.name,
            result=result,
            is_error=is_error,
            duration_ms=duration_ms,
        )

    async def _run_child(self, parent: Session, system_prompt: str, seed: list[Message]) -> ChildRun:
        """Run a sub-agent loop on a private session; its events go nowhere."""
        child = Session(
            id=new_id("child"),
            history=list(seed),
            subagents=SubagentManager(limit=0),
            parent_id=parent.id,
        )
        state = TurnState(start_index=len(child.history))
        config = LoopConfig(
            system_prompt=system_prompt,
            max_steps=self._settings.subagent_max_steps,
            temperature=self._settings.subagent_temperature,
            max_tokens=self._settings.subagent_max_tokens,
            stream=False,
        )
        async for _ in self._run_loop(child, state, config):
            pass
        text = state.last_message.text if state.last_message else ""
        return ChildRun(text=text, completion=state.completion)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _emit(self, session: Session, event_type: str, **data: Any) -> Event:
        event = Event(type=event_type, session_id=session.id, data=data)
        if self._bus is not None and not session.is_child:
            self._bus.publish(event)
        return event
