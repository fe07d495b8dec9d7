"""Runtime events emitted to callers, plus an optional observer bus.

A turn yields Event objects to its caller (the REST layer, a CLI, tests).
The same events can be published to an EventBus so that observers such as
loggers see them without sitting on the turn's critical path.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

ASSISTANT_STREAM_START = "assistant_stream_start"
ASSISTANT_STREAM_DELTA = "assistant_stream_delta"
ASSISTANT_STREAM_STOP = "assistant_stream_stop"
ASSISTANT_FINAL = "assistant_final"
CONTEXT_COMPACTED = "context_compacted"
TOOL_EXECUTION_START = "tool_execution_start"
TOOL_EXECUTION_RESULT = "tool_execution_result"
PLAN_UPDATE = "plan_update"
SUBAGENT_COMPLETE = "subagent_complete"
RUN_ERROR = "run_error"

EVENT_TYPES = frozenset({
    ASSISTANT_STREAM_START,
    ASSISTANT_STREAM_DELTA,
    ASSISTANT_STREAM_STOP,
    ASSISTANT_FINAL,
    CONTEXT_COMPACTED,
    TOOL_EXECUTION_START,
    TOOL_EXECUTION_RESULT,
    PLAN_UPDATE,
    SUBAGENT_COMPLETE,
    RUN_ERROR,
})

ALL_EVENTS = "*"

Observer = Callable[["Event"], Awaitable[None]]


@dataclass
class Event:
    """One thing that happened during a turn."""

    type: str
    session_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        """Flat JSON-ready dict (used for SSE frames)."""
        return {
            "type": self.type,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            **self.data,
        }


class EventBus:
    """Fans events out to observers from a single worker task.

    publish() never blocks the turn: events land on a bounded queue and are
    dropped with a warning when it is full. Observers of one event run
    concurrently; one that raises is logged and the others still run.
    """

    def __init__(self, max_queue: int = 1000) -> None:
        self._observers: dict[str, list[Observer]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._worker: asyncio.Task | None = None

    def subscribe(self, event_type: str, observer: Observer) -> None:
        """Observe one event type, or every event with "*"."""
        if event_type != ALL_EVENTS and event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        self._observers[event_type].append(observer)
        logger.debug("Subscribed %s to %s", getattr(observer, "__qualname__", observer), event_type)

    def publish(self, event: Event) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Event queue full (%d), dropping %s for session %s",
                self._queue.maxsize,
                event.type,
                event.session_id,
            )

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._worker is not None:
            return
        self._worker = asyncio.create_task(self._run(), name="tether-event-bus")
        logger.info("Event bus started")

    async def stop(self, timeout: float = 5.0) -> None:
        """Deliver what is queued (up to timeout), then stop the worker."""
        if self._worker is None:
            await self._drain()
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Event bus stopping with %d undelivered events", self.pending)
        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None
        logger.info("Event bus stopped")

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _drain(self) -> None:
        while not self._queue.empty():
            event = self._queue.get_nowait()
            await self._deliver(event)
            self._queue.task_done()

    async def _deliver(self, event: Event) -> None:
        observers = [*self._observers.get(event.type, []), *self._observers.get(ALL_EVENTS, [])]
        if not observers:
            return
        results = await asyncio.gather(*(observer(event) for observer in observers), return_exceptions=True)
        for observer, result in zip(observers, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Observer %s failed on %s: %r",
                    getattr(observer, "__qualname__", observer),
                    event.type,
                    result,
                )
