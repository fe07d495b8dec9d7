"""Tests for Event serialization and the EventBus."""

from __future__ import annotations

import logging

import pytest

from tether.config import Settings
from tether.events import EVENT_TYPES, Event, EventBus
from tether.main import _log_event, create_components


def _make_event(event_type: str = "assistant_final", data: dict | None = None, session_id: str = "sess-1") -> Event:
    return Event(type=event_type, session_id=session_id, data=data or {})


class TestEvent:
    def test_to_dict_is_flat(self):
        event = _make_event(data={"content": "hi", "usage": {"total_tokens": 3}})
        d = event.to_dict()
        assert d["type"] == "assistant_final"
        assert d["session_id"] == "sess-1"
        assert d["content"] == "hi"
        assert d["usage"] == {"total_tokens": 3}
        assert isinstance(d["timestamp"], float)

    def test_known_types(self):
        assert {"assistant_stream_delta", "run_error", "plan_update", "subagent_complete"} <= EVENT_TYPES


class TestEventBus:
    @pytest.mark.asyncio
    async def test_observer_receives_event(self):
        bus = EventBus()
        received = []

        async def handler(event):
            received.append(event)

        bus.subscribe("run_error", handler)
        await bus.start()
        bus.publish(_make_event("run_error"))
        await bus.stop()

        assert [e.type for e in received] == ["run_error"]

    @pytest.mark.asyncio
    async def test_wildcard_and_unmatched(self):
        bus = EventBus()
        typed, wildcard = [], []

        async def on_typed(event):
            typed.append(event.type)

        async def on_any(event):
            wildcard.append(event.type)

        bus.subscribe("plan_update", on_typed)
        bus.subscribe("*", on_any)
        await bus.start()
        bus.publish(_make_event("plan_update"))
        bus.publish(_make_event("assistant_final"))
        await bus.stop()

        assert typed == ["plan_update"]
        assert wildcard == ["plan_update", "assistant_final"]

    @pytest.mark.asyncio
    async def test_failing_observer_isolated(self):
        bus = EventBus()
        received = []

        async def broken(event):
            raise RuntimeError("observer bug")

        async def healthy(event):
            received.append(event)

        bus.subscribe("run_error", broken)
        bus.subscribe("run_error", healthy)
        await bus.start()
        bus.publish(_make_event("run_error"))
        await bus.stop()

        assert len(received) == 1

    def test_unknown_event_type_rejected(self):
        async def handler(event):
            pass

        with pytest.raises(ValueError):
            EventBus().subscribe("tool_started", handler)

    @pytest.mark.asyncio
    async def test_queue_full_drops(self):
        bus = EventBus(max_queue=1)
        bus.publish(_make_event())
        bus.publish(_make_event())
        assert bus.pending == 1

    @pytest.mark.asyncio
    async def test_stop_drains_queue(self):
        bus = EventBus()
        received = []

        async def handler(event):
            received.append(event)

        bus.subscribe("assistant_final", handler)
        bus.publish(_make_event())
        bus.publish(_make_event())
        await bus.stop()

        assert len(received) == 2
        assert bus.pending == 0


class TestLoggingHandler:
    @pytest.mark.asyncio
    async def test_run_error_logged(self, caplog):
        with caplog.at_level(logging.WARNING, logger="tether.main"):
            await _log_event(_make_event("run_error", {"message": "API error 500"}))
        assert "API error 500" in caplog.text

    def test_components_wire_bus(self):
        components = create_components(Settings(api_key="k"))
        assert components["bus"] is not None
        assert components["runner"] is not None

    def test_bus_disabled(self):
        components = create_components(Settings(api_key="k", event_bus_enabled=False))
        assert components["bus"] is None
