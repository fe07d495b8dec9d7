"""Tether entry point.

Settings -> ToolDispatcher -> ProviderClient -> AgentRunner -> App -> Uvicorn

Component lifecycle runs in the Starlette lifespan so the httpx client
lives on the same event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from tether.api.rest import create_app
from tether.config import Settings
from tether.engine.client import ProviderClient
from tether.engine.runner import AgentRunner
from tether.engine.tools import ToolDispatcher
from tether.events import CONTEXT_COMPACTED, RUN_ERROR, SUBAGENT_COMPLETE, Event, EventBus

logger = logging.getLogger(__name__)


async def _log_event(event: Event) -> None:
    if event.type == RUN_ERROR:
        logger.warning("[%s] run_error: %s", event.session_id, event.data.get("message"))
    elif event.type == CONTEXT_COMPACTED:
        logger.info(
            "[%s] context compacted: %s trimmed, %s preserved",
            event.session_id,
            event.data.get("trimmed_count"),
            event.data.get("preserved_count"),
        )
    else:
        logger.info("[%s] %s: %s", event.session_id, event.type, event.data.get("summary", "")[:120])


def create_components(settings: Settings, dispatcher: ToolDispatcher | None = None) -> dict:
    """Build all components in dependency order (nothing started yet)."""
    bus = None
    if settings.event_bus_enabled:
        bus = EventBus()
        for event_type in (RUN_ERROR, CONTEXT_COMPACTED, SUBAGENT_COMPLETE):
            bus.subscribe(event_type, _log_event)

    dispatcher = dispatcher or ToolDispatcher.from_settings(settings)
    client = ProviderClient(settings)
    runner = AgentRunner(settings, dispatcher, client=client, bus=bus)
    return {"bus": bus, "dispatcher": dispatcher, "client": client, "runner": runner}


def build_app(settings: Settings, dispatcher: ToolDispatcher | None = None) -> Starlette:
    """Build the Starlette app; components start and stop with its lifespan."""
    components = create_components(settings, dispatcher)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        bus = components["bus"]
        if bus is not None:
            await bus.start()
        await components["runner"].start()
        app.state.components = components

        logger.info(
            "Tether started: provider=%s model=%s max_steps=%d",
            settings.provider,
            settings.model,
            settings.max_steps,
        )
        yield

        logger.info("Shutting down Tether...")
        await components["runner"].close()
        if bus is not None:
            await bus.stop()
        logger.info("Tether shutdown complete.")

    return create_app(runner=components["runner"], settings=settings, lifespan=lifespan)


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if not (settings.api_key or settings.auth_token) and settings.provider != "custom":
        logger.warning("No API key set for provider %s -- /chat endpoints will fail", settings.provider)

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
