"""REST API for Tether.

Endpoints:
  POST   /chat              - Run one turn, get the final response and its events
  POST   /chat/stream       - Run one turn, events as SSE frames
  DELETE /chat/{session_id} - Reset a session (history, plan, counters)
  GET    /health            - Health check
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any
from uuid import uuid4

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from tether.config import Settings
from tether.engine.runner import AgentRunner
from tether.events import ASSISTANT_FINAL, RUN_ERROR
from tether.protocol.models import normalize_content

logger = logging.getLogger(__name__)


def create_app(
    runner: AgentRunner,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    # One turn in flight per session
    locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def _parse_body(request: Request) -> tuple[dict[str, Any] | None, JSONResponse | None]:
        try:
            body = await request.json()
        except Exception:
            return None, JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict):
            return None, JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        message = normalize_content(body.get("message"))
        if not message or (isinstance(message, str) and not message.strip()):
            return None, JSONResponse({"error": "Missing required field: message"}, status_code=400)
        body["message"] = message
        return body, None

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Send a message, get a response."""
        body, error = await _parse_body(request)
        if error is not None:
            return error

        session_id = body.get("session_id") or str(uuid4())
        events: list[dict[str, Any]] = []
        final: dict[str, Any] | None = None
        failure: dict[str, Any] | None = None

        try:
            async with locks[session_id]:
                session = runner.get_or_create_session(session_id)
                async for event in runner.run_turn(session, body["message"]):
                    data = event.to_dict()
                    events.append(data)
                    if event.type == ASSISTANT_FINAL:
                        final = data
                    elif event.type == RUN_ERROR:
                        failure = data
        except Exception as e:
            logger.error("Chat error: %s", e)
            return JSONResponse({"error": str(e), "session_id": session_id}, status_code=500)

        if failure is not None:
            return JSONResponse(
                {"error": failure.get("message"), "session_id": session_id, "events": events},
                status_code=502,
            )
        return JSONResponse(
            {
                "response": final.get("content") if final else "",
                "session_id": session_id,
                "usage": final.get("usage") if final else None,
                "events": events,
            }
        )

    async def chat_stream(request: Request) -> StreamingResponse:
        """POST /chat/stream - SSE streaming chat."""
        body, error = await _parse_body(request)
        if error is not None:
            return error

        session_id = body.get("session_id") or str(uuid4())
        message = body["message"]

        async def event_generator():
            try:
                async with locks[session_id]:
                    session = runner.get_or_create_session(session_id)
                    async for event in runner.run_turn(session, message):
                        data = json.dumps(event.to_dict(), default=str)
                        yield f"data: {data}\n\n"
            except Exception as e:
                logger.error("Stream error: %s", e)
                error_data = json.dumps({"type": RUN_ERROR, "session_id": session_id, "message": str(e)})
                yield f"data: {error_data}\n\n"

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def end_chat(request: Request) -> JSONResponse:
        """DELETE /chat/{session_id} - Reset a conversation."""
        session_id = request.path_params["session_id"]
        async with locks[session_id]:
            found = runner.reset_session(session_id)
        if not found:
            return JSONResponse({"error": "Session not found", "session_id": session_id}, status_code=404)
        return JSONResponse({"status": "reset", "session_id": session_id})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        return JSONResponse({"status": "healthy", "provider": settings.provider, "model": settings.model})

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/chat/{session_id}", end_chat, methods=["DELETE"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
