"""Provider HTTP client: adapter + httpx + retry escalation.

One ProviderClient per process. Each complete()/stream() call builds a
fresh RetryController, so repair levels never leak between requests.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Sequence

import httpx

from tether.config import Settings
from tether.engine.retry import RepairLevel, RetryController, is_retryable_status, is_tool_ordering_error
from tether.protocol.adapter import ParsedResponse, WireAdapter
from tether.protocol.anthropic_adapter import AnthropicAdapter
from tether.protocol.args import make_extractor
from tether.protocol.models import Message
from tether.protocol.openai_adapter import OpenAIAdapter
from tether.protocol.streaming import StreamError, StreamEvent

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    """Provider request failed terminally for this turn."""

    def __init__(self, message: str, status: int | None = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class TransportError(ProviderError):
    """Network failure or timeout that outlived the retry budget."""


class ConfigurationError(RuntimeError):
    """Missing credentials or an unusable provider setup."""


def adapter_for(settings: Settings) -> WireAdapter:
    """Wire adapter for the configured provider."""
    extractor = make_extractor(settings.implicit_tool_calls)
    if settings.provider == "anthropic":
        return AnthropicAdapter(settings.provider, extractor)
    if settings.provider in ("openai", "custom"):
        return OpenAIAdapter(settings.provider, extractor)
    raise ConfigurationError(f"Unknown provider: {settings.provider!r}")


def _error_message(status: int, body: str) -> str:
    return f"Provider API error ({status}): {body[:500]}"


class ProviderClient:
    """Sends canonical histories to the configured provider."""

    def __init__(
        self,
        settings: Settings,
        adapter: WireAdapter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self.adapter = adapter or adapter_for(settings)
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings
        if not (settings.api_key or settings.auth_token) and settings.provider != "custom":
            logger.warning("No API key configured for provider %s -- API calls will fail", settings.provider)

        timeout = httpx.Timeout(
            connect=settings.connect_timeout,
            read=settings.request_timeout,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self._http = httpx.AsyncClient(
            headers=self.adapter.headers(settings.api_key, settings.auth_token),
            timeout=timeout,
            limits=limits,
            transport=self._transport,
        )
        logger.info("httpx client initialized (provider: %s, endpoint: %s)", settings.provider, self.url)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    @property
    def url(self) -> str:
        return self.adapter.endpoint(self._settings.base_url)

    @property
    def supports_streaming(self) -> bool:
        return self.adapter.supports_streaming

    def _ensure_ready(self) -> httpx.AsyncClient:
        settings = self._settings
        if not (settings.api_key or settings.auth_token) and settings.provider != "custom":
            raise ConfigurationError(f"No API key configured for provider '{settings.provider}'")
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    def _build_payload(
        self,
        history: Sequence[Message],
        tools: list[dict[str, Any]] | None,
        system_prompt: str | None,
        level: RepairLevel,
        stream: bool,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        request = self.adapter.build_request(
            history,
            tools,
            system_prompt,
            model=self._settings.model,
            temperature=self._settings.temperature if temperature is None else temperature,
            max_tokens=max_tokens or self._settings.max_tokens,
            stream=stream,
            level=level,
        )
        return request.payload

    async def _handle_failure(self, controller: RetryController, error: ProviderError) -> None:
        """Decide what a failed attempt means: escalate, back off, or raise."""
        status = error.status
        if status is not None and is_tool_ordering_error(status, error.body):
            if controller.on_ordering_error() == RepairLevel.GIVE_UP:
                raise error
            return
        if status is None or is_retryable_status(status):
            delay = controller.on_transport_error()
            if delay is None:
                raise error
            logger.warning(
                "Provider request failed (%s), retry %d/%d in %.1fs",
                error,
                controller.transport_failures,
                controller.max_transport_retries,
                delay,
            )
            await asyncio.sleep(delay)
            return
        raise error

    async def complete(
        self,
        history: Sequence[Message],
        tools: list[dict[str, Any]] | None = None,
        system_prompt: str | None = None,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ParsedResponse:
        """Non-streaming request. Raises ProviderError/TransportError when terminal."""
        http = self._ensure_ready()
        controller = RetryController(self._settings.transport_retries, self._settings.retry_delay)

        while True:
            payload = self._build_payload(history, tools, system_prompt, controller.level, False, temperature, max_tokens)
            controller.record_attempt()
            try:
                response = await http.post(self.url, json=payload)
            except httpx.TransportError as e:
                await self._handle_failure(controller, TransportError(f"API request failed: {e!r}"))
                continue

            if response.status_code >= 400:
                body = response.text
                await self._handle_failure(
                    controller, ProviderError(_error_message(response.status_code, body), response.status_code, body)
                )
                continue

            try:
                data = response.json()
            except ValueError:
                logger.warning("Provider returned a non-JSON body: %s", response.text[:200])
                data = {}
            if controller.ordering_failures:
                logger.info(
                    "Request succeeded after %d ordering repair(s) at level %s",
                    controller.ordering_failures,
                    controller.level.name,
                )
            return self.adapter.parse_response(data)

    async def stream(
        self,
        history: Sequence[Message],
        tools: list[dict[str, Any]] | None = None,
        system_prompt: str | None = None,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Streaming request yielding aggregator events.

        A transport failure mid-stream restarts the request from scratch;
        text deltas are cumulative, so consumers simply re-render.
        """
        http = self._ensure_ready()
        controller = RetryController(self._settings.transport_retries, self._settings.retry_delay)

        while True:
            payload = self._build_payload(history, tools, system_prompt, controller.level, True, temperature, max_tokens)
            aggregator = self.adapter.new_stream_aggregator()
            controller.record_attempt()
            error: ProviderError | None = None
            try:
                async with http.stream("POST", self.url, json=payload) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        error = ProviderError(_error_message(response.status_code, body), response.status_code, body)
                    else:
                        async for event in aggregator.consume(response.aiter_lines()):
                            yield event
                        return
            except httpx.TransportError as e:
                error = TransportError(f"Stream failed: {e!r}")
            except StreamError as e:
                error = TransportError(f"Provider stream error: {e}")

            await self._handle_failure(controller, error)
