"""Streaming chat client -- drives one exchange over the chat API.

Each ``start()`` spawns an ``Exchange``: an asyncio task that posts the
request with httpx, decodes the streamed body, runs any tool calls the
model asked for and posts continuation requests until the model answers
without tools. Output flows to the caller through an async iterator of
``ChatEvent``s ending in exactly one ``complete`` or ``error``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import httpx

from chatloop.api import payloads
from chatloop.api.decoder import INTERPRETERS, Interpreter, StreamDecoder, StreamEnded, TextDelta
from chatloop.api.tools import ToolDispatcher, ToolResultCache
from chatloop.config import Settings
from chatloop.errors import (
    ApiStatusError,
    ChatLoopError,
    StreamIdleTimeoutError,
    ToolLoopExceededError,
    classify_error,
)
from chatloop.schemas import (
    ChatEvent,
    ChatEventType,
    ChatTurn,
    PendingToolCall,
    ToolDefinition,
    ToolResult,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WireFormat:
    """Request builders and stream interpreter for one API generation."""

    name: str
    build_initial: Callable[..., dict[str, Any]]
    build_continuation: Callable[..., dict[str, Any]]
    interpreter: Interpreter


WIRE_FORMATS: dict[str, WireFormat] = {
    "v2": WireFormat(
        name="v2",
        build_initial=payloads.build_initial_request,
        build_continuation=payloads.build_continuation_request,
        interpreter=INTERPRETERS["v2"],
    ),
    "v1": WireFormat(
        name="v1",
        build_initial=payloads.build_initial_request_v1,
        build_continuation=payloads.build_continuation_request_v1,
        interpreter=INTERPRETERS["v1"],
    ),
}


class ExchangeState(StrEnum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    TOOL_DISPATCH = "tool_dispatch"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TERMINAL_STATES = frozenset({
    ExchangeState.COMPLETED,
    ExchangeState.FAILED,
    ExchangeState.CANCELLED,
})


class Exchange:
    """One start() invocation, possibly spanning several HTTP requests.

    Iterate it to receive events. The task is the cancellation token:
    cancelling it aborts the in-flight request or body read.
    """

    def __init__(
        self,
        client: StreamingChatClient,
        history: Sequence[ChatTurn],
        tools: Sequence[ToolDefinition],
        documents: Sequence[Any] | None = None,
    ) -> None:
        self._client = client
        self._history = list(history)
        self._tools = list(tools)
        self._documents = documents
        self._queue: asyncio.Queue[ChatEvent] = asyncio.Queue()
        self._text_parts: list[str] = []
        self.state = ExchangeState.IDLE
        self.rounds = 0
        self._task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Caller side
    # ------------------------------------------------------------------

    @property
    def done(self) -> bool:
        return self.state in _TERMINAL_STATES

    @property
    def text(self) -> str:
        """All text delivered to the output queue so far."""
        return "".join(self._text_parts)

    def __aiter__(self) -> AsyncIterator[ChatEvent]:
        return self.events()

    async def events(self) -> AsyncIterator[ChatEvent]:
        """Yield events until the terminal complete/error event."""
        try:
            while True:
                event = await self._queue.get()
                yield event
                if event.is_terminal:
                    return
        finally:
            # Consumer walked away early
            if not self.done:
                self.cancel()

    async def collect(self) -> str:
        """Drain the exchange and return the full text; raise on error."""
        parts = []
        async for event in self:
            event.raise_for_error()
            parts.append(event.text)
        return "".join(parts)

    def cancel(self) -> None:
        """Abort the exchange; the caller sees a single ``complete``.

        Events queued but not yet consumed are dropped. No-op once the
        exchange reached a terminal state.
        """
        if self.done:
            return
        self.state = ExchangeState.CANCELLED
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(ChatEvent.complete())
        if self._task is not None:
            self._task.cancel()
        # The task may be cancelled before it ever runs _run's finally
        self._client._release(self)
        logger.info("Exchange cancelled after %d continuation rounds", self.rounds)

    # ------------------------------------------------------------------
    # Task side
    # ------------------------------------------------------------------

    def _launch(self) -> None:
        self._task = asyncio.create_task(self._run(), name="chat-exchange")

    def _emit(self, event: ChatEvent) -> None:
        if self.done:
            return
        if event.type is ChatEventType.TEXT:
            self._text_parts.append(event.text)
        self._queue.put_nowait(event)

    def _finish(self, state: ExchangeState, event: ChatEvent) -> None:
        if self.done:
            return
        self._emit(event)
        self.state = state

    async def _run(self) -> None:
        try:
            await self._drive()
        except asyncio.CancelledError:
            # No-op when cancel() already emitted the terminal event
            self._finish(ExchangeState.CANCELLED, ChatEvent.complete())
            raise
        except Exception as e:
            error = classify_error(e, logger)
            self._finish(ExchangeState.FAILED, ChatEvent.failed(error))
        finally:
            self._client._release(self)

    async def _drive(self) -> None:
        client = self._client
        wire = client.wire_format
        body = wire.build_initial(
            self._history,
            self._tools,
            model=client.settings.model,
            documents=self._documents,
            temperature=client.settings.temperature,
        )

        max_rounds = client.settings.max_tool_rounds
        while True:
            ended = await self._stream(body)
            if not ended.tool_calls:
                self._finish(ExchangeState.COMPLETED, ChatEvent.complete())
                logger.info("Exchange completed (%d continuation rounds)", self.rounds)
                return

            if self.rounds >= max_rounds:
                raise ToolLoopExceededError(max_rounds)

            self.state = ExchangeState.TOOL_DISPATCH
            logger.info(
                "Dispatching %d tool call(s): %s",
                len(ended.tool_calls),
                ", ".join(call.name for call in ended.tool_calls),
            )
            results = await client._run_tools(ended.tool_calls, self._tools)

            body = wire.build_continuation(body, ended, results)
            self.rounds += 1

    async def _stream(self, body: dict[str, Any]) -> StreamEnded:
        """Send one request and decode its body until the stream ends."""
        client = self._client
        decoder = StreamDecoder(client.wire_format.interpreter)
        idle_timeout = client.settings.idle_read_timeout

        self.state = ExchangeState.SENDING
        async with client.http.stream("POST", client.settings.api_url, json=body) as response:
            if not response.is_success:
                error_body = await response.aread()
                raise ApiStatusError(
                    response.status_code,
                    error_body.decode("utf-8", errors="replace")[:2000],
                )

            self.state = ExchangeState.STREAMING
            chunks = response.aiter_bytes()
            try:
                while True:
                    try:
                        chunk = await asyncio.wait_for(anext(chunks), timeout=idle_timeout)
                    except StopAsyncIteration:
                        break
                    except TimeoutError:
                        raise StreamIdleTimeoutError(idle_timeout) from None

                    for event in decoder.feed(chunk):
                        if isinstance(event, TextDelta):
                            self._emit(ChatEvent.text_delta(event.text))
                        elif isinstance(event, StreamEnded):
                            # Terminal event: ignore any further bytes
                            return event
            finally:
                await chunks.aclose()

        for event in decoder.finish():
            if isinstance(event, TextDelta):
                self._emit(ChatEvent.text_delta(event.text))
            elif isinstance(event, StreamEnded):
                return event
        raise ChatLoopError("Stream decoder finished without a terminal event")


class StreamingChatClient:
    """Chat client owning at most one live Exchange.

    Uses a single httpx.AsyncClient for every request and keeps one
    ToolResultCache for its whole lifetime.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        http: httpx.AsyncClient | None = None,
        cache: ToolResultCache | None = None,
    ) -> None:
        self.settings = settings
        self.wire_format = WIRE_FORMATS[settings.wire_format]
        self.dispatcher = ToolDispatcher(cache)
        self._exchange: Exchange | None = None
        self._background: set[asyncio.Future] = set()

        if not settings.api_key:
            logger.warning("COHERE_API_KEY is not set -- API calls will fail")

        headers = {
            "authorization": f"Bearer {settings.api_key}",
            "content-type": "application/json",
            "accept": "application/json",
        }
        if http is None:
            timeout = httpx.Timeout(
                connect=settings.api_timeout_connect,
                read=settings.api_timeout_read,
                write=10.0,
                pool=10.0,
            )
            http = httpx.AsyncClient(headers=headers, timeout=timeout)
            self._owns_http = True
        else:
            http.headers.update(headers)
            self._owns_http = False
        self.http = http

    @property
    def cache(self) -> ToolResultCache:
        return self.dispatcher.cache

    @property
    def active(self) -> Exchange | None:
        return self._exchange

    def start(
        self,
        history: Sequence[ChatTurn],
        tools: Sequence[ToolDefinition] = (),
        *,
        documents: Sequence[Any] | None = None,
    ) -> Exchange:
        """Begin a new exchange, cancelling any exchange still in flight.

        Must be called from a running event loop.
        """
        self.cancel()
        exchange = Exchange(self, history, tools, documents)
        self._exchange = exchange
        logger.info(
            "Starting exchange (%d turns, %d tools, wire=%s)",
            len(exchange._history),
            len(exchange._tools),
            self.wire_format.name,
        )
        exchange._launch()
        return exchange

    def cancel(self) -> None:
        """Stop the active exchange, if any. Idempotent."""
        exchange, self._exchange = self._exchange, None
        if exchange is not None:
            exchange.cancel()

    def _release(self, exchange: Exchange) -> None:
        if self._exchange is exchange:
            self._exchange = None

    async def _run_tools(
        self,
        calls: Sequence[PendingToolCall],
        tools: Sequence[ToolDefinition],
    ) -> list[ToolResult]:
        """Dispatch a tool round shielded from exchange cancellation.

        A cancelled exchange stops waiting, but handlers already running
        finish in the background and their results are dropped.
        """
        future = asyncio.ensure_future(self.dispatcher.dispatch_all(calls, tools))
        self._background.add(future)
        future.add_done_callback(self._background.discard)
        return await asyncio.shield(future)

    # --- lifecycle ---------------------------------------------------------
    async def aclose(self) -> None:
        """Cancel the active exchange and close the owned HTTP client."""
        self.cancel()
        if self._owns_http:
            await self.http.aclose()

    async def __aenter__(self) -> StreamingChatClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
