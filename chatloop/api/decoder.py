"""Incremental decoder for the hybrid SSE/NDJSON chat stream.

Bytes go in through ``StreamDecoder.feed()``, typed events come out. The
decoder keeps the partial trailing line and any half-received UTF-8
character between calls, so the event sequence does not depend on how the
body was chunked.

Payload interpretation is pluggable: ``interpret_v2`` understands the
current ``type``-tagged events, ``interpret_v1`` the legacy ``event_type``
flavour.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Union

from chatloop.api.payloads import canonicalize_arguments
from chatloop.schemas import PendingToolCall

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStarted:
    index: int
    id: str
    name: str
    arguments: str = ""


@dataclass(frozen=True)
class ToolCallArgsDelta:
    index: int
    text: str


@dataclass(frozen=True)
class ToolPlanDelta:
    text: str


@dataclass(frozen=True)
class EndOfMessage:
    """Terminal payload as seen by an interpreter.

    ``keep_tool_calls`` is False for a bare stream-end, which carries no
    tool calls of its own.
    """

    message: dict[str, Any] | None = None
    keep_tool_calls: bool = True


@dataclass(frozen=True)
class StreamEnded:
    tool_calls: list[PendingToolCall] = field(default_factory=list)
    message: dict[str, Any] | None = None
    tool_plan: str = ""


WireEvent = Union[TextDelta, ToolCallStarted, ToolCallArgsDelta, ToolPlanDelta, EndOfMessage]
StreamEvent = Union[TextDelta, ToolCallStarted, ToolCallArgsDelta, ToolPlanDelta, StreamEnded]

Interpreter = Callable[[str | None, dict[str, Any]], list[WireEvent]]


def _dig(data: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else json.dumps(value)


# ---------------------------------------------------------------------------
# Interpreters
# ---------------------------------------------------------------------------


def interpret_v2(event_type: str | None, payload: dict[str, Any]) -> list[WireEvent]:
    """Map one current-generation payload to wire events."""
    index = payload.get("index", 0)

    if event_type in ("content-delta", "text-generation"):
        text = _dig(payload, "delta", "message", "content", "text") or payload.get("text")
        return [TextDelta(text)] if text else []

    if event_type == "tool-plan-delta":
        plan = _dig(payload, "delta", "message", "tool_plan")
        return [ToolPlanDelta(plan)] if plan else []

    if event_type == "tool-call-start":
        call = _dig(payload, "delta", "message", "tool_calls")
        if not isinstance(call, dict):
            return []
        function = call.get("function") or {}
        return [
            ToolCallStarted(
                index=index,
                id=call.get("id", ""),
                name=function.get("name", ""),
                arguments=_as_text(function.get("arguments")),
            )
        ]

    if event_type == "tool-call-delta":
        fragment = _dig(payload, "delta", "message", "tool_calls", "function", "arguments")
        return [ToolCallArgsDelta(index, _as_text(fragment))] if fragment else []

    if event_type == "message-end":
        return [EndOfMessage(message=payload.get("message"))]

    if event_type == "stream-end":
        return [EndOfMessage(keep_tool_calls=False)]

    # message-start, content-start, content-end, tool-call-end, citations...
    return []


def interpret_v1(event_type: str | None, payload: dict[str, Any]) -> list[WireEvent]:
    """Map one legacy ``event_type`` payload to wire events.

    Legacy tool calls carry no ids, so ``call_<index>`` is synthesized.
    """
    if event_type == "text-generation":
        text = payload.get("text")
        return [TextDelta(text)] if text else []

    if event_type == "tool-calls-chunk":
        delta = payload.get("tool_call_delta") or {}
        index = delta.get("index", 0)
        if delta.get("name"):
            return [
                ToolCallStarted(
                    index=index,
                    id=f"call_{index}",
                    name=delta["name"],
                    arguments=_as_text(delta.get("parameters")),
                )
            ]
        if delta.get("parameters"):
            return [ToolCallArgsDelta(index, _as_text(delta["parameters"]))]
        return []

    if event_type == "tool-calls-generation":
        return [
            ToolCallStarted(
                index=i,
                id=call.get("id") or f"call_{i}",
                name=call.get("name", ""),
                arguments=canonicalize_arguments(call.get("parameters")),
            )
            for i, call in enumerate(payload.get("tool_calls") or [])
        ]

    if event_type == "stream-end":
        return [EndOfMessage(message=payload.get("response") or payload)]

    return []


INTERPRETERS: dict[str, Interpreter] = {
    "v2": interpret_v2,
    "v1": interpret_v1,
}


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------


class StreamDecoder:
    """Line-buffered, chunking-independent decoder for one response body.

    Also owns the pending tool-call accumulator for the stream, keyed by
    the server-assigned index.
    """

    def __init__(self, interpreter: Interpreter = interpret_v2) -> None:
        self._interpret = interpreter
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._sse_event: str | None = None
        self._tool_calls: dict[int, PendingToolCall] = {}
        self._plan_parts: list[str] = []
        self.ended = False

    @property
    def tool_calls(self) -> list[PendingToolCall]:
        return [self._tool_calls[i] for i in sorted(self._tool_calls)]

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        """Decode a body chunk and return the events of all completed lines."""
        if self.ended:
            return []
        self._buffer += self._utf8.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return self._process_lines(lines)

    def finish(self) -> list[StreamEvent]:
        """Flush at end of input; always yields a StreamEnded if none was seen."""
        if self.ended:
            return []
        self._buffer += self._utf8.decode(b"", final=True)
        lines, self._buffer = [self._buffer], ""
        events = self._process_lines(lines)
        if not self.ended:
            events.append(self._end(EndOfMessage()))
        return events

    def _process_lines(self, lines: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for line in lines:
            events.extend(self._process_line(line))
            if self.ended:
                break
        return events

    def _process_line(self, line: str) -> list[StreamEvent]:
        line = line.strip()
        if not line:
            return []

        if line.startswith("event:"):
            self._sse_event = line[6:].strip()
            return []

        if line.startswith("data:"):
            line = line[5:].lstrip()
        if not line.startswith("{"):
            return []  # keep-alives, comments, [DONE]

        try:
            payload = json.loads(line)
        except ValueError as e:
            logger.warning("Skipping malformed stream line (%s): %.200s", e, line)
            return []

        # The last SSE event name applies until the next "event:" line
        event_type = payload.get("type") or payload.get("event_type") or self._sse_event
        events: list[StreamEvent] = []
        for wire_event in self._interpret(event_type, payload):
            event = self._apply(wire_event)
            if event is not None:
                events.append(event)
            if self.ended:
                break
        return events

    def _apply(self, event: WireEvent) -> StreamEvent | None:
        if isinstance(event, TextDelta):
            return event

        if isinstance(event, ToolCallStarted):
            self._tool_calls[event.index] = PendingToolCall(
                index=event.index,
                id=event.id,
                name=event.name,
                arguments=event.arguments,
            )
            return event

        if isinstance(event, ToolCallArgsDelta):
            call = self._tool_calls.get(event.index)
            if call is None:
                logger.debug("Dropping args delta for unknown tool call index %d", event.index)
                return None
            call.arguments += event.text
            return event

        if isinstance(event, ToolPlanDelta):
            self._plan_parts.append(event.text)
            return event

        if isinstance(event, EndOfMessage):
            return self._end(event)

        logger.debug("Ignoring unknown wire event %r", event)
        return None

    def _end(self, end: EndOfMessage) -> StreamEnded:
        self.ended = True
        return StreamEnded(
            tool_calls=self.tool_calls if end.keep_tool_calls else [],
            message=end.message,
            tool_plan="".join(self._plan_parts),
        )
