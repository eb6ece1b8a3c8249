"""Data contract between the chat client and its callers.

Conversation turns and tool results are pydantic DTOs because they are
serialized onto the wire. Tool definitions, pending tool calls and output
events are plain dataclasses: they carry callables or are mutated while a
stream is decoded.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Union

from pydantic import BaseModel

from chatloop.errors import ChatLoopError

ToolHandler = Callable[[Any], Union[Any, Awaitable[Any]]]


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ChatTurn(BaseModel):
    """One message of conversation history."""

    role: Role
    content: str
    tool_call_id: str | None = None

    def to_wire(self) -> dict[str, Any]:
        message: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_call_id is not None:
            message["tool_call_id"] = self.tool_call_id
        return message


class ToolResult(BaseModel):
    """Outcome of one tool call, content already JSON-serialized."""

    tool_call_id: str
    content: str


@dataclass(frozen=True)
class ToolDefinition:
    """A caller-supplied tool: wire schema plus the local handler."""

    name: str
    description: str = ""
    parameters: dict[str, Any] | None = None
    handler: ToolHandler | None = None


@dataclass
class PendingToolCall:
    """Tool call reassembled from stream deltas."""

    index: int
    id: str
    name: str
    arguments: str = ""


class ChatEventType(StrEnum):
    TEXT = "text"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class ChatEvent:
    """A single event delivered to the caller of ``StreamingChatClient.start``."""

    type: ChatEventType
    text: str = ""
    error: ChatLoopError | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type is not ChatEventType.TEXT

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error

    @classmethod
    def text_delta(cls, text: str) -> ChatEvent:
        return cls(type=ChatEventType.TEXT, text=text)

    @classmethod
    def complete(cls) -> ChatEvent:
        return cls(type=ChatEventType.COMPLETE)

    @classmethod
    def failed(cls, error: ChatLoopError) -> ChatEvent:
        return cls(type=ChatEventType.ERROR, text=str(error), error=error)
