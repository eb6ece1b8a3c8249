"""chatloop -- streaming chat-completion client with tool-call orchestration.

Public API:
    StreamingChatClient - start()/cancel() exchanges against the chat API
    Exchange            - async iterator of ChatEvents for one start()
    Settings            - Configuration (pydantic-settings, CHATLOOP_ prefix)

Schemas:
    ChatTurn, ToolDefinition, ToolResult, PendingToolCall, ChatEvent
"""

from chatloop.api.client import Exchange, ExchangeState, StreamingChatClient
from chatloop.api.tools import ToolDispatcher, ToolResultCache
from chatloop.config import Settings, configure_logging
from chatloop.errors import (
    ApiStatusError,
    ChatLoopError,
    StreamIdleTimeoutError,
    ToolLoopExceededError,
    TransportError,
)
from chatloop.schemas import (
    ChatEvent,
    ChatEventType,
    ChatTurn,
    PendingToolCall,
    Role,
    ToolDefinition,
    ToolResult,
)

__version__ = "0.1.0"

__all__ = [
    "StreamingChatClient",
    "Exchange",
    "ExchangeState",
    "ToolDispatcher",
    "ToolResultCache",
    "Settings",
    "configure_logging",
    "ApiStatusError",
    "ChatLoopError",
    "StreamIdleTimeoutError",
    "ToolLoopExceededError",
    "TransportError",
    "ChatEvent",
    "ChatEventType",
    "ChatTurn",
    "PendingToolCall",
    "Role",
    "ToolDefinition",
    "ToolResult",
]
