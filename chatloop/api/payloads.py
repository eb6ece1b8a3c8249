"""Request bodies for the initial call and every tool-result continuation.

Every builder is a pure function of its arguments: the client never adds
hidden state to a body, it only passes the previous body back in.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from chatloop.schemas import ChatTurn, PendingToolCall, Role, ToolDefinition, ToolResult

if TYPE_CHECKING:
    from chatloop.api.decoder import StreamEnded

EMPTY_PARAMETERS: dict[str, Any] = {"type": "object", "properties": {}, "required": []}

# JSON schema type -> legacy parameter_definitions type
_V1_TYPES = {
    "string": "str",
    "integer": "int",
    "number": "float",
    "boolean": "bool",
    "array": "list",
    "object": "dict",
}

_V1_ROLES = {
    Role.USER: "USER",
    Role.ASSISTANT: "CHATBOT",
    Role.SYSTEM: "SYSTEM",
    Role.TOOL: "TOOL",
}


def canonicalize_arguments(value: Any) -> str:
    """Return tool-call arguments as a string that always parses as JSON.

    Empty or missing arguments become ``"{}"``, non-strings are serialized,
    valid JSON passes through and anything else is wrapped as a JSON string.
    """
    if value is None:
        return "{}"
    if not isinstance(value, str):
        return json.dumps(value, separators=(",", ":"))
    trimmed = value.strip()
    if not trimmed:
        return "{}"
    try:
        json.loads(trimmed)
    except ValueError:
        return json.dumps(trimmed)
    return trimmed


# ---------------------------------------------------------------------------
# v2: messages + function tools
# ---------------------------------------------------------------------------


def transform_tools(tools: Sequence[ToolDefinition]) -> list[dict[str, Any]] | None:
    if not tools:
        return None
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters or EMPTY_PARAMETERS,
            },
        }
        for tool in tools
    ]


def build_initial_request(
    history: Sequence[ChatTurn],
    tools: Sequence[ToolDefinition],
    *,
    model: str,
    documents: Sequence[Any] | None = None,
    temperature: float | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "model": model,
        "messages": [turn.to_wire() for turn in history],
        "stream": True,
    }
    wire_tools = transform_tools(tools)
    if wire_tools:
        body["tools"] = wire_tools
    if documents:
        body["documents"] = list(documents)
    if temperature is not None:
        body["temperature"] = temperature
    return body


def _echo_tool_calls(ended: StreamEnded) -> list[dict[str, Any]]:
    """Rebuild the assistant's tool calls exactly as the model emitted them.

    Prefers the server's own final message when it carries tool_calls,
    falling back to the calls accumulated from deltas.
    """
    source: list[Any] = []
    if ended.message and ended.message.get("tool_calls"):
        source = ended.message["tool_calls"]
    else:
        source = ended.tool_calls

    echoed = []
    for call in source:
        if isinstance(call, PendingToolCall):
            call_id, name, arguments = call.id, call.name, call.arguments
        else:
            function = call.get("function") or {}
            call_id = call.get("id") or call.get("tool_call_id", "")
            name = call.get("name") or function.get("name", "")
            arguments = call.get("arguments") or function.get("arguments")
        echoed.append({
            "id": call_id,
            "type": "function",
            "function": {
                "name": name,
                "arguments": canonicalize_arguments(arguments),
            },
        })
    return echoed


def build_continuation_request(
    previous: dict[str, Any],
    ended: StreamEnded,
    tool_results: Sequence[ToolResult],
) -> dict[str, Any]:
    """Append the assistant tool-call echo and one tool turn per result.

    The echo is required: the API rejects tool outputs it cannot match to
    an assistant tool_calls turn.
    """
    assistant: dict[str, Any] = {"role": "assistant", "tool_calls": _echo_tool_calls(ended)}
    if ended.tool_plan:
        assistant["tool_plan"] = ended.tool_plan

    messages = list(previous.get("messages", []))
    messages.append(assistant)
    messages.extend(
        {"role": "tool", "tool_call_id": result.tool_call_id, "content": result.content}
        for result in tool_results
    )
    return {**previous, "messages": messages, "stream": True}


# ---------------------------------------------------------------------------
# v1 (legacy): message + preamble + chat_history, tool_results continuations
# ---------------------------------------------------------------------------


def transform_tools_v1(tools: Sequence[ToolDefinition]) -> list[dict[str, Any]] | None:
    """Convert JSON-schema parameters into legacy ``parameter_definitions``."""
    if not tools:
        return None
    wire_tools = []
    for tool in tools:
        schema = tool.parameters or EMPTY_PARAMETERS
        required = set(schema.get("required", []))
        definitions = {
            name: {
                "description": prop.get("description", ""),
                "type": _V1_TYPES.get(prop.get("type", "string"), "str"),
                "required": name in required,
            }
            for name, prop in schema.get("properties", {}).items()
        }
        wire_tools.append({
            "name": tool.name,
            "description": tool.description,
            "parameter_definitions": definitions,
        })
    return wire_tools


def build_initial_request_v1(
    history: Sequence[ChatTurn],
    tools: Sequence[ToolDefinition],
    *,
    model: str,
    documents: Sequence[Any] | None = None,
    temperature: float | None = None,
) -> dict[str, Any]:
    """Split history into preamble, chat_history and the final user message."""
    preamble = "\n\n".join(t.content for t in history if t.role is Role.SYSTEM)
    turns = [t for t in history if t.role is not Role.SYSTEM]

    message = ""
    if turns and turns[-1].role is Role.USER:
        message = turns[-1].content
        turns = turns[:-1]

    body: dict[str, Any] = {
        "model": model,
        "message": message,
        "chat_history": [
            {"role": _V1_ROLES[t.role], "message": t.content} for t in turns
        ],
        "stream": True,
    }
    if preamble:
        body["preamble"] = preamble
    wire_tools = transform_tools_v1(tools)
    if wire_tools:
        body["tools"] = wire_tools
    if documents:
        body["documents"] = list(documents)
    if temperature is not None:
        body["temperature"] = temperature
    return body


def _outputs(content: str) -> list[dict[str, Any]]:
    """Legacy tool_results want a list of objects per call."""
    value = json.loads(content)
    items = value if isinstance(value, list) else [value]
    return [item if isinstance(item, dict) else {"result": item} for item in items]


def build_continuation_request_v1(
    previous: dict[str, Any],
    ended: StreamEnded,
    tool_results: Sequence[ToolResult],
) -> dict[str, Any]:
    results_by_id = {result.tool_call_id: result for result in tool_results}
    wire_results = []
    for call in ended.tool_calls:
        result = results_by_id.get(call.id)
        if result is None:
            continue
        wire_results.append({
            "call": {
                "name": call.name,
                "parameters": json.loads(canonicalize_arguments(call.arguments)),
            },
            "outputs": _outputs(result.content),
        })

    chat_history = previous.get("chat_history", [])
    if ended.message and ended.message.get("chat_history"):
        chat_history = ended.message["chat_history"]

    return {
        **previous,
        "chat_history": chat_history,
        "tool_results": wire_results,
        "force_single_step": True,
        "stream": True,
    }
