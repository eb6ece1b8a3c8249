"""Tool dispatcher and per-client result cache.

Provides:
- ToolResultCache: unbounded (name, canonical arguments) -> result map
- ToolDispatcher: runs a round of pending tool calls concurrently and
  turns each into a ToolResult, never raising

A missing tool or a crashing handler becomes an ``{"error": ...}`` payload
the model can see, so one bad tool never aborts an exchange.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Sequence
from typing import Any

from chatloop.api.payloads import canonicalize_arguments
from chatloop.schemas import PendingToolCall, ToolDefinition, ToolResult

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str]


# ---------------------------------------------------------------------------
# ToolResultCache
# ---------------------------------------------------------------------------


class ToolResultCache:
    """Successful tool results keyed by tool name and canonical arguments.

    Never evicts. Safe within one event loop; share across loops only
    behind a lock.
    """

    def __init__(self) -> None:
        self._results: dict[CacheKey, list[Any]] = {}

    def get(self, key: CacheKey) -> list[Any] | None:
        return self._results.get(key)

    def put(self, key: CacheKey, result: list[Any]) -> None:
        self._results[key] = result

    def clear(self) -> None:
        self._results.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._results

    def __len__(self) -> int:
        return len(self._results)


# ---------------------------------------------------------------------------
# ToolDispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """Executes tool calls against caller-supplied ToolDefinitions.

    Identical calls that overlap in time share one execution: the second
    awaits the first instead of invoking the handler again.
    """

    def __init__(self, cache: ToolResultCache | None = None) -> None:
        self.cache = cache if cache is not None else ToolResultCache()
        self._inflight: dict[CacheKey, asyncio.Future] = {}

    async def dispatch_all(
        self,
        calls: Sequence[PendingToolCall],
        tools: Sequence[ToolDefinition],
    ) -> list[ToolResult]:
        """Run every call concurrently; results keep call order."""
        by_name = {tool.name: tool for tool in tools}
        return list(await asyncio.gather(*(self.dispatch(call, by_name) for call in calls)))

    async def dispatch(
        self,
        call: PendingToolCall,
        tools: dict[str, ToolDefinition],
    ) -> ToolResult:
        arguments = canonicalize_arguments(call.arguments)
        key = (call.name, arguments)

        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Tool cache hit: %s %s", call.name, arguments)
            return _wrap(call.id, cached)

        running = self._inflight.get(key)
        if running is None:
            running = asyncio.ensure_future(self._execute(key, tools.get(call.name)))
            self._inflight[key] = running
            running.add_done_callback(lambda _: self._inflight.pop(key, None))
        else:
            logger.debug("Joining in-flight tool call: %s %s", call.name, arguments)

        # Shielded so one cancelled waiter does not abort a shared execution
        return _wrap(call.id, await asyncio.shield(running))

    async def _execute(self, key: CacheKey, tool: ToolDefinition | None) -> Any:
        name, arguments = key
        if tool is None or tool.handler is None:
            logger.warning("Model requested unknown tool: %s", name)
            return {"error": f"Tool {name} not found"}

        try:
            result = tool.handler(json.loads(arguments))
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.exception("Tool %s failed", name)
            return {"error": str(e)}

        outputs = result if isinstance(result, list) else [result]
        self.cache.put(key, outputs)
        return outputs


def _wrap(tool_call_id: str, content: Any) -> ToolResult:
    return ToolResult(tool_call_id=tool_call_id, content=json.dumps(content, default=str))
