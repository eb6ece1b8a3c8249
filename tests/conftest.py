"""Test fixtures: a scripted chat API served through httpx.MockTransport."""

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import pytest
import pytest_asyncio

from chatloop.api.client import StreamingChatClient
from chatloop.config import Settings

API_URL = "https://api.test/v2/chat"


# ---------------------------------------------------------------------------
# Wire helpers
# ---------------------------------------------------------------------------


def ndjson(*payloads: dict[str, Any]) -> bytes:
    """Encode payloads as newline-delimited JSON."""
    return b"".join(json.dumps(p, ensure_ascii=False).encode() + b"\n" for p in payloads)


def text_delta(text: str) -> dict[str, Any]:
    return {"type": "content-delta", "index": 0, "delta": {"message": {"content": {"text": text}}}}


def tool_call_start(index: int, call_id: str, name: str, arguments: str = "") -> dict[str, Any]:
    return {
        "type": "tool-call-start",
        "index": index,
        "delta": {
            "message": {
                "tool_calls": {
                    "id": call_id,
                    "type": "function",
                    "function": {"name": name, "arguments": arguments},
                }
            }
        },
    }


def tool_call_delta(index: int, fragment: str) -> dict[str, Any]:
    return {
        "type": "tool-call-delta",
        "index": index,
        "delta": {"message": {"tool_calls": {"function": {"arguments": fragment}}}},
    }


MESSAGE_END = {"type": "message-end", "delta": {"finish_reason": "TOOL_CALL"}}
STREAM_END = {"type": "stream-end"}


# ---------------------------------------------------------------------------
# Fake API
# ---------------------------------------------------------------------------


class FakeChatAPI:
    """Serves queued responses in order and records every request body."""

    def __init__(self) -> None:
        self._responses: list[Callable[[], httpx.Response]] = []
        self.requests: list[dict[str, Any]] = []
        self.headers: list[httpx.Headers] = []
        self.stalled = asyncio.Event()

    def stream(self, *chunks: bytes) -> None:
        self._responses.append(lambda: httpx.Response(200, content=self._chunks(chunks)))

    def stall_after(self, *chunks: bytes) -> None:
        """Send chunks, then keep the body open without sending more."""
        self._responses.append(
            lambda: httpx.Response(200, content=self._chunks(chunks, stall=True))
        )

    def status(self, status_code: int, body: str) -> None:
        self._responses.append(lambda: httpx.Response(status_code, text=body))

    def fail(self, exc: Exception) -> None:
        def _raise() -> httpx.Response:
            raise exc

        self._responses.append(_raise)

    async def _chunks(self, chunks: tuple[bytes, ...], stall: bool = False) -> AsyncIterator[bytes]:
        for chunk in chunks:
            yield chunk
        if stall:
            self.stalled.set()
            await asyncio.Event().wait()

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        self.headers.append(request.headers)
        return self._responses.pop(0)()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(COHERE_API_KEY="test-key", api_url=API_URL, max_tool_rounds=3)


@pytest.fixture
def api() -> FakeChatAPI:
    return FakeChatAPI()


@pytest_asyncio.fixture
async def client(settings, api):
    http = httpx.AsyncClient(transport=httpx.MockTransport(api.handler))
    chat = StreamingChatClient(settings, http=http)
    yield chat
    await chat.aclose()
    await http.aclose()
