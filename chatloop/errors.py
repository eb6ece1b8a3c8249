"""
Exception hierarchy for the chat client.

Transport failures from httpx are wrapped into ``TransportError`` while the
original exception is preserved for full tracebacks.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

__all__: tuple[str, ...] = (
    "ChatLoopError",
    "TransportError",
    "ApiStatusError",
    "StreamIdleTimeoutError",
    "ToolLoopExceededError",
    "classify_error",
)


class ChatLoopError(RuntimeError):
    """Base class for every terminal exchange failure."""


class TransportError(ChatLoopError):
    """Network-level failure talking to the completions API.

    Attributes:
        original_exc: The underlying exception, if any.
    """

    original_exc: Exception | None

    def __init__(self, message: str, original_exc: Exception | None = None) -> None:
        super().__init__(message)
        self.original_exc = original_exc
        if original_exc is not None:
            self.__cause__ = original_exc


class ApiStatusError(TransportError):
    """The API answered with a non-success HTTP status."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"API returned {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class StreamIdleTimeoutError(TransportError):
    """No bytes arrived on the response body within the idle timeout."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"No data received for {timeout:g}s, stream stalled")
        self.timeout = timeout


class ToolLoopExceededError(ChatLoopError):
    """The model kept requesting tools past the configured round limit."""

    def __init__(self, max_rounds: int) -> None:
        super().__init__(f"Tool loop exceeded {max_rounds} continuation rounds")
        self.max_rounds = max_rounds


def classify_error(
    exc: Exception,
    logger: Optional[logging.Logger] = None,
) -> ChatLoopError:
    """Map any exception raised during an exchange onto ``ChatLoopError``."""
    log = logger or logging.getLogger("chatloop.errors")

    if isinstance(exc, ChatLoopError):
        log.error("%s", exc)
        return exc

    if isinstance(exc, httpx.TimeoutException):
        msg = "Request to the completions API timed out"
    elif isinstance(exc, httpx.TransportError):
        msg = "Connection problem, unable to reach the completions API"
    elif isinstance(exc, httpx.HTTPError):
        msg = "HTTP error"
    else:
        log.exception("Unexpected error during exchange")
        return ChatLoopError(f"{exc.__class__.__name__}: {exc}")

    log.error("%s: %s", msg, exc)
    return TransportError(f"{msg}: {exc}", exc)
