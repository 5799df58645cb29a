"""Classified failures raised by the console runtime."""

from __future__ import annotations

from typing import Optional


class ConsoleRuntimeError(Exception):
    """Base error for runtime operations."""


class AuthenticationError(ConsoleRuntimeError):
    """Raised when credentials are rejected or a token is expired/invalid."""


class AuthorizationError(ConsoleRuntimeError):
    """Raised when an authenticated call is answered with 401."""


class NetworkError(ConsoleRuntimeError):
    """Raised for timeouts, refused connections and dropped transports."""


class RequestTimeout(NetworkError):
    """Raised when a request attempt exceeds the configured timeout."""


class HandshakeRejected(NetworkError):
    """Raised when the realtime endpoint refuses the handshake."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(ConsoleRuntimeError):
    """Raised for malformed realtime frames or unparsable response bodies."""


class ApiError(ConsoleRuntimeError):
    """Raised when the API answers with a non-transient failure status."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConnectionExhaustedError(ConsoleRuntimeError):
    """Raised once reconnect attempts reach the configured maximum."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Realtime connection failed after {attempts} attempt(s)")
        self.attempts = attempts


class DuplicateTaskError(ConsoleRuntimeError):
    """Raised when a queued or active transfer id is enqueued again."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Transfer {task_id!r} is already queued or active")
        self.task_id = task_id


class ExecutorError(ConsoleRuntimeError):
    """Raised when a transfer executor fails; the original error is chained."""

    def __init__(self, task_id: str, reason: str) -> None:
        super().__init__(f"Transfer {task_id!r} failed: {reason}")
        self.task_id = task_id
        self.reason = reason


__all__ = [
    "ConsoleRuntimeError",
    "AuthenticationError",
    "AuthorizationError",
    "NetworkError",
    "RequestTimeout",
    "HandshakeRejected",
    "ProtocolError",
    "ApiError",
    "ConnectionExhaustedError",
    "DuplicateTaskError",
    "ExecutorError",
]
