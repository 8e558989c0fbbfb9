"""Error taxonomy for termsessions.

Session-manager errors are raised for caller mistakes (unknown or duplicate
ids, dead sessions).  The RPC transport turns every one of them into an
``{id, error}`` response.  Client errors separate transient connection
failures, which the reconnect loop handles, from terminal ones such as
``ClientClosed``.
"""

from __future__ import annotations

from typing import Any


class TermSessionsError(Exception):
    """Base exception for all termsessions errors.

    Attributes:
        message: Human-readable error description.
        context: Additional context for debugging.
    """

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


# =============================================================================
# Session errors
# =============================================================================


class SessionError(TermSessionsError):
    """Base class for session-manager errors."""


class DuplicateSession(SessionError):
    """Raised when creating a session whose id is already registered."""

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Session {session_id} already exists", context={"session_id": session_id}
        )


class SessionNotFound(SessionError):
    """Raised when an operation names an unknown session id."""

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Session {session_id} not found", context={"session_id": session_id}
        )


class SessionNotAlive(SessionError):
    """Raised when an operation needs a live process but it has exited."""

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Session {session_id} is not alive", context={"session_id": session_id}
        )


class SessionLimitReached(SessionError):
    """Raised when the configured session cap is reached."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"Maximum sessions ({limit}) reached", context={"limit": limit})


class InvalidPattern(SessionError):
    """Raised when a search pattern is not a valid regular expression."""

    def __init__(self, pattern: str, reason: str) -> None:
        super().__init__(
            f"Invalid search pattern {pattern!r}: {reason}", context={"pattern": pattern}
        )


class InvalidSignal(SessionError):
    """Raised when a signal name cannot be resolved."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown signal: {name}", context={"signal": name})


# =============================================================================
# Protocol errors
# =============================================================================


class ProtocolError(TermSessionsError):
    """Raised for malformed requests, unknown methods or invalid parameters."""


# =============================================================================
# Client errors
# =============================================================================


class ClientError(TermSessionsError):
    """Base class for errors raised by the reconnecting client."""


class ConnectionLost(ClientError):
    """The connection dropped while the request was pending."""

    def __init__(self, message: str = "Connection lost") -> None:
        super().__init__(message)


class ConnectionTimeout(ClientError):
    """No connection could be established within the connect timeout."""

    def __init__(self, timeout: float) -> None:
        super().__init__(
            f"Connection timeout after {timeout:g}s", context={"timeout": timeout}
        )


class RequestTimeout(ClientError):
    """No response arrived for a request within the request timeout."""

    def __init__(self, method: str, timeout: float) -> None:
        super().__init__(
            f"Request timeout: {method}", context={"method": method, "timeout": timeout}
        )


class ClientClosed(ClientError):
    """The client was closed by its owner; it will not reconnect."""

    def __init__(self) -> None:
        super().__init__("Client closed")


class RemoteError(ClientError):
    """The server answered the request with an error message."""

    def __init__(self, method: str, message: str) -> None:
        super().__init__(message, context={"method": method})
