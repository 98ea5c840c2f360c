"""Exception hierarchy for the pi agent RPC client.

Every asynchronous failure surfaces as a rejected Promise carrying one of
these exceptions. Nothing here is fatal to the process: each error is scoped
to a single request, a session, or a reconnect attempt.
"""
from __future__ import annotations


class PiRemoteError(Exception):
    """Base class for all client-side errors."""


class ConnectError(PiRemoteError):
    """The TCP connection to the agent could not be established."""


class NotConnectedError(PiRemoteError):
    """A command was issued while the client was disconnected."""


class ConnectionClosedError(PiRemoteError):
    """The connection went away while a request was still pending."""


class SendError(PiRemoteError):
    """Writing a frame to the socket failed."""


class RequestTimeoutError(PiRemoteError):
    """No response arrived within the request timeout."""

    def __init__(self, message: str, command: str | None = None) -> None:
        super().__init__(message)
        self.command = command


class CommandError(PiRemoteError):
    """The agent answered a command with ``success: false``."""

    def __init__(self, command: str, error: str) -> None:
        super().__init__(f"{command} failed: {error}")
        self.command = command
        self.error = error


class SessionError(PiRemoteError):
    """A session method was used in the wrong lifecycle state."""
