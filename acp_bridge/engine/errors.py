"""Exception hierarchy for the ACP bridge.

Specific exceptions for each failure mode. Each carries the HTTP status
the router answers with when it escapes a request handler.
"""
from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base exception for all bridge errors."""

    status: int = 500


class AgentConnectionError(BridgeError, ConnectionError):
    """The agent socket could not be reached."""
    def __init__(self, host: str, port: int, reason: str = ""):
        self.host = host
        self.port = port
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"Cannot connect to ACP agent at {host}:{port}{detail}")


class AgentStartError(BridgeError):
    """The agent process could not be spawned."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start agent '{command}': {reason}")


class ConnectionLost(BridgeError):
    """The agent socket closed while requests were outstanding."""
    def __init__(self, reason: str = "ACP connection closed"):
        self.reason = reason
        super().__init__(reason)


class ProtocolParseError(BridgeError):
    """A single inbound line was not a JSON-RPC object."""
    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        super().__init__(f"Malformed ACP line ({reason}): {line[:200]!r}")


class SessionNotFound(BridgeError):
    status = 404

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__("Session not found")


class MessageNotFound(BridgeError):
    status = 404

    def __init__(self, session_id: str, message_id: str):
        self.session_id = session_id
        self.message_id = message_id
        super().__init__("Message not found")


class PermissionNotFound(BridgeError):
    status = 404

    def __init__(self, permission_id: str):
        self.permission_id = permission_id
        super().__init__("Permission not found")


class BadRequest(BridgeError):
    """Missing or invalid request body fields."""
    status = 400


class AgentCallFailed(BridgeError):
    """A correlated request came back with a JSON-RPC error."""
    def __init__(
        self,
        method: str,
        message: str,
        code: int | None = None,
        data: Any = None,
    ):
        self.method = method
        self.code = code
        self.data = data
        super().__init__(message)


class RequestTimeout(AgentCallFailed):
    """A correlated request got no response within its time budget."""
    def __init__(self, method: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            method,
            f"ACP request '{method}' timed out after {timeout_seconds}s",
        )
