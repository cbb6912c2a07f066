"""Exception taxonomy for mcplink.

Everything raised by the library derives from MCPError, so callers can catch
a single type. Connection-fatal errors derive from TransportError; per-call
errors (RPCError, MCPTimeoutError, RequestCancelledError, DecodeError) only
ever reach the call that produced them.
"""

from __future__ import annotations

from typing import Any, Optional


class MCPError(Exception):
    """Base exception for MCP errors."""
    pass


class TransportError(MCPError):
    """Transport-level error (connection, I/O). Fatal to the connection."""
    pass


class TransportClosedError(TransportError):
    """The transport was closed, either by us or by the server going away."""
    pass


class BufferOverflowError(TransportError):
    """An unterminated frame outgrew the read buffer.

    `items` holds the complete frames decoded from the same chunk before the
    overflow was detected; they are still valid and should be routed.
    """

    def __init__(self, message: str, items: Optional[list] = None):
        self.items = items or []
        super().__init__(message)


class ProtocolError(MCPError):
    """Protocol-level error (invalid messages, handshake failures)."""
    pass


class MalformedMessageError(ProtocolError):
    """A frame from the server could not be decoded into a JSON-RPC message."""

    def __init__(self, message: str, raw: bytes = b""):
        self.raw = raw
        super().__init__(message)


class UnmatchedResponseError(ProtocolError):
    """A response arrived for an id with no pending request."""

    def __init__(self, request_id: Any):
        self.request_id = request_id
        super().__init__(f"No pending request for response id {request_id!r}")


class DecodeError(ProtocolError):
    """A result did not have the shape the operation expects."""
    pass


class DuplicateIdError(MCPError):
    """A request id was registered while a request with that id is still live."""

    def __init__(self, request_id: Any):
        self.request_id = request_id
        super().__init__(f"Request id {request_id!r} is already pending")


class InvalidStateError(MCPError):
    """An operation was attempted in the wrong lifecycle state."""

    def __init__(self, operation: str, state: Any):
        self.operation = operation
        self.state = state
        name = getattr(state, 'value', state)
        super().__init__(f"Cannot {operation} while client is {name}")


class RequestCancelledError(MCPError):
    """The pending request was cancelled before a response arrived."""
    pass


class RPCError(MCPError):
    """JSON-RPC error returned by the server."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"RPC Error {code}: {message}")

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


class MCPTimeoutError(MCPError, TimeoutError):
    """Timeout waiting for server response."""

    def __init__(self, message: str, request_id: Optional[Any] = None):
        self.request_id = request_id
        super().__init__(message)
