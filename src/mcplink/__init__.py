import sys
assert sys.version_info >= (3, 9), "Requires Python 3.9+"
import logging

logger = logging.getLogger('mcplink')
handler = logging.StreamHandler()
logger.addHandler(handler)

from .errors import (
    MCPError,
    TransportError,
    TransportClosedError,
    BufferOverflowError,
    ProtocolError,
    MalformedMessageError,
    UnmatchedResponseError,
    DecodeError,
    DuplicateIdError,
    InvalidStateError,
    RequestCancelledError,
    RPCError,
    MCPTimeoutError,
)
from .types import (
    ClientState,
    Request,
    Response,
    Notification,
    ErrorObject,
    ToolDescriptor,
    CallToolResult,
    TextContent,
    ImageContent,
    AudioContent,
    EmbeddedResource,
    ResourceLink,
    UnknownContent,
    InitializeResult,
)
from .codec import FrameCodec
from .correlation import CorrelationTable, PendingRequest
from .transport import Transport, StreamTransport, ServerPipe
from .process import ServerProcess
from .config import ClientSettings, load_settings
from .formatting import format_content
from .client import MCPClient, create_stdio_client

__all__ = [
    # Exceptions
    "MCPError",
    "TransportError",
    "TransportClosedError",
    "BufferOverflowError",
    "ProtocolError",
    "MalformedMessageError",
    "UnmatchedResponseError",
    "DecodeError",
    "DuplicateIdError",
    "InvalidStateError",
    "RequestCancelledError",
    "RPCError",
    "MCPTimeoutError",
    # Messages and payloads
    "ClientState",
    "Request",
    "Response",
    "Notification",
    "ErrorObject",
    "ToolDescriptor",
    "CallToolResult",
    "TextContent",
    "ImageContent",
    "AudioContent",
    "EmbeddedResource",
    "ResourceLink",
    "UnknownContent",
    "InitializeResult",
    # Engine
    "FrameCodec",
    "CorrelationTable",
    "PendingRequest",
    "Transport",
    "StreamTransport",
    "ServerPipe",
    "ServerProcess",
    # Client
    "MCPClient",
    "create_stdio_client",
    "ClientSettings",
    "load_settings",
    "format_content",
]

__version__ = "0.1.0"
