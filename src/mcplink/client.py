"""
MCP (Model Context Protocol) client over a server's stdio pipes.

Usage:
    with create_stdio_client(["python", "server.py"]) as client:
        tools = client.list_tools()
        result = client.call_tool("read_file", {"path": "file.txt"})
        print(result.as_text())

Thread Safety: Public methods can be called from multiple threads. Any
number of requests may be outstanding at once; each caller blocks only on
its own response. Calling close() while requests are in flight makes them
raise TransportClosedError.
"""

from __future__ import annotations

import logging
import shlex
import threading
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, ValidationError

from .config import ClientSettings, load_settings
from .correlation import CorrelationTable
from .errors import (
    DecodeError,
    InvalidStateError,
    MCPError,
    MCPTimeoutError,
    ProtocolError,
    RPCError,
    TransportClosedError,
)
from .process import ServerProcess
from .transport import RequestHandler, ServerPipe, StreamTransport, default_request_handler
from .types import (
    CallToolResult,
    ClientState,
    GetPromptResult,
    InitializeResult,
    ListPromptsResult,
    ListResourcesResult,
    ListToolsResult,
    Notification,
    Prompt,
    ReadResourceResult,
    Request,
    Resource,
    ToolDescriptor,
)

logger = logging.getLogger('mcplink')

# Protocol versions this client can speak, newest first
SUPPORTED_PROTOCOL_VERSIONS = ("2025-06-18", "2025-03-26", "2024-11-05")

# Sentinel for unspecified timeout (distinguishes "not passed" from "explicitly None")
_TIMEOUT_NOT_SPECIFIED = object()

# MCP logging levels mapped onto the logging module
_LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'notice': logging.INFO,
    'warning': logging.WARNING,
    'error': logging.ERROR,
    'critical': logging.CRITICAL,
    'alert': logging.CRITICAL,
    'emergency': logging.CRITICAL,
}


class MCPClient:
    """
    Model Context Protocol (MCP) Client.

    Lifecycle: UNINITIALIZED -> INITIALIZING -> READY, with CLOSED reachable
    from every state and final. initialize() must succeed before any other
    request is allowed; it is never retried here.

    Usage:
        client = MCPClient(ServerProcess(["python", "server.py"]).start())
        client.initialize()
        tools = client.list_tools()
        result = client.call_tool("my_tool", {"arg": "value"})
        client.close()
    """

    def __init__(
        self,
        pipe: ServerPipe,
        settings: Optional[ClientSettings] = None,
        request_handler: Optional[RequestHandler] = default_request_handler
    ) -> None:
        """
        Args:
            pipe: The server's stdin/stdout. The client's transport takes
                  ownership and closes it on close().
            settings: Client settings; load_settings() is used when omitted.
            request_handler: Answers server-initiated requests (see
                            StreamTransport).
        """
        self.settings = settings or load_settings()
        self.table = CorrelationTable(notification_sink=self._handle_notification)
        self.transport = StreamTransport(
            pipe,
            self.table,
            request_handler=request_handler,
            on_close=self._on_transport_closed,
            max_buffer_size=self.settings.max_buffer_size,
            terminate_timeout=self.settings.terminate_timeout,
            send_timeout=self.settings.send_timeout,
        )

        self._request_id = 0
        self._state = ClientState.UNINITIALIZED
        self._close_started = False
        self._init_result: Optional[InitializeResult] = None
        self._tools: tuple[ToolDescriptor, ...] = ()
        self._lock = threading.Lock()

        # Optional callback for handling notifications
        self.on_notification: Optional[Callable[[str, Any], None]] = None

    # === STATE ===

    @property
    def state(self) -> ClientState:
        with self._lock:
            return self._state

    def _next_id(self) -> int:
        """Generate the next unique request ID."""
        with self._lock:
            self._request_id += 1
            return self._request_id

    def _require_ready(self, operation: str) -> None:
        with self._lock:
            if self._state is not ClientState.READY:
                raise InvalidStateError(operation, self._state)

    def _on_transport_closed(self, cause: MCPError) -> None:
        with self._lock:
            previous, self._state = self._state, ClientState.CLOSED
            expected = self._close_started
        if not expected and previous is not ClientState.CLOSED:
            logger.warning("MCP connection lost: %s", cause)

    # === REQUEST PLUMBING ===

    def _send_notification(self, method: str, params: Optional[dict] = None) -> None:
        """Send a JSON-RPC notification (no response expected)."""
        self.transport.send(Notification(method=method, params=params))

    def _resolve_timeout(self, timeout: Any) -> Optional[float]:
        if timeout is _TIMEOUT_NOT_SPECIFIED:
            return self.settings.request_timeout
        return timeout

    def _call(
        self,
        method: str,
        params: Optional[dict] = None,
        timeout: Optional[float] = _TIMEOUT_NOT_SPECIFIED
    ) -> Any:
        """
        Make a JSON-RPC call and return the result.

        Args:
            method: The RPC method to call.
            params: Optional method parameters.
            timeout: Request timeout in seconds. If not specified, uses
                    settings.request_timeout. Pass None explicitly to wait forever.

        Returns:
            The 'result' field from the response.

        Raises:
            RPCError: If the server returns an error response.
            MCPTimeoutError: If timeout expires.
            TransportError: On transport-level errors.
        """
        timeout = self._resolve_timeout(timeout)
        request_id = self._next_id()
        pending = self.table.register(request_id, timeout)

        send_timeout = pending.remaining()
        if send_timeout is None:
            send_timeout = self.settings.send_timeout
        try:
            self.transport.send(Request(id=request_id, method=method, params=params), timeout=send_timeout)
        except MCPTimeoutError as e:
            self.table.cancel(request_id)
            raise MCPTimeoutError(f"Request {request_id} ({method}): {e}", request_id=request_id) from e
        except MCPError:
            self.table.cancel(request_id)
            raise

        try:
            response = pending.wait()
        except MCPTimeoutError as e:
            if not self.table.cancel(request_id, e):
                # The response won the race against the deadline
                response = pending.wait(0)
            else:
                self._notify_cancelled(request_id, f"Timed out after {timeout}s")
                raise

        if response.error is not None:
            error = response.error
            raise RPCError(code=error.code, message=error.message, data=error.data)
        return response.result

    def _notify_cancelled(self, request_id: int, reason: str) -> None:
        try:
            self._send_notification(
                "notifications/cancelled", {"requestId": request_id, "reason": reason}
            )
        except MCPError as e:
            logger.debug("Could not send cancellation for request %s: %s", request_id, e)

    @staticmethod
    def _decode(model: type[BaseModel], result: Any, method: str) -> Any:
        try:
            return model.model_validate(result)
        except ValidationError as e:
            raise DecodeError(f"Unexpected {method} result: {e}") from e

    def _handle_notification(self, notification: Notification) -> None:
        """
        Handle an incoming notification from the server.

        Log messages are re-emitted on the 'mcplink' logger; everything is
        then passed to on_notification if one is set.
        """
        method = notification.method
        params = notification.params if notification.params is not None else {}

        if method == "notifications/message" and isinstance(params, dict):
            level = _LOG_LEVELS.get(str(params.get("level", "info")).lower(), logging.INFO)
            source = params.get("logger", "server")
            logger.log(level, "[%s] %s", source, params.get("data", ""))
        elif method == "notifications/progress" and isinstance(params, dict):
            logger.debug("[progress] %s/%s", params.get("progress", 0), params.get("total", "?"))
        else:
            logger.debug("[notification] %s", method)

        if self.on_notification:
            self.on_notification(method, params)

    # === LIFECYCLE ===

    def initialize(self, timeout: Optional[float] = _TIMEOUT_NOT_SPECIFIED) -> InitializeResult:
        """
        Perform the MCP handshake.

        Args:
            timeout: Seconds to wait for the server's answer. If not
                    specified, uses settings.init_timeout.

        Returns:
            The server's initialize result.

        Raises:
            InvalidStateError: If called more than once or after close().
            MCPError: If the handshake fails. The client is closed first.
        """
        with self._lock:
            if self._state is not ClientState.UNINITIALIZED:
                raise InvalidStateError("initialize", self._state)
            self._state = ClientState.INITIALIZING

        if timeout is _TIMEOUT_NOT_SPECIFIED:
            timeout = self.settings.init_timeout

        # Note: We only advertise capabilities we actually implement.
        init_params = {
            "protocolVersion": self.settings.protocol_version,
            "capabilities": {},
            "clientInfo": {
                "name": self.settings.client_name,
                "version": self.settings.client_version
            }
        }

        try:
            self.transport.start()
            result = self._decode(
                InitializeResult, self._call("initialize", init_params, timeout=timeout), "initialize"
            )
            if result.protocol_version not in SUPPORTED_PROTOCOL_VERSIONS:
                raise ProtocolError(
                    f"Unsupported protocol version {result.protocol_version!r}; "
                    f"client supports {', '.join(SUPPORTED_PROTOCOL_VERSIONS)}"
                )
            # Include empty params for compatibility with strict MCP servers
            self._send_notification("notifications/initialized", {})
            with self._lock:
                if self._state is not ClientState.INITIALIZING:
                    raise TransportClosedError("Connection closed during initialize")
                self._init_result = result
                self._state = ClientState.READY
        except Exception:
            self.close()
            raise

        server = result.server_info
        logger.debug(
            "Connected to %s %s (protocol %s)",
            server.get("name", "server"), server.get("version", ""), result.protocol_version
        )
        return result

    def close(self) -> None:
        """
        Close the connection. Safe to call multiple times and in any state.

        Every request still waiting is failed with TransportClosedError.
        """
        with self._lock:
            self._state = ClientState.CLOSED
            if self._close_started:
                return
            self._close_started = True
        self.transport.close()

    def __enter__(self) -> "MCPClient":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - ensures connection is closed."""
        self.close()
        return False

    # === HANDSHAKE DATA ===

    @property
    def init_result(self) -> Optional[InitializeResult]:
        """Full initialize response from the server."""
        return self._init_result

    @property
    def server_info(self) -> Optional[dict[str, Any]]:
        """Server information from the handshake (name, version)."""
        if self._init_result is None:
            return None
        return self._init_result.server_info

    @property
    def server_capabilities(self) -> Optional[dict[str, Any]]:
        """Server capabilities from the handshake."""
        if self._init_result is None:
            return None
        return self._init_result.capabilities

    @property
    def instructions(self) -> Optional[str]:
        """Server instructions from the handshake."""
        if self._init_result is None:
            return None
        return self._init_result.instructions

    @property
    def tools(self) -> tuple[ToolDescriptor, ...]:
        """Tools from the last successful list_tools()."""
        return self._tools

    # === OPERATIONS ===

    def _paginate(self, method: str, model: type[BaseModel], field: str, timeout: Any) -> list:
        items: list = []
        cursor: Optional[str] = None
        seen: set[str] = set()
        while True:
            params = {"cursor": cursor} if cursor else None
            page = self._decode(model, self._call(method, params, timeout=timeout), method)
            items.extend(getattr(page, field))
            cursor = page.next_cursor
            if not cursor:
                return items
            if cursor in seen:
                raise ProtocolError(f"{method} returned cursor {cursor!r} twice")
            seen.add(cursor)

    def list_tools(self, timeout: Optional[float] = _TIMEOUT_NOT_SPECIFIED) -> list[ToolDescriptor]:
        """
        List available tools from the server, following pagination.

        Raises:
            InvalidStateError: If the client is not ready.
            DecodeError: If the result is not a tool list.
        """
        self._require_ready("list tools")
        tools = self._paginate("tools/list", ListToolsResult, "tools", timeout)
        self._tools = tuple(tools)
        return tools

    def call_tool(
        self,
        name: str,
        arguments: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = _TIMEOUT_NOT_SPECIFIED
    ) -> CallToolResult:
        """
        Call a tool on the server.

        A tool that ran but failed is reported through the result's is_error
        flag, not as an exception.

        Args:
            name: The tool name to invoke.
            arguments: Tool arguments as a dictionary.
            timeout: Request timeout in seconds. If not specified, uses
                    settings.request_timeout. Pass None explicitly to wait
                    forever for long-running tools.

        Raises:
            InvalidStateError: If the client is not ready.
            RPCError: If the server rejects the call.
            DecodeError: If the result is not a tool result.
            ValueError: If tool name is empty.
        """
        self._require_ready("call tool")

        if not isinstance(name, str) or not name.strip():
            raise ValueError("Tool name must be a non-empty string")

        params = {"name": name, "arguments": arguments or {}}
        return self._decode(CallToolResult, self._call("tools/call", params, timeout=timeout), "tools/call")

    def list_resources(self, timeout: Optional[float] = _TIMEOUT_NOT_SPECIFIED) -> list[Resource]:
        """List available resources. Empty if the server has no resources capability."""
        self._require_ready("list resources")
        if "resources" not in self.server_capabilities:
            return []
        return self._paginate("resources/list", ListResourcesResult, "resources", timeout)

    def read_resource(self, uri: str, timeout: Optional[float] = _TIMEOUT_NOT_SPECIFIED) -> ReadResourceResult:
        self._require_ready("read resource")
        if not isinstance(uri, str) or not uri.strip():
            raise ValueError("Resource URI must be a non-empty string")
        return self._decode(
            ReadResourceResult, self._call("resources/read", {"uri": uri}, timeout=timeout), "resources/read"
        )

    def list_prompts(self, timeout: Optional[float] = _TIMEOUT_NOT_SPECIFIED) -> list[Prompt]:
        """List available prompts. Empty if the server has no prompts capability."""
        self._require_ready("list prompts")
        if "prompts" not in self.server_capabilities:
            return []
        return self._paginate("prompts/list", ListPromptsResult, "prompts", timeout)

    def get_prompt(
        self,
        name: str,
        arguments: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = _TIMEOUT_NOT_SPECIFIED
    ) -> GetPromptResult:
        self._require_ready("get prompt")
        if not isinstance(name, str) or not name.strip():
            raise ValueError("Prompt name must be a non-empty string")
        params = {"name": name, "arguments": arguments or {}}
        return self._decode(GetPromptResult, self._call("prompts/get", params, timeout=timeout), "prompts/get")

    def ping(self, timeout: Optional[float] = _TIMEOUT_NOT_SPECIFIED) -> bool:
        """
        Send a ping to check if the server is responsive.

        Returns:
            True if server responded, False otherwise.
        """
        if self.state is not ClientState.READY:
            return False
        try:
            self._call("ping", timeout=timeout)
            return True
        except MCPError:
            return False


# ============================================================================
# Factory Functions
# ============================================================================

def create_stdio_client(
    command: Union[list[str], str],
    env: Optional[dict[str, str]] = None,
    settings: Optional[ClientSettings] = None,
    **overrides: Any
) -> MCPClient:
    """
    Spawn an MCP server and return a client that has completed the handshake.

    Args:
        command: Command to run the MCP server (e.g., ["python", "server.py"]).
                 A string is split shell-style.
        env: Additional environment variables for the subprocess.
        settings: Client settings. If omitted, load_settings(**overrides).
        **overrides: Individual settings, e.g. request_timeout=60.0.

    Example:
        client = create_stdio_client(["npx", "-y", "@modelcontextprotocol/server-filesystem", "/tmp"])
        tools = client.list_tools()
    """
    if isinstance(command, str):
        command = shlex.split(command)
    if settings is None:
        settings = load_settings(**overrides)
    elif overrides:
        raise TypeError("Pass either settings or individual overrides, not both")

    process = ServerProcess(
        command,
        env=env,
        forward_stderr=settings.forward_stderr,
        terminate_timeout=settings.terminate_timeout
    ).start()
    client = MCPClient(process, settings)
    try:
        client.initialize()
    except Exception:
        # initialize() already closed the client; make sure the process is gone
        try:
            process.close()
        except OSError:
            pass
        raise
    return client
