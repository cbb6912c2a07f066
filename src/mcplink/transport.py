"""
Byte-stream transport.

StreamTransport owns both ends of a server pipe: it is the only writer of the
server's stdin and the only reader of its stdout. A single daemon thread runs
the read loop for the lifetime of the connection, decoding frames and routing
them to a Router (normally the CorrelationTable). When the stream ends or
fails, the loop drains the router with the terminal error before it exits, so
no caller is left waiting on a dead connection.

Writes go through a non-blocking stdin with select, so a server that stops
reading cannot hold a sender past its deadline.

Platform: POSIX only (fcntl, select on pipes).
"""

from __future__ import annotations

import fcntl
import logging
import os
import select
import threading
import time
from abc import ABC, abstractmethod
from typing import IO, Any, Callable, Optional, Protocol, Union

from .codec import MAX_BUFFER_SIZE, FrameCodec
from .errors import (
    BufferOverflowError,
    MalformedMessageError,
    MCPError,
    MCPTimeoutError,
    RPCError,
    TransportClosedError,
    TransportError,
    UnmatchedResponseError,
)
from .process import PROCESS_TERMINATE_TIMEOUT
from .types import ErrorObject, Message, Notification, Request, Response

# Chunk size for reading from the server's stdout
READ_CHUNK_SIZE = 65536

# JSON-RPC error codes used when answering server-initiated requests
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

# Default time allowed for writing one frame to the server
SEND_TIMEOUT = 30.0

# Sentinel for unspecified timeout (distinguishes "not passed" from "explicitly None")
_TIMEOUT_NOT_SPECIFIED = object()

logger = logging.getLogger('mcplink')

RequestHandler = Callable[[Request], Any]


class ServerPipe(Protocol):
    """What a transport needs from the server process."""

    @property
    def stdin(self) -> IO[bytes]: ...

    @property
    def stdout(self) -> IO[bytes]: ...

    def close_stdin(self) -> None: ...

    def terminate(self) -> None: ...

    def close(self) -> None: ...


class Router(Protocol):
    """Receiver of decoded messages (see CorrelationTable)."""

    def resolve(self, response: Response) -> None: ...

    def dispatch_notification(self, notification: Notification) -> None: ...

    def drain_all(self, error: Optional[MCPError] = None) -> int: ...


def default_request_handler(request: Request) -> Any:
    """Answer server pings; refuse every other server-initiated request."""
    if request.method == "ping":
        return {}
    raise RPCError(METHOD_NOT_FOUND, f"Method not found: {request.method}")


# ============================================================================
# Transport Layer - Abstract Base
# ============================================================================

class Transport(ABC):
    """Abstract base class for MCP transports."""

    @abstractmethod
    def start(self) -> None:
        """Begin delivering incoming messages."""
        pass

    @abstractmethod
    def send(self, message: Union[Message, dict], timeout: Any = _TIMEOUT_NOT_SPECIFIED) -> None:
        """Send a JSON-RPC message."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the transport connection."""
        pass

    @property
    @abstractmethod
    def closed(self) -> bool:
        pass


# ============================================================================
# Stream Transport
# ============================================================================

class StreamTransport(Transport):
    """
    Transport over a server's stdin/stdout pipes.

    Messages are newline-delimited JSON in both directions.

    Thread safety: send() may be called from any thread; frames from
    concurrent senders never interleave. The read loop runs on its own
    thread and never blocks on the send lock except to answer
    server-initiated requests.
    """

    def __init__(
        self,
        pipe: ServerPipe,
        router: Router,
        request_handler: Optional[RequestHandler] = default_request_handler,
        on_malformed: Optional[Callable[[MalformedMessageError], None]] = None,
        on_close: Optional[Callable[[MCPError], None]] = None,
        max_buffer_size: int = MAX_BUFFER_SIZE,
        terminate_timeout: float = PROCESS_TERMINATE_TIMEOUT,
        send_timeout: Optional[float] = SEND_TIMEOUT
    ) -> None:
        """
        Args:
            pipe: The server's streams; owned by the transport from now on.
            router: Receives responses, notifications, and the final drain.
            request_handler: Computes the result for a server-initiated
                            request, or raises RPCError. None refuses them all.
            on_malformed: Called with every frame that failed to decode.
            on_close: Called once with the error that ended the read loop.
            max_buffer_size: Upper bound on a single incoming frame.
            terminate_timeout: Seconds close() waits for the server to finish
                              before terminating it.
            send_timeout: Default seconds allowed for writing one frame.
                         None lets writes block forever.
        """
        self.pipe = pipe
        self.router = router
        self.request_handler = request_handler
        self.on_malformed = on_malformed
        self.on_close = on_close
        self.terminate_timeout = terminate_timeout
        self.send_timeout = send_timeout
        self.codec = FrameCodec(max_buffer_size)
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()  # Protects _closing, _cause, _broken and _thread
        self._send_lock = threading.Lock()
        self._done = threading.Event()
        self._closing = False
        self._cause: Optional[MCPError] = None
        self._broken: Optional[TransportError] = None

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closing or self._done.is_set()

    @property
    def cause(self) -> Optional[MCPError]:
        """The error that ended the read loop, once it has ended."""
        with self._lock:
            return self._cause

    def start(self) -> None:
        """Start the read loop. Safe to call more than once."""
        with self._lock:
            if self._closing or self._done.is_set():
                raise TransportClosedError("Transport is closed")
            if self._thread is not None:
                return
            self._set_nonblocking(self.pipe.stdin)
            self._thread = threading.Thread(
                target=self._read_loop, name="mcplink-reader", daemon=True
            )
            self._thread.start()

    def send(self, message: Union[Message, dict], timeout: Any = _TIMEOUT_NOT_SPECIFIED) -> None:
        """
        Send a JSON-RPC message as one newline-delimited frame.

        Uses non-blocking I/O with select so a server that stops reading its
        stdin cannot block the caller, or every other sender queued behind
        the send lock, past the deadline.

        Args:
            message: The message to send.
            timeout: Seconds allowed for taking the send lock and writing the
                    whole frame. Defaults to send_timeout; None waits forever.

        Raises:
            MCPTimeoutError: If the deadline passed before the frame went out.
                            If part of it had already been written the stream
                            can no longer be framed, so the server is
                            terminated and the connection dies with it.
            TransportClosedError: If shutdown has begun or the connection died.
            TransportError: On write errors.
            ProtocolError: If the message cannot be serialized.
        """
        if timeout is _TIMEOUT_NOT_SPECIFIED:
            timeout = self.send_timeout
        deadline = None if timeout is None else time.monotonic() + timeout
        data = self.codec.encode(message)

        if not self._send_lock.acquire(timeout=-1 if timeout is None else max(timeout, 0)):
            raise MCPTimeoutError(f"Timeout waiting to write to server stdin after {timeout}s")
        torn = False
        try:
            self._check_writable()
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("--> %s", data.decode('utf-8', errors='replace').rstrip())
            written = self._write_frame(data, deadline)
            if written < len(data):
                torn = written > 0
                if torn:
                    with self._lock:
                        self._broken = TransportError(
                            f"Write to server stdin timed out mid-frame ({written}/{len(data)} bytes)"
                        )
                raise MCPTimeoutError(
                    f"Timeout writing to server stdin after {written}/{len(data)} bytes"
                )
        finally:
            self._send_lock.release()
            if torn:
                logger.warning("Server stopped reading mid-frame, terminating it")
                self.pipe.terminate()

    def _check_writable(self) -> None:
        with self._lock:
            if self._broken is not None:
                raise self._broken
            if self._closing or self._done.is_set():
                raise TransportClosedError("Transport is closed")

    def _write_frame(self, data: bytes, deadline: Optional[float]) -> int:
        """Write data before the deadline. Returns the number of bytes written."""
        stdin = self.pipe.stdin
        if stdin is None:
            raise TransportError("Server stdin not available")
        view = memoryview(data)
        bytes_written = 0
        try:
            while bytes_written < len(data):
                if deadline is None:
                    wait = 1.0
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return bytes_written
                    wait = min(remaining, 1.0)

                # Wait for stdin to be writable
                _, writable, _ = select.select([], [stdin], [], wait)
                if not writable:
                    continue
                try:
                    n = stdin.write(view[bytes_written:])
                except BlockingIOError:
                    continue
                if n is None:
                    # Non-blocking write returned None (would block)
                    continue
                if n == 0:
                    raise TransportError("Write returned 0 bytes")
                bytes_written += n
            stdin.flush()
        except (BrokenPipeError, OSError, ValueError) as e:
            raise TransportError(f"Failed to send message: {e}") from e
        return bytes_written

    @staticmethod
    def _set_nonblocking(stream: IO[bytes]) -> None:
        """Set a stream's file descriptor to non-blocking mode."""
        fd = stream.fileno()
        flags = fcntl.fcntl(fd, fcntl.F_GETFL)
        fcntl.fcntl(fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)

    def _read_chunk(self) -> bytes:
        stdout = self.pipe.stdout
        reader = getattr(stdout, 'read1', None) or stdout.read
        return reader(READ_CHUNK_SIZE)

    def _read_loop(self) -> None:
        cause: Optional[MCPError] = None
        try:
            while True:
                try:
                    chunk = self._read_chunk()
                except (OSError, ValueError) as e:
                    if self._closing:
                        cause = TransportClosedError("Transport closed")
                    else:
                        cause = TransportError(f"Read error: {e}")
                    break
                if not chunk:
                    if self._closing:
                        cause = TransportClosedError("Transport closed")
                    elif self._broken is not None:
                        cause = self._broken
                    else:
                        cause = TransportClosedError("Server stdout closed unexpectedly")
                    break
                try:
                    items = self.codec.feed(chunk)
                except BufferOverflowError as e:
                    # Frames completed before the overflow still count
                    for item in e.items:
                        self._route(item)
                    raise
                for item in items:
                    self._route(item)
        except TransportError as e:
            cause = e
        except Exception as e:
            logger.exception("MCP read loop failed")
            cause = TransportError(f"Read loop failed: {e}")
        finally:
            if cause is None:
                cause = TransportClosedError("Transport closed")
            with self._lock:
                self._cause = cause
            self._done.set()
            logger.debug("Read loop finished: %s", cause)
            # Owner sees the closed state before any waiter wakes up
            if self.on_close is not None:
                try:
                    self.on_close(cause)
                except Exception as e:
                    logger.error("Exception in transport close callback: %s", e)
            self.router.drain_all(cause)

    def _route(self, item: Union[Message, MalformedMessageError]) -> None:
        if isinstance(item, MalformedMessageError):
            logger.warning("Dropping malformed message from server: %s", item)
            if self.on_malformed is not None:
                self.on_malformed(item)
            return

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("<-- %s", item.to_wire())

        if isinstance(item, Response):
            try:
                self.router.resolve(item)
            except UnmatchedResponseError as e:
                logger.warning("%s; dropping it", e)
        elif isinstance(item, Notification):
            self.router.dispatch_notification(item)
        else:
            self._answer_request(item)

    def _answer_request(self, request: Request) -> None:
        """Reply to a request initiated by the server."""
        try:
            if self.request_handler is None:
                raise RPCError(METHOD_NOT_FOUND, f"Method not found: {request.method}")
            reply = Response(id=request.id, result=self.request_handler(request))
        except RPCError as e:
            if e.code == METHOD_NOT_FOUND:
                logger.warning("Server sent unsupported request %r", request.method)
            reply = Response(id=request.id, error=ErrorObject(**e.to_dict()))
        except Exception as e:
            logger.error("Exception handling server request %r: %s", request.method, e)
            reply = Response(id=request.id, error=ErrorObject(code=INTERNAL_ERROR, message=str(e)))
        try:
            self.send(reply)
        except TransportError as e:
            logger.debug("Could not answer server request %r: %s", request.method, e)

    def wait_closed(self, timeout: Optional[float] = None) -> bool:
        """Wait for the read loop to finish. Returns False on timeout."""
        return self._done.wait(timeout)

    def close(self, timeout: Optional[float] = None) -> None:
        """
        Shut the connection down.

        Closes the server's stdin, waits for the read loop to see the stream
        end, and terminates the server if it does not exit in time. Safe to
        call multiple times and from any thread other than the read loop.
        """
        with self._lock:
            if self._closing:
                return
            self._closing = True
            thread = self._thread
        if timeout is None:
            timeout = self.terminate_timeout

        # Let an in-flight frame finish before cutting stdin
        acquired = self._send_lock.acquire(timeout=timeout)
        try:
            self.pipe.close_stdin()
        finally:
            if acquired:
                self._send_lock.release()

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.debug("Server did not close its stdout, terminating it")
                self.pipe.terminate()
                thread.join(timeout)
            if thread.is_alive():
                logger.warning("MCP read loop did not stop after terminating the server")

        if not self._done.is_set():
            # Loop never started or is stuck; waiters must still be released
            self.router.drain_all(TransportClosedError("Transport closed"))
        try:
            self.pipe.close()
        except OSError as e:
            logger.debug("Error closing server pipe: %s", e)
