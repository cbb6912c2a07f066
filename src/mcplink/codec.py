"""
Newline-delimited JSON-RPC framing.

Each frame is one compact JSON object followed by b"\\n". FrameCodec.feed()
accepts arbitrary chunks read from a byte stream, keeps any incomplete tail
for the next call, and returns the decoded messages in arrival order. A frame
that fails to decode is returned as a MalformedMessageError in its position
rather than raised, so one corrupt line does not stop the frames after it.
"""

from __future__ import annotations

import json
from typing import Any, Union

from pydantic import ValidationError

from .errors import BufferOverflowError, MalformedMessageError, ProtocolError
from .types import JSONRPC_VERSION, Message, Notification, Request, Response

# Maximum buffered partial frame to prevent memory exhaustion (100 MB)
MAX_BUFFER_SIZE = 100 * 1024 * 1024

FeedItem = Union[Request, Response, Notification, MalformedMessageError]


def _preview(raw: bytes, limit: int = 200) -> str:
    text = raw.decode('utf-8', errors='replace')
    return text if len(text) <= limit else text[:limit] + "..."


class FrameCodec:
    """Stateful encoder/decoder for newline-delimited JSON-RPC messages."""

    def __init__(self, max_buffer_size: int = MAX_BUFFER_SIZE) -> None:
        self.max_buffer_size = max_buffer_size
        self._buffer = b""

    @property
    def buffered(self) -> int:
        """Number of bytes held for an incomplete frame."""
        return len(self._buffer)

    def reset(self) -> None:
        self._buffer = b""

    @staticmethod
    def encode(message: Union[Message, dict]) -> bytes:
        """
        Encode one message as a frame.

        Args:
            message: A Request/Response/Notification model or a plain dict
                     already shaped like a JSON-RPC message.

        Raises:
            ProtocolError: If the message cannot be serialized.
        """
        payload = message.to_wire() if hasattr(message, 'to_wire') else message
        try:
            return (json.dumps(payload, separators=(',', ':')) + "\n").encode('utf-8')
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Failed to serialize message: {e}") from e

    def feed(self, data: bytes) -> list[FeedItem]:
        """
        Add bytes from the stream and return every complete frame decoded.

        Raises:
            BufferOverflowError: If an unterminated frame outgrows
                                 max_buffer_size. Frames completed by the same
                                 chunk are carried on the exception.
        """
        if data:
            self._buffer += data
        items: list[FeedItem] = []
        while b"\n" in self._buffer:
            line, self._buffer = self._buffer.split(b"\n", 1)
            line = line.strip()
            if not line:
                continue
            try:
                items.append(self.decode(line))
            except MalformedMessageError as e:
                items.append(e)
        if len(self._buffer) > self.max_buffer_size:
            self._buffer = b""
            raise BufferOverflowError(f"Buffer size exceeded {self.max_buffer_size} bytes", items)
        return items

    @classmethod
    def decode(cls, line: bytes) -> Message:
        """
        Decode a single frame (without its trailing newline).

        Raises:
            MalformedMessageError: If the frame is not a valid JSON-RPC 2.0 message.
        """
        try:
            decoded = line.decode('utf-8')
        except UnicodeDecodeError as e:
            raise MalformedMessageError(f"Invalid UTF-8 from server: {e}", line) from e
        try:
            message = json.loads(decoded)
        except json.JSONDecodeError as e:
            raise MalformedMessageError(f"Invalid JSON from server: {e}", line) from e
        return cls.classify(message, line)

    @staticmethod
    def classify(message: Any, raw: bytes = b"") -> Message:
        """Validate a parsed JSON value and build the matching message model."""
        if not isinstance(message, dict):
            raise MalformedMessageError(
                f"Expected JSON object, got {type(message).__name__}", raw
            )

        if message.get("jsonrpc") != JSONRPC_VERSION:
            raise MalformedMessageError(
                f"Invalid or missing jsonrpc version: {message.get('jsonrpc')!r}", raw
            )

        has_id = "id" in message
        has_method = "method" in message
        has_result = "result" in message
        has_error = "error" in message

        if has_id:
            id_value = message["id"]
            # bool is an int subclass but never a valid id
            if isinstance(id_value, bool) or not (
                id_value is None or isinstance(id_value, (str, int, float))
            ):
                raise MalformedMessageError(
                    f"Invalid JSON-RPC id type: {type(id_value).__name__}", raw
                )

        fields = {k: v for k, v in message.items() if k != "jsonrpc"}
        try:
            if has_method:
                if has_result or has_error:
                    raise MalformedMessageError(
                        "Invalid JSON-RPC message: 'method' together with 'result' or 'error'", raw
                    )
                if not has_id:
                    return Notification.model_validate(fields)
                if message["id"] is None:
                    raise MalformedMessageError("JSON-RPC request id must not be null", raw)
                return Request.model_validate(fields)

            if has_result or has_error:
                if not has_id:
                    raise MalformedMessageError("JSON-RPC response missing 'id' field", raw)
                if has_result and has_error:
                    raise MalformedMessageError(
                        "Invalid JSON-RPC response: cannot have both 'result' and 'error'", raw
                    )
                return Response.model_validate(fields)
        except ValidationError as e:
            raise MalformedMessageError(
                f"Invalid JSON-RPC message {_preview(raw)}: {e.error_count()} validation error(s)", raw
            ) from e

        raise MalformedMessageError(
            "Invalid JSON-RPC message: must have 'method', 'result', or 'error'", raw
        )
