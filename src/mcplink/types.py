"""
Message and payload models.

JSON-RPC 2.0 envelopes (Request, Response, Notification) are kept close to
the wire: params and results are plain JSON values (None, bool, int, float,
str, list, dict) and are never interpreted here. MCP payloads returned by the
client (tool descriptors, tool results, ...) are pydantic models that accept
the camelCase wire names and keep any fields they do not know about.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# JSON-RPC 2.0 version string
JSONRPC_VERSION = "2.0"

# JSON-RPC ids are strings or numbers; numbers that are whole floats collapse to int
RequestId = Union[int, str]

# Any JSON-compatible value
JSONValue = Any


class ClientState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSED = "closed"


# ============================================================================
# JSON-RPC envelopes
# ============================================================================

class _Envelope(BaseModel):
    model_config = ConfigDict(frozen=True, extra='ignore')

    def to_wire(self) -> dict[str, Any]:
        raise NotImplementedError


class Request(_Envelope):
    """A request; expects exactly one response carrying the same id."""

    id: RequestId
    method: str
    params: JSONValue = None

    def to_wire(self) -> dict[str, Any]:
        message: dict[str, Any] = {
            "jsonrpc": JSONRPC_VERSION,
            "id": self.id,
            "method": self.method,
        }
        if self.params is not None:
            message["params"] = self.params
        return message


class Notification(_Envelope):
    """A one-way message; never answered."""

    method: str
    params: JSONValue = None

    def to_wire(self) -> dict[str, Any]:
        message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.params is not None:
            message["params"] = self.params
        return message


class ErrorObject(_Envelope):
    code: int
    message: str
    data: JSONValue = None


class Response(_Envelope):
    """
    A response. Exactly one of result/error is present on the wire.

    `result` may legitimately be null, so presence is tracked through the
    set of fields the model was built with rather than by value.
    """

    id: Optional[RequestId] = None
    result: JSONValue = None
    error: Optional[ErrorObject] = None

    @model_validator(mode='after')
    def _exactly_one_outcome(self) -> "Response":
        has_result = 'result' in self.model_fields_set
        has_error = 'error' in self.model_fields_set and self.error is not None
        if has_result == has_error:
            raise ValueError("response must carry exactly one of 'result' or 'error'")
        return self

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_wire(self) -> dict[str, Any]:
        message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            message["error"] = self.error.model_dump(exclude_none=True)
        else:
            message["result"] = self.result
        return message


Message = Union[Request, Response, Notification]


# ============================================================================
# MCP payloads
# ============================================================================

class _Payload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra='allow',
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class InitializeResult(_Payload):
    protocol_version: str
    capabilities: dict[str, Any] = Field(default_factory=dict)
    server_info: dict[str, Any] = Field(default_factory=dict)
    instructions: Optional[str] = None


class ToolDescriptor(_Payload):
    """A tool advertised by the server. Immutable."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)
    annotations: Optional[dict[str, Any]] = None

    @field_validator('description', mode='before')
    @classmethod
    def _none_description(cls, value: Any) -> Any:
        return "" if value is None else value


class ListToolsResult(_Payload):
    tools: list[ToolDescriptor] = Field(default_factory=list)
    next_cursor: Optional[str] = None


class TextContent(_Payload):
    type: Literal['text'] = 'text'
    text: str


class ImageContent(_Payload):
    type: Literal['image'] = 'image'
    data: str = ""
    mime_type: Optional[str] = None


class AudioContent(_Payload):
    type: Literal['audio'] = 'audio'
    data: str = ""
    mime_type: Optional[str] = None


class EmbeddedResource(_Payload):
    type: Literal['resource'] = 'resource'
    resource: dict[str, Any] = Field(default_factory=dict)


class ResourceLink(_Payload):
    type: Literal['resource_link'] = 'resource_link'
    uri: str
    name: Optional[str] = None
    mime_type: Optional[str] = None


class UnknownContent(_Payload):
    """Content item with a tag this client does not know. All fields are kept."""

    type: str


ContentItem = Union[TextContent, ImageContent, AudioContent, EmbeddedResource, ResourceLink, UnknownContent]

CONTENT_TYPES: dict[str, type[_Payload]] = {
    'text': TextContent,
    'image': ImageContent,
    'audio': AudioContent,
    'resource': EmbeddedResource,
    'resource_link': ResourceLink,
}


def parse_content_item(item: Any) -> ContentItem:
    """Build the content model matching an item's `type` tag."""
    if isinstance(item, _Payload):
        return item
    if not isinstance(item, dict):
        raise ValueError(f"content item must be an object, got {type(item).__name__}")
    if not isinstance(item.get('type'), str):
        raise ValueError("content item is missing its 'type' tag")
    return CONTENT_TYPES.get(item['type'], UnknownContent).model_validate(item)


class CallToolResult(_Payload):
    content: list[ContentItem] = Field(default_factory=list)
    is_error: bool = False
    structured_content: Optional[dict[str, Any]] = None

    @field_validator('content', mode='before')
    @classmethod
    def _parse_content(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        return [parse_content_item(item) for item in value]

    def as_text(self) -> str:
        """Normalize the content items into a single string."""
        from .formatting import format_content
        return format_content(self.content)


class Resource(_Payload):
    uri: str
    name: str = ""
    description: Optional[str] = None
    mime_type: Optional[str] = None


class ListResourcesResult(_Payload):
    resources: list[Resource] = Field(default_factory=list)
    next_cursor: Optional[str] = None


class ReadResourceResult(_Payload):
    contents: list[dict[str, Any]] = Field(default_factory=list)


class Prompt(_Payload):
    name: str
    description: Optional[str] = None
    arguments: list[dict[str, Any]] = Field(default_factory=list)


class ListPromptsResult(_Payload):
    prompts: list[Prompt] = Field(default_factory=list)
    next_cursor: Optional[str] = None


class GetPromptResult(_Payload):
    description: Optional[str] = None
    messages: list[dict[str, Any]] = Field(default_factory=list)
