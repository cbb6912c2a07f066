"""Normalize tool result content into a single string."""

from __future__ import annotations

from typing import Any, Iterable, Optional


def _field(item: Any, name: str, alias: Optional[str] = None) -> Any:
    if isinstance(item, dict):
        if name in item:
            return item[name]
        return item.get(alias) if alias else None
    return getattr(item, name, None)


def format_content_item(item: Any) -> str:
    """
    Render one content item.

    Text contributes its text verbatim. Every other kind contributes a short
    bracketed marker so position is kept even though the payload is dropped.
    Accepts content models or the raw dicts from the wire.
    """
    kind = _field(item, 'type')
    if kind == 'text':
        return _field(item, 'text') or ""
    if kind == 'image':
        return f"[Image: {_field(item, 'mime_type', 'mimeType') or 'unknown'}]"
    if kind == 'audio':
        return f"[Audio: {_field(item, 'mime_type', 'mimeType') or 'unknown'}]"
    if kind == 'resource':
        resource = _field(item, 'resource') or {}
        uri = resource.get('uri') if isinstance(resource, dict) else None
        return f"[Resource: {uri or 'unknown'}]"
    if kind == 'resource_link':
        return f"[Resource link: {_field(item, 'uri') or 'unknown'}]"
    return f"[Unsupported content: {kind or 'unknown'}]"


def format_content(items: Iterable[Any]) -> str:
    """Join rendered content items with newlines, in order."""
    return '\n'.join(format_content_item(item) for item in items).strip()
