"""Tests for mcplink.formatting — turning tool content into text."""

from mcplink.formatting import format_content, format_content_item
from mcplink.types import CallToolResult


class TestFormatContentItem:
    def test_text(self):
        assert format_content_item({"type": "text", "text": "hello"}) == "hello"

    def test_image_uses_mime_type(self):
        assert format_content_item({"type": "image", "data": "AAAA", "mimeType": "image/png"}) == "[Image: image/png]"

    def test_image_without_mime_type(self):
        assert format_content_item({"type": "image", "data": "AAAA"}) == "[Image: unknown]"

    def test_audio(self):
        assert format_content_item({"type": "audio", "mimeType": "audio/wav"}) == "[Audio: audio/wav]"

    def test_embedded_resource(self):
        item = {"type": "resource", "resource": {"uri": "file:///notes.txt", "text": "secret"}}
        assert format_content_item(item) == "[Resource: file:///notes.txt]"

    def test_resource_link(self):
        assert format_content_item({"type": "resource_link", "uri": "file:///a"}) == "[Resource link: file:///a]"

    def test_unknown_kind(self):
        assert format_content_item({"type": "hologram"}) == "[Unsupported content: hologram]"


class TestFormatContent:
    def test_joins_with_newlines_in_order(self):
        items = [
            {"type": "text", "text": "first"},
            {"type": "image", "mimeType": "image/jpeg"},
            {"type": "text", "text": "last"},
        ]
        assert format_content(items) == "first\n[Image: image/jpeg]\nlast"

    def test_strips_outer_whitespace(self):
        assert format_content([{"type": "text", "text": "\n  hi  \n"}]) == "hi"

    def test_empty(self):
        assert format_content([]) == ""


class TestCallToolResultText:
    def test_models_and_dicts_agree(self):
        raw = [
            {"type": "text", "text": "hello"},
            {"type": "image", "data": "AAAA", "mimeType": "image/png"},
            {"type": "resource", "resource": {"uri": "mem://x"}},
            {"type": "widget", "size": 3},
        ]
        result = CallToolResult.model_validate({"content": raw})
        assert result.as_text() == format_content(raw)
        assert result.as_text() == "hello\n[Image: image/png]\n[Resource: mem://x]\n[Unsupported content: widget]"

    def test_unknown_content_keeps_fields(self):
        result = CallToolResult.model_validate({"content": [{"type": "widget", "size": 3}]})
        assert result.content[0].type == "widget"
        assert result.content[0].model_extra == {"size": 3}
