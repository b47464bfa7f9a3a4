"""Tests for content blocks, messages and session settings."""

from __future__ import annotations

import pytest

from mcpchat.api.models import (
    ImageBlock,
    Message,
    SessionSettings,
    TextBlock,
    ToolDescriptor,
    ToolResultBlock,
    ToolUseBlock,
    block_from_dict,
)


class TestBlocks:
    def test_tool_result_omits_unspecified_error_flag(self):
        assert ToolResultBlock(tool_use_id="t1", content="x").to_dict() == {
            "type": "tool_result", "tool_use_id": "t1", "content": "x",
        }

    def test_image_wire_format(self):
        assert ImageBlock("image/png", "AAAA").to_dict() == {
            "type": "image",
            "source": {"type": "base64", "media_type": "image/png", "data": "AAAA"},
        }

    def test_parse_tool_result_with_nested_blocks(self):
        block = block_from_dict({
            "type": "tool_result",
            "tool_use_id": "t1",
            "content": [{"type": "text", "text": "a"}, {"type": "image", "source": {"media_type": "image/gif", "data": "R0lG"}}],
            "is_error": True,
        })
        assert block == ToolResultBlock("t1", [TextBlock("a"), ImageBlock("image/gif", "R0lG")], True)

    def test_parse_tool_use_without_input(self):
        assert block_from_dict({"type": "tool_use", "id": "t1", "name": "n"}) == ToolUseBlock("t1", "n", {})

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError, match="redacted_thinking"):
            block_from_dict({"type": "redacted_thinking"})


class TestMessage:
    def test_string_content_stays_a_string(self):
        assert Message("user", "hi").to_dict() == {"role": "user", "content": "hi"}

    def test_block_content_serialized(self):
        message = Message("assistant", [TextBlock("x"), ToolUseBlock("t1", "search", {"q": "a"})])
        assert message.to_dict() == {
            "role": "assistant",
            "content": [
                {"type": "text", "text": "x"},
                {"type": "tool_use", "id": "t1", "name": "search", "input": {"q": "a"}},
            ],
        }


class TestToolDescriptor:
    def test_description_optional(self):
        assert ToolDescriptor(name="t").to_dict() == {
            "name": "t", "input_schema": {"type": "object", "properties": {}},
        }


class TestSessionSettings:
    def test_update_ignores_unknown_and_none(self):
        settings = SessionSettings()
        assert settings.update(nope=1, model_name=None, max_output_tokens=10) == ["max_output_tokens"]
        assert settings.max_output_tokens == 10
