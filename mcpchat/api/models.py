"""Shared data models for the conversation core.

Content blocks mirror the Anthropic Messages API wire format; to_dict()
produces exactly what the provider expects and block_from_dict() parses
provider responses back into typed blocks.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Union


@dataclass
class TextBlock:
    text: str
    type: ClassVar[str] = "text"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass
class ImageBlock:
    """Base64 image; only produced by tool result passthrough."""

    media_type: str
    data: str
    type: ClassVar[str] = "image"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "source": {"type": "base64", "media_type": self.media_type, "data": self.data},
        }


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)  # opaque, provider-defined
    type: ClassVar[str] = "tool_use"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "id": self.id, "name": self.name, "input": self.input}


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: list[TextBlock | ImageBlock] | str = field(default_factory=list)
    is_error: bool | None = None  # None = unspecified, treated as non-error
    type: ClassVar[str] = "tool_result"

    def to_dict(self) -> dict[str, Any]:
        content: Any = self.content
        if not isinstance(content, str):
            content = [block.to_dict() for block in content]
        data: dict[str, Any] = {
            "type": self.type,
            "tool_use_id": self.tool_use_id,
            "content": content,
        }
        if self.is_error is not None:
            data["is_error"] = self.is_error
        return data


ContentBlock = Union[TextBlock, ImageBlock, ToolUseBlock, ToolResultBlock]


def block_from_dict(data: dict[str, Any]) -> ContentBlock:
    """Parse a wire-format content block. Raises ValueError on unknown types."""
    block_type = data.get("type")
    if block_type == "text":
        return TextBlock(text=data.get("text", ""))
    if block_type == "image":
        source = data.get("source", {})
        return ImageBlock(media_type=source.get("media_type", "image/png"), data=source.get("data", ""))
    if block_type == "tool_use":
        return ToolUseBlock(id=data["id"], name=data["name"], input=data.get("input") or {})
    if block_type == "tool_result":
        raw = data.get("content", [])
        content: list[TextBlock | ImageBlock] | str
        if isinstance(raw, str):
            content = raw
        else:
            content = [block_from_dict(item) for item in raw]  # type: ignore[misc]
        return ToolResultBlock(
            tool_use_id=data["tool_use_id"],
            content=content,
            is_error=data.get("is_error"),
        )
    raise ValueError(f"Unsupported content block type: {block_type!r}")


@dataclass
class Message:
    """A single message in a conversation.

    String content is shorthand for a single text block.
    """

    role: str  # "user" or "assistant"
    content: str | list[ContentBlock]

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [block.to_dict() for block in self.content]}


@dataclass
class Conversation:
    """Tracks a multi-turn conversation for one session."""

    session_id: str
    messages: list[Message] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.messages)


@dataclass
class ToolDescriptor:
    """Tool metadata refreshed from the tool provider; the schema is opaque."""

    name: str
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "input_schema": self.input_schema}
        if self.description is not None:
            data["description"] = self.description
        return data


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ApiResponse:
    """Parsed response from the completion provider."""

    content: list[ContentBlock]
    stop_reason: str = "end_turn"  # end_turn, max_tokens, tool_use, stop_sequence
    usage: Usage | None = None


@dataclass
class SessionSettings:
    """Runtime settings of one session.

    Mutable; changes are read at the next completion call and never
    applied retroactively.
    """

    system_prompt: str = ""
    model_name: str = "claude-sonnet-4-5-20250929"
    max_output_tokens: int = 2048
    max_tool_calls_per_round: int = 10
    tool_call_timeout_sec: float = 300
    max_context_tokens: int = 200_000
    safety_margin: float = 0.99
    charge_for_tokens: bool = False

    @property
    def budget(self) -> int:
        """Token ceiling after the safety margin."""
        return math.floor(self.max_context_tokens * self.safety_margin)

    def update(self, **changes: Any) -> list[str]:
        """Apply known, non-None settings. Returns the names that changed."""
        known = {f.name for f in fields(self)}
        changed = []
        for name, value in changes.items():
            if name not in known or value is None:
                continue
            if getattr(self, name) != value:
                setattr(self, name, value)
                changed.append(name)
        return changed
