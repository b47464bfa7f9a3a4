"""Conversation sanitizer -- base64 redaction and orphaned tool_use repair.

Both passes are pure: the input list and its messages are never mutated,
and running sanitize() on its own output returns an equal conversation.
"""

from __future__ import annotations

import logging

from mcpchat.api.models import ContentBlock, Message, TextBlock, ToolResultBlock, ToolUseBlock
from mcpchat.utils import is_base64

logger = logging.getLogger(__name__)

BASE64_PLACEHOLDER = "[Base64 encoded content - image was pruned to save context tokens]"
MISSING_RESULT_TEXT = "tool use without result — reason unknown"


def sanitize(messages: list[Message]) -> list[Message]:
    """Redact base64 payloads and add results for orphaned tool_use blocks."""
    redacted = [_redact_message(m) for m in messages]
    return _repair(redacted)


# ------------------------------------------------------------------
# Redaction
# ------------------------------------------------------------------


def _redact_text(text: str) -> str:
    return BASE64_PLACEHOLDER if is_base64(text) else text


def _redact_block(block: ContentBlock) -> ContentBlock:
    if isinstance(block, TextBlock):
        text = _redact_text(block.text)
        return block if text is block.text else TextBlock(text=text)

    if isinstance(block, ToolResultBlock):
        if isinstance(block.content, str):
            content = _redact_text(block.content)
            if content is block.content:
                return block
            return ToolResultBlock(block.tool_use_id, content, block.is_error)
        nested = [_redact_block(b) for b in block.content]
        if all(a is b for a, b in zip(nested, block.content)):
            return block
        return ToolResultBlock(block.tool_use_id, nested, block.is_error)  # type: ignore[arg-type]

    return block


def _redact_message(message: Message) -> Message:
    if isinstance(message.content, str):
        content = _redact_text(message.content)
        return message if content is message.content else Message(message.role, content)

    blocks = [_redact_block(b) for b in message.content]
    if all(a is b for a, b in zip(blocks, message.content)):
        return message
    return Message(message.role, blocks)


# ------------------------------------------------------------------
# Repair
# ------------------------------------------------------------------


def _repair(messages: list[Message]) -> list[Message]:
    # Results may appear before or after their tool_use, so collect both sides first
    tool_use_ids: list[str] = []
    result_ids: set[str] = set()
    for message in messages:
        if isinstance(message.content, str):
            continue
        for block in message.content:
            if isinstance(block, ToolUseBlock):
                if block.id not in tool_use_ids:
                    tool_use_ids.append(block.id)
            elif isinstance(block, ToolResultBlock):
                result_ids.add(block.tool_use_id)

    missing = [tid for tid in tool_use_ids if tid not in result_ids]
    if not missing:
        return list(messages)

    repaired = list(messages)
    for tool_use_id in missing:
        logger.debug("Adding synthetic tool_result for tool_use %s", tool_use_id)
        repaired.append(Message(
            role="user",
            content=[ToolResultBlock(tool_use_id=tool_use_id, content=MISSING_RESULT_TEXT)],
        ))
    return repaired
