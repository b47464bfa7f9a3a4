"""Context budget enforcement -- keeps the conversation under the token ceiling.

Removes the oldest user/assistant rounds until the token counter reports a
count within SessionSettings.budget. Tool structure broken by the removal is
repaired by the sanitizer after every step.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable
from typing import Protocol

from mcpchat.api.models import Message, SessionSettings, ToolDescriptor
from mcpchat.api.sanitizer import sanitize

logger = logging.getLogger(__name__)

# Keeps one round of user and assistant messages
MIN_CONVERSATION_LENGTH = 2


class TokenCounter(Protocol):
    """Counts input tokens the way the completion provider will."""

    async def count_tokens(
        self,
        model: str,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDescriptor],
    ) -> int: ...


class ContextBudgetEnforcer:
    """Truncates a conversation to fit the context window.

    Trusts only the token counter. A counting failure is treated as an
    unbounded count so the conversation is truncated toward the floor
    rather than sent oversized.
    """

    def __init__(
        self,
        counter: TokenCounter,
        delay_ms: float = 5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._counter = counter
        self._delay = delay_ms / 1000
        self._sleep = sleep

    async def count(
        self,
        messages: list[Message],
        settings: SessionSettings,
        tools: list[ToolDescriptor],
    ) -> float:
        """Token count of messages; math.inf if the counter fails."""
        if not messages:
            return 0
        try:
            return await self._counter.count_tokens(
                settings.model_name, messages, settings.system_prompt, tools,
            )
        except Exception as e:
            logger.warning("Error counting tokens: %s", e)
            return math.inf

    async def enforce(
        self,
        messages: list[Message],
        settings: SessionSettings,
        tools: list[ToolDescriptor] | None = None,
    ) -> list[Message]:
        """Return messages truncated to fit settings.budget, always sanitized."""
        if len(messages) <= MIN_CONVERSATION_LENGTH:
            return messages

        tools = tools or []
        budget = settings.budget
        current = await self.count(messages, settings, tools)
        if current <= budget:
            logger.debug(
                "[Context truncation] Token count %s within limit %d, no truncation needed",
                current, budget,
            )
            return sanitize(messages)

        logger.info(
            "[Context truncation] Token count %s exceeds limit %d, truncating conversation",
            current, budget,
        )
        initial_count = len(messages)
        truncated = list(messages)

        while current > budget and len(truncated) - 2 >= MIN_CONVERSATION_LENGTH:
            # Drop a whole user/assistant round; dropping a single message can
            # make the provider report a higher count than before
            try:
                candidate = sanitize(truncated[2:])
                current = await self.count(candidate, settings, tools)
            except Exception as e:
                logger.error("Error during context window limit check: %s", e)
                break
            truncated = candidate
            logger.debug(
                "[Context truncation] New token count %s, %d messages remaining",
                current, len(truncated),
            )
            await self._sleep(self._delay)

        logger.info(
            "[Context truncation] Finished. Removed %d messages. Token count: %s. Messages remaining: %d",
            initial_count - len(truncated), current, len(truncated),
        )
        return sanitize(truncated)
