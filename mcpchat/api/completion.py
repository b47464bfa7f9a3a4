"""Retrying completion client -- the single choke point for outbound requests.

Every request is sanitized and fitted to the context budget before it is
sent. Rate-limit (429) and overload (529) errors are retried with a
linear backoff; everything else propagates on the first failure.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from mcpchat.api.models import ApiResponse, Conversation, Message, SessionSettings, ToolDescriptor
from mcpchat.api.sanitizer import sanitize
from mcpchat.api.truncation import ContextBudgetEnforcer
from mcpchat.errors import RATE_LIMIT_STATUS, RetriesExhaustedError, classify_status, is_structural_error
from mcpchat.tracing import KIND_LLM, NoopTracer, Tracer

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_MS = 2000


class CompletionProvider(Protocol):
    async def create_message(
        self,
        model: str,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDescriptor],
        max_tokens: int,
    ) -> ApiResponse: ...


class BillingHook(Protocol):
    """Charges token usage; errors propagate to the caller of complete()."""

    async def charge_tokens(self, input_tokens: int, output_tokens: int, model: str) -> None: ...


def summarize_conversation(messages: list[Message]) -> list[dict[str, Any]]:
    """Redacted structural view: role, block types and length per message."""
    summary = []
    for index, message in enumerate(messages):
        if isinstance(message.content, str):
            summary.append({
                "index": index,
                "role": message.role,
                "content_types": "string",
                "content_length": len(message.content),
            })
        else:
            summary.append({
                "index": index,
                "role": message.role,
                "content_types": [block.type for block in message.content],
                "content_length": len(message.content),
            })
    return summary


def retries_exhausted_message(status: int, max_retries: int) -> str:
    if status == RATE_LIMIT_STATUS:
        return (
            f"Rate limit exceeded after {max_retries} attempts. Please try again in a few "
            "minutes or consider switching to a different model."
        )
    return (
        "Server is currently experiencing high load. Please try again in a few moments "
        "or consider switching to a different model."
    )


class CompletionClient:
    """Wraps a completion provider with budget enforcement, retries and billing."""

    def __init__(
        self,
        provider: CompletionProvider,
        enforcer: ContextBudgetEnforcer,
        tracer: Tracer | None = None,
        billing: BillingHook | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay_ms: float = DEFAULT_BASE_DELAY_MS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._enforcer = enforcer
        self._tracer = tracer or NoopTracer()
        self._billing = billing
        self._max_retries = max_retries
        self._base_delay_ms = base_delay_ms
        self._sleep = sleep

    async def complete(
        self,
        conversation: Conversation,
        settings: SessionSettings,
        tools: list[ToolDescriptor],
    ) -> ApiResponse:
        """Fit the conversation to the budget, then call the provider with retries.

        Mutates conversation.messages to the sanitized, truncated list that
        is sent, so local state always matches what the provider saw.
        """
        span = self._tracer.start_span("createMessage", {
            "span.kind": KIND_LLM,
            "llm.model_name": settings.model_name,
            "session.id": conversation.session_id,
        })
        try:
            conversation.messages = sanitize(conversation.messages)
            conversation.messages = await self._enforcer.enforce(conversation.messages, settings, tools)

            response = await self._create_with_retry(conversation, settings, tools)

            usage = response.usage
            if usage:
                span.set_attribute("llm.token_count.prompt", usage.input_tokens)
                span.set_attribute("llm.token_count.completion", usage.output_tokens)
                if self._billing and settings.charge_for_tokens:
                    await self._billing.charge_tokens(
                        usage.input_tokens, usage.output_tokens, settings.model_name,
                    )
            span.set_status(True)
            return response
        except Exception as e:
            span.record_exception(e)
            span.set_status(False, str(e))
            raise
        finally:
            span.end()

    async def _create_with_retry(
        self,
        conversation: Conversation,
        settings: SessionSettings,
        tools: list[ToolDescriptor],
    ) -> ApiResponse:
        for attempt in range(1, self._max_retries + 1):
            try:
                logger.debug("Making API call with %d messages", len(conversation.messages))
                return await self._provider.create_message(
                    settings.model_name,
                    conversation.messages,
                    settings.system_prompt,
                    tools,
                    settings.max_output_tokens,
                )
            except Exception as e:
                if is_structural_error(e):
                    self._log_structure(conversation)

                status = classify_status(e)
                if status is None:
                    raise

                error_type = "Rate limit" if status == RATE_LIMIT_STATUS else "Server overload"
                if attempt >= self._max_retries:
                    logger.warning("%s persisted after %d attempts", error_type, attempt)
                    raise RetriesExhaustedError(
                        retries_exhausted_message(status, self._max_retries), status_code=status,
                    ) from e

                delay_ms = attempt * self._base_delay_ms
                logger.info(
                    "%s hit, attempt %d/%d. Retrying in %.1f seconds...",
                    error_type, attempt, self._max_retries, delay_ms / 1000,
                )
                await self._sleep(delay_ms / 1000)

        # max_retries >= 1, so the loop always returns or raises
        raise RuntimeError("Unknown error after retries in completion client")

    @staticmethod
    def _log_structure(conversation: Conversation) -> None:
        try:
            logger.error(
                "Conversation structure error. Conversation length: %d, structure: %s",
                len(conversation.messages),
                summarize_conversation(conversation.messages),
            )
        except Exception:
            logger.warning("Could not summarize conversation for diagnostics")
