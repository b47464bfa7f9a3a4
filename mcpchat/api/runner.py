"""Conversation manager -- runs user queries through the tool use loop.

One ConversationManager per session. A query is appended to the
conversation, a completion is requested, and the response is walked in
provider order: text is emitted immediately, tool_use blocks are emitted
and then executed one at a time. Tool results go back to the model as a
single user message and the loop repeats with the next round until a
response requests no tools.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from mcpchat.api.completion import CompletionClient
from mcpchat.api.models import (
    ApiResponse,
    ContentBlock,
    Conversation,
    Message,
    SessionSettings,
    TextBlock,
    ToolDescriptor,
    ToolResultBlock,
    ToolUseBlock,
)
from mcpchat.api.sanitizer import sanitize
from mcpchat.api.tools import ToolCallResult, ToolInvoker, process_tool_results
from mcpchat.errors import QueryInProgressError, ToolInvocationError
from mcpchat.tracing import KIND_AGENT, KIND_TOOL, NoopTracer, Tracer

logger = logging.getLogger(__name__)

# Live event sink: (role, content) -> None
EventSink = Callable[[str, "str | list[ContentBlock]"], Awaitable[None]]

TOOL_LIMIT_MESSAGE = (
    "Too many tool calls in a single turn! This has been implemented to prevent infinite loops.\n"
    "Limit is {limit}.\n"
    'You can increase the limit by setting the "maxNumberOfToolCallsPerQuery" parameter.'
)


class ConversationManager:
    """Owns one session's conversation and drives the tool use loop.

    At most one query runs at a time; a concurrent query is rejected
    with QueryInProgressError.
    """

    def __init__(
        self,
        completion: CompletionClient,
        invoker: ToolInvoker,
        settings: SessionSettings,
        tracer: Tracer | None = None,
        session_id: str | None = None,
        history: list[Message] | None = None,
    ) -> None:
        self._completion = completion
        self._invoker = invoker
        self._settings = settings
        self._tracer = tracer or NoopTracer()
        self._conversation = Conversation(
            session_id=session_id or str(uuid.uuid4()),
            messages=list(history or []),
        )
        self._tools: list[ToolDescriptor] = []
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Session state
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self._conversation.session_id

    @property
    def settings(self) -> SessionSettings:
        return self._settings

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    @property
    def tools(self) -> list[ToolDescriptor]:
        return list(self._tools)

    @property
    def busy(self) -> bool:
        """True while a query is being processed."""
        return self._lock.locked()

    def reset_conversation(self) -> None:
        self._conversation.messages = []
        logger.info("Conversation %s reset", self.session_id)

    def update_settings(self, **changes: Any) -> list[str]:
        """Change runtime settings; takes effect at the next completion call."""
        changed = self._settings.update(**changes)
        if changed:
            logger.info("Session %s settings updated: %s", self.session_id, ", ".join(changed))
        return changed

    async def refresh_tools(self) -> list[ToolDescriptor]:
        """Reload tool descriptors from the tool invoker."""
        self._tools = await self._invoker.list_tools()
        logger.debug("Tools available: %s", [t.name for t in self._tools])
        return self.tools

    def get_conversation(self) -> list[Message]:
        """Flattened history for clients.

        Text blocks become plain string messages; tool_use and tool_result
        blocks become single-block messages.
        """
        result: list[Message] = []
        for message in self._conversation.messages:
            if isinstance(message.content, str):
                result.append(message)
                continue
            for block in message.content:
                if isinstance(block, TextBlock):
                    result.append(Message(role=message.role, content=block.text or ""))
                elif isinstance(block, (ToolUseBlock, ToolResultBlock)):
                    result.append(Message(role=message.role, content=[block]))
        return result

    # ------------------------------------------------------------------
    # Query processing
    # ------------------------------------------------------------------

    async def process_user_query(self, query: str, emit: EventSink) -> None:
        """Run one user query to completion, emitting live events.

        On failure a visible assistant error message is appended and
        emitted, then the error is re-raised.
        """
        if self._lock.locked():
            raise QueryInProgressError(
                f"Session {self.session_id} is still processing a previous query"
            )

        async with self._lock:
            span = self._tracer.start_span("processUserQuery", {
                "span.kind": KIND_AGENT,
                "input.value": query,
                "llm.model_name": self._settings.model_name,
                "session.id": self.session_id,
            })
            try:
                logger.debug("Call LLM with user query: %s", query)
                self._conversation.messages.append(Message(role="user", content=query))

                response = await self._completion.complete(self._conversation, self._settings, self._tools)
                logger.debug("Token usage: %s", response.usage)
                await self._run_rounds(response, emit)

                output_text = "\n".join(
                    b.text for b in response.content if isinstance(b, TextBlock)
                )
                if output_text:
                    span.set_attribute("output.value", output_text)
                span.set_status(True)
            except Exception as e:
                error_msg = str(e) or e.__class__.__name__
                logger.error("Error processing query in session %s: %s", self.session_id, error_msg)
                self._conversation.messages = sanitize(self._conversation.messages)
                self._conversation.messages.append(Message(role="assistant", content=error_msg))
                await emit("assistant", error_msg)
                span.record_exception(e)
                span.set_status(False, error_msg)
                raise
            finally:
                span.end()

    async def _run_rounds(self, response: ApiResponse, emit: EventSink) -> None:
        """Process responses round by round until no tool is requested."""
        limit = self._settings.max_tool_calls_per_round
        calls_made = 0
        round_ = 0

        while True:
            assistant_blocks: list[ContentBlock] = []
            queued: list[ToolUseBlock] = []

            for block in response.content:
                if isinstance(block, TextBlock):
                    assistant_blocks.append(block)
                    await emit("assistant", block.text or "")
                elif isinstance(block, ToolUseBlock):
                    if calls_made + len(queued) >= limit:
                        msg = TOOL_LIMIT_MESSAGE.format(limit=limit)
                        logger.info("Tool call limit %d reached in round %d", limit, round_)
                        assistant_blocks.append(TextBlock(text=msg))
                        await emit("assistant", msg)
                        break
                    assistant_blocks.append(block)
                    await emit("assistant", [block])
                    queued.append(block)

            # The assistant's turn ends here; the user turn follows only if tools run
            self._conversation.messages.append(Message(role="assistant", content=assistant_blocks))
            if not queued:
                logger.debug("No tool_use blocks queued, round %d ends the query", round_)
                return

            results: list[ContentBlock] = []
            for block in queued:
                result = await self._call_tool(block, round_)
                results.append(result)
                await emit("user", [result])
            calls_made += len(queued)

            self._conversation.messages.append(Message(role="user", content=results))

            logger.debug("Requesting model response to tool results (round %d)", round_)
            response = await self._completion.complete(self._conversation, self._settings, self._tools)
            round_ += 1

    async def _call_tool(self, block: ToolUseBlock, round_: int) -> ToolResultBlock:
        """Invoke one tool; failures become an is_error tool_result."""
        timeout = self._settings.tool_call_timeout_sec
        span = self._tracer.start_span("toolCall", {
            "span.kind": KIND_TOOL,
            "tool.name": block.name,
            "tool.parameters": json.dumps(block.input, default=str),
            "session.id": self.session_id,
            "toolCallCount": round_,
            "timeout": timeout,
        })
        logger.debug("Calling tool %s (round %d) with %s", block.name, round_, block.input)
        try:
            result = await self._invoker.call_tool(block.name, block.input, timeout)
            if not isinstance(result, ToolCallResult):
                raise ToolInvocationError(
                    f'Tool "{block.name}" returned unexpected result format: {result!r}'
                )
            result_block = ToolResultBlock(
                tool_use_id=block.id,
                content=process_tool_results(result.content, block.name),
                is_error=False,
            )
            span.set_status(True)
        except Exception as e:
            logger.error("Error when calling tool %s: %s", block.name, e)
            result_block = ToolResultBlock(
                tool_use_id=block.id,
                content=[TextBlock(text=f"Error when calling tool {block.name}, error: {e}")],
                is_error=True,
            )
            span.record_exception(e)
            span.set_status(False, str(e))
        finally:
            span.end()
        return result_block
