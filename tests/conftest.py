"""Shared fixtures: scripted provider, token counter and event recorder.

No network access: the completion provider and token counter are
in-memory fakes, tools run through FakeToolInvoker.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from mcpchat.api.models import ApiResponse, Message, SessionSettings, TextBlock, ToolDescriptor, ToolUseBlock, Usage
from mcpchat.api.tools import ToolCallResult
from mcpchat.config import Settings
from mcpchat.errors import ToolInvocationError

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


def make_response(*blocks, stop_reason: str | None = None, usage: Usage | None = None) -> ApiResponse:
    """Build an ApiResponse from blocks; plain strings become TextBlocks."""
    content = [TextBlock(text=b) if isinstance(b, str) else b for b in blocks]
    if stop_reason is None:
        stop_reason = "tool_use" if any(isinstance(b, ToolUseBlock) for b in content) else "end_turn"
    return ApiResponse(content=content, stop_reason=stop_reason, usage=usage or Usage(10, 5))


class FakeProvider:
    """Completion provider returning scripted responses (or raising scripted errors)."""

    def __init__(self, *script) -> None:
        self.script = list(script)
        self.calls: list[dict] = []

    async def create_message(self, model, messages, system_prompt, tools, max_tokens):
        self.calls.append({
            "model": model,
            "messages": list(messages),
            "system_prompt": system_prompt,
            "tools": list(tools),
            "max_tokens": max_tokens,
        })
        if not self.script:
            raise AssertionError("FakeProvider script exhausted")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class FakeTokenCounter:
    """Counts a fixed number of tokens per message; can be told to fail."""

    def __init__(self, per_message: int = 10, fail: bool = False) -> None:
        self.per_message = per_message
        self.fail = fail
        self.calls: list[int] = []

    async def count_tokens(self, model, messages, system_prompt, tools) -> int:
        self.calls.append(len(messages))
        if self.fail:
            raise RuntimeError("count_tokens unavailable")
        return self.per_message * len(messages)


class FakeToolInvoker:
    """In-process ToolInvoker: registered async handlers run under wait_for.

    Handlers return MCP-format dicts: {"content": [...], "isError": bool}.
    Failures surface as ToolInvocationError like a real invoker.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._schemas: dict[str, dict[str, Any]] = {}

    def register(self, name: str, handler: Callable[..., Any], schema: dict[str, Any]) -> None:
        self._handlers[name] = handler
        self._schemas[name] = schema

    async def list_tools(self) -> list[ToolDescriptor]:
        return [
            ToolDescriptor(name=name, description=schema.get("description"), input_schema=schema)
            for name, schema in self._schemas.items()
        ]

    async def call_tool(self, name: str, arguments: dict[str, Any], timeout: float) -> ToolCallResult:
        handler = self._handlers.get(name)
        if not handler:
            raise ToolInvocationError(f"Unknown tool: {name}")
        try:
            result = await asyncio.wait_for(handler(**arguments), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ToolInvocationError(f"Tool {name} timed out after {timeout}s") from e
        except Exception as e:
            raise ToolInvocationError(f"Tool error: {e}") from e

        if not isinstance(result, dict) or not isinstance(result.get("content"), list):
            return result  # handed to the orchestrator as-is
        if result.get("isError"):
            raise ToolInvocationError("tool reported an error")
        return ToolCallResult(content=result["content"])


class EventRecorder:
    """Event sink that records (role, content) pairs in order."""

    def __init__(self) -> None:
        self.events: list[tuple[str, object]] = []

    async def __call__(self, role, content) -> None:
        self.events.append((role, content))


class SleepRecorder:
    """Replacement for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def user(content) -> Message:
    return Message(role="user", content=content)


def assistant(content) -> Message:
    return Message(role="assistant", content=content)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings with a fake API key and a streamable HTTP tool server."""
    return Settings(
        ANTHROPIC_API_KEY="test-key",
        mcp_url="http://localhost:3001/mcp",
        model="claude-sonnet-4-5-20250929",
        max_tokens=1024,
    )


@pytest.fixture
def session_settings() -> SessionSettings:
    return SessionSettings(
        system_prompt="You are a test assistant.",
        model_name="claude-sonnet-4-5-20250929",
        max_output_tokens=1024,
        max_tool_calls_per_round=5,
        tool_call_timeout_sec=1.0,
        max_context_tokens=100_000,
    )


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def fake_tools() -> FakeToolInvoker:
    """FakeToolInvoker with echo, search, fail and slow tools registered."""
    tools = FakeToolInvoker()

    async def echo_tool(message: str = "default") -> dict:
        return {"content": [{"type": "text", "text": f"Echo: {message}"}]}

    async def search_tool(q: str = "") -> dict:
        return {"content": [{"type": "text", "text": "result"}]}

    async def fail_tool() -> dict:
        raise ValueError("boom")

    async def slow_tool() -> dict:
        await asyncio.sleep(10)
        return {"content": []}

    tools.register("echo", echo_tool, {
        "type": "object",
        "description": "Echo tool",
        "properties": {"message": {"type": "string"}},
    })
    tools.register("search", search_tool, {
        "type": "object",
        "description": "Search tool",
        "properties": {"q": {"type": "string"}},
    })
    tools.register("fail", fail_tool, {"type": "object", "properties": {}})
    tools.register("slow", slow_tool, {"type": "object", "properties": {}})
    return tools
