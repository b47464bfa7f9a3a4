"""Tests for tool invocation: MCPToolInvoker and result processing."""

from __future__ import annotations

import asyncio
import base64
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from mcpchat.api.models import ImageBlock, TextBlock, ToolDescriptor
from mcpchat.api.tools import MCPToolInvoker, ToolCallResult, process_tool_results
from mcpchat.errors import ToolInvocationError

PNG_B64 = base64.b64encode(b"\x89PNG\r\n\x1a\n" + b"\x00" * 16).decode()
JPEG_B64 = base64.b64encode(b"\xff\xd8\xff\xe0" + b"\x00" * 16).decode()


# ---------------------------------------------------------------------------
# process_tool_results
# ---------------------------------------------------------------------------


class TestProcessToolResults:
    def test_empty_content(self):
        assert process_tool_results([], "search") == [TextBlock(text="No results retrieved from search")]

    def test_text_items_prefixed(self):
        blocks = process_tool_results([{"type": "text", "text": "hit 1"}], "search")
        assert blocks == [
            TextBlock(text='Tool "search" executed successfully. Results:'),
            TextBlock(text="hit 1"),
        ]

    def test_image_items_detect_format(self):
        blocks = process_tool_results([
            {"type": "image", "data": PNG_B64, "mimeType": "image/png"},
            {"type": "image", "data": JPEG_B64},
        ], "shot")
        assert blocks[1] == ImageBlock(media_type="image/png", data=PNG_B64)
        assert blocks[2] == ImageBlock(media_type="image/jpeg", data=JPEG_B64)

    def test_resource_serialized_as_json(self):
        resource = {"uri": "file:///a.txt", "text": "contents"}
        blocks = process_tool_results([{"type": "resource", "resource": resource}], "read")
        assert json.loads(blocks[1].text) == resource

    def test_empty_items_skipped(self):
        blocks = process_tool_results([{"type": "text", "text": ""}, {"type": "unknown"}], "x")
        assert blocks == [TextBlock(text='Tool "x" executed successfully. Results:')]


# ---------------------------------------------------------------------------
# MCPToolInvoker
# ---------------------------------------------------------------------------


def _content_item(data: dict) -> SimpleNamespace:
    return SimpleNamespace(model_dump=lambda **kwargs: dict(data))


class TestMCPToolInvoker:
    def test_transport_from_settings(self, settings):
        invoker = MCPToolInvoker(settings)
        assert invoker._transport == "http"

    @pytest.mark.asyncio
    async def test_requires_connection(self, settings):
        invoker = MCPToolInvoker(settings)
        with pytest.raises(ToolInvocationError, match="not connected"):
            await invoker.list_tools()
        assert await invoker.is_connected() is False

    @pytest.mark.asyncio
    async def test_list_tools(self, settings):
        invoker = MCPToolInvoker(settings)
        session = AsyncMock()
        session.list_tools.return_value = SimpleNamespace(tools=[
            SimpleNamespace(name="search", description="Web search", inputSchema={"type": "object"}),
        ])
        invoker._session = session

        tools = await invoker.list_tools()

        assert tools == [ToolDescriptor(name="search", input_schema={"type": "object"}, description="Web search")]

    @pytest.mark.asyncio
    async def test_call_tool_converts_content(self, settings):
        invoker = MCPToolInvoker(settings)
        session = AsyncMock()
        session.call_tool.return_value = SimpleNamespace(
            content=[_content_item({"type": "text", "text": "found"})],
            isError=False,
        )
        invoker._session = session

        result = await invoker.call_tool("search", {"q": "x"}, timeout=5)

        assert result == ToolCallResult(content=[{"type": "text", "text": "found"}])
        args, kwargs = session.call_tool.call_args
        assert args == ("search", {"q": "x"})
        assert kwargs["read_timeout_seconds"].total_seconds() == 5

    @pytest.mark.asyncio
    async def test_call_tool_is_error(self, settings):
        invoker = MCPToolInvoker(settings)
        session = AsyncMock()
        session.call_tool.return_value = SimpleNamespace(
            content=[_content_item({"type": "text", "text": "bad input"})],
            isError=True,
        )
        invoker._session = session

        with pytest.raises(ToolInvocationError, match="bad input"):
            await invoker.call_tool("search", {}, timeout=5)

    @pytest.mark.asyncio
    async def test_call_tool_timeout(self, settings):
        invoker = MCPToolInvoker(settings)

        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        invoker._session = SimpleNamespace(call_tool=hang)

        with pytest.raises(ToolInvocationError, match="timed out"):
            await invoker.call_tool("search", {}, timeout=0.01)

    @pytest.mark.asyncio
    async def test_ping(self, settings):
        invoker = MCPToolInvoker(settings)
        invoker._session = AsyncMock()
        assert await invoker.is_connected() is True

        invoker._session.send_ping.side_effect = RuntimeError("gone")
        assert await invoker.is_connected() is False


# ---------------------------------------------------------------------------
# MCPToolInvoker session lifecycle
# ---------------------------------------------------------------------------


class _TaskBoundTransport:
    """Stands in for streamablehttp_client; must be exited in the task that entered it."""

    def __init__(self, log: list) -> None:
        self.log = log
        self.entered_in: asyncio.Task | None = None

    async def __aenter__(self):
        self.entered_in = asyncio.current_task()
        self.log.append(self)
        return object(), object(), lambda: None

    async def __aexit__(self, *exc_info):
        if asyncio.current_task() is not self.entered_in:
            raise RuntimeError("Attempted to exit cancel scope in a different task than it was entered in")
        self.exited = True
        return False


class _FakeSession:
    fail_initialize = False

    def __init__(self, read_stream, write_stream) -> None:
        self.pings = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def initialize(self):
        if _FakeSession.fail_initialize:
            raise ConnectionError("handshake refused")

    async def send_ping(self):
        self.pings += 1

    async def list_tools(self):
        return SimpleNamespace(tools=[SimpleNamespace(name="echo", description=None, inputSchema={})])


@pytest.fixture
def transports(monkeypatch) -> list:
    log: list = []
    _FakeSession.fail_initialize = False
    monkeypatch.setattr("mcpchat.api.tools.streamablehttp_client", lambda url, headers=None: _TaskBoundTransport(log))
    monkeypatch.setattr("mcpchat.api.tools.ClientSession", _FakeSession)
    return log


class TestMCPToolInvokerLifecycle:
    @pytest.mark.asyncio
    async def test_reconnect_from_another_task(self, settings, transports):
        invoker = MCPToolInvoker(settings)

        # Startup and request handlers run in different tasks
        await asyncio.create_task(invoker.connect())
        await asyncio.create_task(invoker.reconnect())

        assert await invoker.is_connected() is True
        assert [t.name for t in await invoker.list_tools()] == ["echo"]

        await asyncio.create_task(invoker.close())

        assert len(transports) == 2
        assert all(getattr(t, "exited", False) for t in transports)
        assert await invoker.is_connected() is False

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self, settings, transports):
        invoker = MCPToolInvoker(settings)
        await invoker.connect()
        await invoker.connect()
        assert len(transports) == 1
        await invoker.close()

    @pytest.mark.asyncio
    async def test_failed_handshake_raises_and_allows_retry(self, settings, transports):
        invoker = MCPToolInvoker(settings)
        _FakeSession.fail_initialize = True

        with pytest.raises(ConnectionError, match="handshake refused"):
            await invoker.connect()
        assert await invoker.is_connected() is False
        assert transports[0].exited

        _FakeSession.fail_initialize = False
        await invoker.connect()
        assert await invoker.is_connected() is True
        await invoker.close()

    @pytest.mark.asyncio
    async def test_close_without_connect(self, settings):
        await MCPToolInvoker(settings).close()
