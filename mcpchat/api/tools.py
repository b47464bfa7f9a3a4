"""Tool invocation -- the external capability the tool loop calls into.

Provides:
- ToolInvoker: protocol the orchestrator depends on
- MCPToolInvoker: tools served by a remote MCP server (SSE or streamable HTTP)
- process_tool_results: MCP content -> tool_result content blocks

Invokers raise ToolInvocationError for failures and timeouts; the
orchestrator turns those into is_error tool results.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Protocol

from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamablehttp_client

from mcpchat.api.models import ImageBlock, TextBlock, ToolDescriptor
from mcpchat.config import Settings
from mcpchat.errors import ToolInvocationError
from mcpchat.utils import detect_image_format

logger = logging.getLogger(__name__)


@dataclass
class ToolCallResult:
    """MCP-style tool output: a list of content dicts (text / image / other)."""

    content: list[dict[str, Any]] = field(default_factory=list)


class ToolInvoker(Protocol):
    async def list_tools(self) -> list[ToolDescriptor]: ...

    async def call_tool(self, name: str, arguments: dict[str, Any], timeout: float) -> ToolCallResult: ...


def _error_text(content: list[dict[str, Any]]) -> str:
    texts = [item.get("text", "") for item in content if item.get("type") == "text"]
    return "\n".join(t for t in texts if t) or "tool reported an error"


# ---------------------------------------------------------------------------
# Result processing
# ---------------------------------------------------------------------------


def process_tool_results(content: list[dict[str, Any]], tool_name: str) -> list[TextBlock | ImageBlock]:
    """Convert tool output into tool_result content blocks.

    Text passes through, images become base64 image blocks, any other
    item with data is serialized as JSON text.
    """
    if not content:
        return [TextBlock(text=f"No results retrieved from {tool_name}")]

    processed: list[TextBlock | ImageBlock] = [
        TextBlock(text=f'Tool "{tool_name}" executed successfully. Results:'),
    ]
    for item in content:
        item_type = item.get("type")
        if item_type == "image" and item.get("data"):
            media_type = detect_image_format(item["data"])
            logger.debug("Detected image format: %s", media_type)
            processed.append(ImageBlock(media_type=media_type, data=item["data"]))
            continue
        if item_type == "text" and item.get("text"):
            processed.append(TextBlock(text=item["text"]))
            continue
        data = item.get("data") or item.get("resource")
        if data:
            processed.append(TextBlock(text=data if isinstance(data, str) else json.dumps(data, indent=2)))
    return processed


# ---------------------------------------------------------------------------
# MCPToolInvoker
# ---------------------------------------------------------------------------


class MCPToolInvoker:
    """Tool invoker backed by a remote MCP server.

    The transport and ClientSession are entered and exited by one
    background owner task, so connect(), close() and reconnect() may be
    called from any task (lifespan, request handlers).
    """

    def __init__(self, settings: Settings) -> None:
        self._url = settings.mcp_url
        self._transport = settings.mcp_transport or "http"
        self._headers = dict(settings.mcp_headers)
        self._session: ClientSession | None = None
        self._owner: asyncio.Task | None = None
        self._stop: asyncio.Event | None = None

    def _open_transport(self):
        if self._transport == "sse":
            return sse_client(self._url, headers=self._headers)
        return streamablehttp_client(self._url, headers=self._headers)

    async def _own_session(self, ready: asyncio.Future, stop: asyncio.Event) -> None:
        """Hold the session open until stop is set.

        Errors before the session is ready are handed to connect() through
        the ready future; errors after that mark the invoker disconnected.
        """
        try:
            async with AsyncExitStack() as stack:
                streams = await stack.enter_async_context(self._open_transport())
                session = await stack.enter_async_context(ClientSession(streams[0], streams[1]))
                await session.initialize()
                ready.set_result(session)
                await stop.wait()
        except asyncio.CancelledError:
            if not ready.done():
                ready.cancel()
            raise
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
                return
            logger.exception("MCP session to %s ended with an error", self._url)
        finally:
            if self._stop is stop:
                self._session = None

    async def connect(self) -> None:
        """Open the transport and initialize the MCP session (idempotent)."""
        if self._session is not None:
            return
        stop = asyncio.Event()
        ready: asyncio.Future = asyncio.get_running_loop().create_future()
        self._stop = stop
        self._owner = asyncio.create_task(self._own_session(ready, stop), name="mcp-session")
        try:
            self._session = await ready
        except BaseException:
            owner = self._owner
            self._owner = None
            self._stop = None
            if owner is not None and not owner.done():
                owner.cancel()
            raise
        logger.info("Connected to MCP server %s (%s)", self._url, self._transport)

    async def close(self) -> None:
        """Signal the owner task to exit the session and wait for it."""
        owner, stop = self._owner, self._stop
        self._owner = None
        self._stop = None
        self._session = None
        if owner is None or stop is None:
            return
        stop.set()
        try:
            await owner
        except asyncio.CancelledError:
            pass
        logger.info("Disconnected from MCP server %s", self._url)

    async def is_connected(self) -> bool:
        """Ping the MCP server."""
        if self._session is None:
            return False
        try:
            await self._session.send_ping()
            return True
        except Exception as e:
            logger.warning("MCP ping failed: %s", e)
            return False

    async def reconnect(self) -> None:
        await self.close()
        await self.connect()

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise ToolInvocationError("MCP client not connected -- call connect() first")
        return self._session

    async def list_tools(self) -> list[ToolDescriptor]:
        result = await self._require_session().list_tools()
        tools = [
            ToolDescriptor(name=t.name, description=t.description, input_schema=t.inputSchema)
            for t in result.tools
        ]
        logger.debug("Connected to server with tools: %s", [t.name for t in tools])
        return tools

    async def call_tool(self, name: str, arguments: dict[str, Any], timeout: float) -> ToolCallResult:
        session = self._require_session()
        try:
            result = await asyncio.wait_for(
                session.call_tool(name, arguments, read_timeout_seconds=timedelta(seconds=timeout)),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise ToolInvocationError(f"Tool {name} timed out after {timeout}s") from e
        except Exception as e:
            raise ToolInvocationError(str(e)) from e

        content = [item.model_dump(mode="json", exclude_none=True) for item in result.content]
        if result.isError:
            raise ToolInvocationError(_error_text(content))
        return ToolCallResult(content=content)
