"""REST + SSE surface for the chat client.

Endpoints:
  GET  /sse                 - Live event stream (text, tool_use, tool_result)
  POST /message             - Run a user query; events arrive on /sse
  GET  /conversation        - Flattened conversation history
  POST /conversation/reset  - Clear the conversation
  GET  /settings            - Current runtime settings
  POST /settings            - Update runtime settings
  POST /settings/reset      - Restore configured defaults
  GET  /available-tools     - Refresh and list tools from the tool server
  GET  /ping-mcp-server     - Tool server connectivity
  POST /reconnect           - Reconnect to the tool server
  GET  /health              - Health check
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from mcpchat.api.runner import ConversationManager
from mcpchat.api.tools import ToolInvoker
from mcpchat.config import Settings
from mcpchat.errors import QueryInProgressError
from mcpchat.events import EventBroadcaster

logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 5.0

# Client-facing setting names -> SessionSettings fields
SETTINGS_FIELDS: dict[str, str] = {
    "systemPrompt": "system_prompt",
    "modelName": "model_name",
    "modelMaxOutputTokens": "max_output_tokens",
    "maxNumberOfToolCallsPerQuery": "max_tool_calls_per_round",
    "toolCallTimeoutSec": "tool_call_timeout_sec",
}


class SettingsUpdate(BaseModel):
    """Body of POST /settings. Strict: "3" is not an integer."""

    model_config = ConfigDict(strict=True, extra="ignore")

    model_name: str = Field(alias="modelName", min_length=1)
    system_prompt: str | None = Field(None, alias="systemPrompt")
    max_output_tokens: int | None = Field(None, alias="modelMaxOutputTokens", gt=0)
    max_tool_calls_per_round: int | None = Field(None, alias="maxNumberOfToolCallsPerQuery", ge=0)
    tool_call_timeout_sec: float | None = Field(None, alias="toolCallTimeoutSec", gt=0)


def _validation_message(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        field = ".".join(str(loc) for loc in item["loc"])
        parts.append(f"{field}: {item['msg']}")
    return "; ".join(parts)


def create_app(
    manager: ConversationManager,
    broadcaster: EventBroadcaster,
    invoker: ToolInvoker,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    def current_settings() -> dict[str, Any]:
        session = manager.settings
        data = {name: getattr(session, attr) for name, attr in SETTINGS_FIELDS.items()}
        data["mcpUrl"] = settings.mcp_url
        return data

    async def sse(request: Request) -> StreamingResponse:
        """GET /sse - Event stream with keep-alive comments."""
        queue = broadcaster.subscribe()
        logger.debug("New SSE client (%d connected)", broadcaster.subscriber_count)

        async def event_generator():
            try:
                while True:
                    try:
                        event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                    except asyncio.TimeoutError:
                        yield ":\n\n"
                        continue
                    yield f"data: {json.dumps(event.to_dict())}\n\n"
            finally:
                broadcaster.unsubscribe(queue)
                logger.debug("SSE client disconnected")

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    async def message(request: Request) -> JSONResponse:
        """POST /message - Run a query through the tool loop."""
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        query = body.get("query") if isinstance(body, dict) else None
        if not query:
            return JSONResponse({"error": 'Missing "query" field'}, status_code=400)

        try:
            await manager.process_user_query(query, broadcaster.emit)
            return JSONResponse({"ok": True})
        except QueryInProgressError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        except Exception as e:
            logger.error("Error in processing user query: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def conversation(request: Request) -> JSONResponse:
        """GET /conversation - Flattened history."""
        return JSONResponse({
            "session_id": manager.session_id,
            "messages": [m.to_dict() for m in manager.get_conversation()],
        })

    async def conversation_reset(request: Request) -> JSONResponse:
        """POST /conversation/reset - Clear the conversation."""
        manager.reset_conversation()
        return JSONResponse({"ok": True})

    async def get_settings(request: Request) -> JSONResponse:
        """GET /settings - Current runtime settings."""
        return JSONResponse(current_settings())

    async def update_settings(request: Request) -> JSONResponse:
        """POST /settings - Update runtime settings."""
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"success": False, "error": "Invalid JSON body"}, status_code=400)

        if not isinstance(body, dict) or not body.get("modelName"):
            return JSONResponse({"success": False, "error": "Model name is required"}, status_code=400)

        try:
            update = SettingsUpdate.model_validate(body)
        except ValidationError as e:
            return JSONResponse({"success": False, "error": _validation_message(e)}, status_code=400)

        try:
            manager.update_settings(**update.model_dump(exclude_none=True))
        except Exception as e:
            logger.error("Error updating settings: %s", e)
            return JSONResponse({"success": False, "error": "Failed to update settings"}, status_code=500)
        return JSONResponse({"success": True, "settings": current_settings()})

    async def reset_settings(request: Request) -> JSONResponse:
        """POST /settings/reset - Restore configured defaults."""
        defaults = settings.session_settings()
        manager.update_settings(**{attr: getattr(defaults, attr) for attr in SETTINGS_FIELDS.values()})
        return JSONResponse({"success": True, "settings": current_settings()})

    async def available_tools(request: Request) -> JSONResponse:
        """GET /available-tools - Refresh tools from the tool server."""
        connect = getattr(invoker, "connect", None)
        try:
            if connect:
                await connect()
            tools = await manager.refresh_tools()
        except Exception as e:
            logger.error("Error fetching tools: %s", e)
            return JSONResponse({"error": "Failed to fetch tools"}, status_code=500)
        return JSONResponse({"tools": [t.to_dict() for t in tools]})

    async def ping_mcp_server(request: Request) -> JSONResponse:
        """GET /ping-mcp-server - Tool server connectivity."""
        ping = getattr(invoker, "is_connected", None)
        try:
            connected = await ping() if ping else True
        except Exception as e:
            return JSONResponse({"status": "Not connected", "error": str(e)})
        return JSONResponse({"status": connected})

    async def reconnect(request: Request) -> JSONResponse:
        """POST /reconnect - Reconnect to the tool server and reload tools."""
        reconnect_fn = getattr(invoker, "reconnect", None)
        try:
            if reconnect_fn:
                await reconnect_fn()
            await manager.refresh_tools()
        except Exception as e:
            logger.error("Error reconnecting to tool server: %s", e)
            return JSONResponse({"status": "Not connected", "error": str(e)})
        return JSONResponse({"status": True})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Liveness plus session summary."""
        return JSONResponse({
            "status": "healthy",
            "session_id": manager.session_id,
            "messages": len(manager.conversation),
            "tools": len(manager.tools),
            "busy": manager.busy,
            "events_pending": broadcaster.pending,
        })

    routes = [
        Route("/sse", sse, methods=["GET"]),
        Route("/message", message, methods=["POST"]),
        Route("/conversation", conversation, methods=["GET"]),
        Route("/conversation/reset", conversation_reset, methods=["POST"]),
        Route("/settings", get_settings, methods=["GET"]),
        Route("/settings", update_settings, methods=["POST"]),
        Route("/settings/reset", reset_settings, methods=["POST"]),
        Route("/available-tools", available_tools, methods=["GET"]),
        Route("/ping-mcp-server", ping_mcp_server, methods=["GET"]),
        Route("/reconnect", reconnect, methods=["POST"]),
        Route("/health", health, methods=["GET"]),
    ]

    return Starlette(routes=routes, lifespan=lifespan)
