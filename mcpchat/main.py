"""mcpchat entry point.

Wires all components and starts the server:
  Settings -> AnthropicClient -> MCPToolInvoker -> CompletionClient
  -> ConversationManager -> EventBroadcaster -> App -> Uvicorn

Components are constructed up front so routes hold real references.
Anything bound to the running event loop is started in the Starlette
lifespan.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import uvicorn
from starlette.applications import Starlette

from mcpchat.api.anthropic import AnthropicClient
from mcpchat.api.completion import CompletionClient
from mcpchat.api.rest import create_app
from mcpchat.api.runner import ConversationManager
from mcpchat.api.tools import MCPToolInvoker
from mcpchat.api.truncation import ContextBudgetEnforcer
from mcpchat.billing import TokenCharger
from mcpchat.config import Settings
from mcpchat.events import EventBroadcaster
from mcpchat.tracing import LoggingTracer

logger = logging.getLogger(__name__)


@dataclass
class Components:
    provider: AnthropicClient
    invoker: MCPToolInvoker
    completion: CompletionClient
    manager: ConversationManager
    broadcaster: EventBroadcaster
    billing: TokenCharger | None = None


def create_components(settings: Settings) -> Components:
    """Construct all components in dependency order. Nothing is started."""
    provider = AnthropicClient(settings)
    invoker = MCPToolInvoker(settings)
    tracer = LoggingTracer()
    billing = TokenCharger() if settings.charge_for_tokens else None

    completion = CompletionClient(
        provider=provider,
        enforcer=ContextBudgetEnforcer(provider, delay_ms=settings.truncation_delay_ms),
        tracer=tracer,
        billing=billing,
        max_retries=settings.max_retries,
        base_delay_ms=settings.retry_base_delay_ms,
    )
    manager = ConversationManager(
        completion=completion,
        invoker=invoker,
        settings=settings.session_settings(),
        tracer=tracer,
    )
    return Components(
        provider=provider,
        invoker=invoker,
        completion=completion,
        manager=manager,
        broadcaster=EventBroadcaster(),
        billing=billing,
    )


async def start_components(components: Components, settings: Settings) -> None:
    """Start the provider, tool session and event loop.

    A tool server that is unreachable at startup is logged, not fatal;
    /reconnect can establish the connection later.
    """
    await components.provider.start()
    try:
        await components.invoker.connect()
        await components.manager.refresh_tools()
    except Exception as e:
        logger.error("Could not connect to MCP server %s: %s", settings.mcp_url, e)
    await components.broadcaster.start()


async def shutdown_components(components: Components) -> None:
    """Stop components in reverse start order; failures are logged."""
    steps = [
        ("broadcaster", components.broadcaster.stop),
        ("invoker", components.invoker.close),
        ("provider", components.provider.close),
    ]
    for name, stop in steps:
        try:
            await stop()
        except Exception:
            logger.warning("Shutdown of %s failed", name)


def build_app(settings: Settings, components: Components | None = None) -> Starlette:
    """Build the ASGI app around components started by its lifespan."""
    if components is None:
        components = create_components(settings)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await start_components(components, settings)
        logger.info(
            "Session %s ready: model=%s, tools=%d",
            components.manager.session_id,
            settings.model,
            len(components.manager.tools),
        )
        yield
        await shutdown_components(components)

    app = create_app(
        manager=components.manager,
        broadcaster=components.broadcaster,
        invoker=components.invoker,
        settings=settings,
        lifespan=lifespan,
    )
    app.state.components = components
    return app


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting mcpchat: model=%s, mcp=%s (%s)", settings.model, settings.mcp_url, settings.mcp_transport)
    if not settings.effective_api_key:
        logger.warning("No Anthropic API key set (ANTHROPIC_API_KEY / LLM_PROVIDER_API_KEY) -- queries will fail")
    if settings.charge_for_tokens:
        logger.info("No user API key provided, token usage will be charged")
    else:
        logger.info("Using user provided API key for LLM provider")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
