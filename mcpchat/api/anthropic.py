"""Direct httpx client for the Anthropic Messages API.

Implements the two provider capabilities the core consumes: message
creation and token counting. Retrying is not done here; errors are
raised as typed ProviderError subclasses and classified by the
completion client.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from mcpchat.api.models import ApiResponse, Message, ToolDescriptor, Usage, block_from_dict
from mcpchat.config import Settings
from mcpchat.errors import (
    OVERLOADED_STATUS,
    RATE_LIMIT_STATUS,
    OverloadedError,
    ProviderError,
    RateLimitError,
    TokenCountingError,
)

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"


def _error_from_response(response: httpx.Response) -> ProviderError:
    """Build a typed ProviderError from a non-200 response."""
    try:
        error_data = response.json()
        error_type = error_data.get("error", {}).get("type", "unknown")
        error_msg = error_data.get("error", {}).get("message", "unknown error")
    except Exception:
        error_type = "http_error"
        error_msg = response.text[:500]

    message = f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}"
    if response.status_code == RATE_LIMIT_STATUS:
        return RateLimitError(message)
    if response.status_code == OVERLOADED_STATUS:
        return OverloadedError(message)
    return ProviderError(message, status_code=response.status_code)


class AnthropicClient:
    """Completion provider and token counter over the Anthropic HTTP API."""

    def __init__(self, settings: Settings, api_key: str | None = None) -> None:
        self._settings = settings
        self._api_key = api_key if api_key is not None else settings.effective_api_key
        self._http: httpx.AsyncClient | None = None

    async def start(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings
        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        if self._api_key:
            headers["x-api-key"] = self._api_key
        else:
            logger.warning("No Anthropic API key configured -- API calls will fail")

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
            transport=transport,
        )
        logger.info("httpx client initialized (base_url: %s)", settings.api_base_url)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    def _client(self) -> httpx.AsyncClient:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    @staticmethod
    def _build_payload(
        model: str,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDescriptor],
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": [m.to_dict() for m in messages],
        }
        if system_prompt:
            payload["system"] = system_prompt
        if tools:
            payload["tools"] = [t.to_dict() for t in tools]
        return payload

    async def create_message(
        self,
        model: str,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDescriptor],
        max_tokens: int,
    ) -> ApiResponse:
        """POST /v1/messages and parse the assistant response."""
        payload = self._build_payload(model, messages, system_prompt, tools)
        payload["max_tokens"] = max_tokens

        try:
            response = await self._client().post("/v1/messages", json=payload)
        except httpx.TimeoutException as e:
            raise ProviderError(f"API request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"HTTP error: {e}") from e

        if response.status_code != 200:
            raise _error_from_response(response)

        data = response.json()
        usage = data.get("usage") or {}
        return ApiResponse(
            content=[block_from_dict(b) for b in data.get("content", []) if b.get("type") in ("text", "tool_use")],
            stop_reason=data.get("stop_reason") or "end_turn",
            usage=Usage(
                input_tokens=usage.get("input_tokens") or 0,
                output_tokens=usage.get("output_tokens") or 0,
            ),
        )

    async def count_tokens(
        self,
        model: str,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDescriptor],
    ) -> int:
        """POST /v1/messages/count_tokens. Raises TokenCountingError on any failure."""
        if not messages:
            return 0
        payload = self._build_payload(model, messages, system_prompt, tools)
        try:
            response = await self._client().post("/v1/messages/count_tokens", json=payload)
        except httpx.HTTPError as e:
            raise TokenCountingError(f"Token counting request failed: {e}") from e

        if response.status_code != 200:
            error = _error_from_response(response)
            raise TokenCountingError(str(error), status_code=error.status_code)

        return response.json().get("input_tokens") or 0
