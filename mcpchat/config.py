"""Settings via pydantic-settings with MCPCHAT_ env prefix.

Provider keys use validation_alias to read the conventional unprefixed
env vars (ANTHROPIC_API_KEY, LLM_PROVIDER_API_KEY, MCP_AUTH_TOKEN).
"""

import json
from typing import Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcpchat.api.models import SessionSettings

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant with access to external tools. "
    "Use the tools when they help answer the user's question, "
    "and explain what you did in plain language."
)

# Retired model names and their replacements
DEPRECATED_MODELS: dict[str, str] = {
    "claude-sonnet-4-0": "claude-sonnet-4-5-20250929",
    "claude-3-7-sonnet-latest": "claude-sonnet-4-5-20250929",
    "claude-3-5-haiku-latest": "claude-haiku-4-5-20251001",
}

# Legacy transport names accepted for compatibility
_TRANSPORT_ALIASES = {"http-streamable-json-response": "http"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MCPCHAT_", env_file=".env", extra="ignore")

    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 3000

    # Provider credentials: a user key disables token charging
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    llm_provider_api_key: str = Field("", validation_alias="LLM_PROVIDER_API_KEY")

    # Direct API settings
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 300  # seconds

    # LLM
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 2048
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Tool loop
    max_tool_calls_per_query: int = 10
    tool_call_timeout_sec: float = 300

    # Context window
    max_context_tokens: int = 200_000
    context_safety_margin: float = Field(0.99, gt=0.0, le=1.0)
    truncation_delay_ms: float = 5

    # Retry policy for rate-limit / overload errors
    max_retries: int = Field(3, ge=1)
    retry_base_delay_ms: float = 2000

    # MCP tool server
    mcp_url: str = "https://mcp.apify.com"
    mcp_transport: str | None = None  # "sse" or "http"; inferred from the URL when unset
    mcp_headers: dict[str, str] = Field(default_factory=dict)
    mcp_auth_token: str = Field("", validation_alias="MCP_AUTH_TOKEN")

    @field_validator("mcp_headers", mode="before")
    @classmethod
    def _parse_headers(cls, value: Any) -> Any:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            return json.loads(value)
        return value

    @field_validator("model")
    @classmethod
    def _replace_deprecated_model(cls, value: str) -> str:
        return DEPRECATED_MODELS.get(value, value)

    @model_validator(mode="after")
    def _validate_mcp(self) -> "Settings":
        if not self.mcp_url:
            raise ValueError("MCP server URL is not provided: 'mcp_url'")

        transport = _TRANSPORT_ALIASES.get(self.mcp_transport or "", self.mcp_transport)
        if "/sse" in self.mcp_url:
            if transport == "http":
                raise ValueError(
                    "MCP server URL points to an SSE endpoint but transport is 'http'. "
                    "Use transport 'sse' or a streamable HTTP URL."
                )
            transport = "sse"
        elif transport != "sse":
            transport = "http"
        self.mcp_transport = transport

        if self.mcp_auth_token and "Authorization" not in self.mcp_headers:
            self.mcp_headers = {**self.mcp_headers, "Authorization": f"Bearer {self.mcp_auth_token}"}
        return self

    @property
    def effective_api_key(self) -> str:
        """User-provided key if set, otherwise the platform key."""
        return self.anthropic_api_key or self.llm_provider_api_key

    @property
    def charge_for_tokens(self) -> bool:
        """True when the platform key is used and token usage must be billed."""
        return not self.anthropic_api_key

    def session_settings(self) -> SessionSettings:
        """Fresh runtime settings for a session, seeded from configuration."""
        return SessionSettings(
            system_prompt=self.system_prompt,
            model_name=self.model,
            max_output_tokens=self.max_tokens,
            max_tool_calls_per_round=self.max_tool_calls_per_query,
            tool_call_timeout_sec=self.tool_call_timeout_sec,
            max_context_tokens=self.max_context_tokens,
            safety_margin=self.context_safety_margin,
            charge_for_tokens=self.charge_for_tokens,
        )
