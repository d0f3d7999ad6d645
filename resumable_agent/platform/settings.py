"""Application settings and configuration.

This module provides Pydantic settings classes for process-level defaults,
loaded from environment variables with support for nested configuration.

Example:
    RESUMABLE_AGENT_MODEL=openai/gpt-4o-mini
    RESUMABLE_AGENT_TOKEN__SECRET=...
    RESUMABLE_AGENT_TOOL__MAX_RETRIES=2
    RESUMABLE_AGENT_LOGGING__LEVEL=debug
"""

import logging

import pydantic_settings
from pydantic import BaseModel, Field, field_validator

from resumable_agent.platform.agent.config import (
    DEFAULT_LLM_TIMEOUT_MS,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MODEL,
    DEFAULT_TOOL_CONCURRENCY,
    DEFAULT_TOOL_MAX_RETRIES,
    DEFAULT_TOOL_RETRY_BACKOFF_MS,
    DEFAULT_TOOL_TIMEOUT_MS,
)


class TokenSettings(BaseModel):
    """Checkpoint token settings.

    Attributes:
        secret: HMAC signing secret; when empty a per-process secret is generated
        ttl_ms: Token lifetime in milliseconds, None for no expiry
        compress: zlib-compress token payloads
    """

    secret: str | None = Field(None, repr=False)
    ttl_ms: int | None = Field(None)
    compress: bool = Field(False)


class ToolSettings(BaseModel):
    timeout_ms: int = Field(DEFAULT_TOOL_TIMEOUT_MS)
    max_retries: int = Field(DEFAULT_TOOL_MAX_RETRIES)
    retry_backoff_ms: int = Field(DEFAULT_TOOL_RETRY_BACKOFF_MS)
    concurrency: int = Field(DEFAULT_TOOL_CONCURRENCY)


class LlmSettings(BaseModel):
    api_base: str | None = Field(None)
    api_key: str | None = Field(None, repr=False)
    timeout_ms: int = Field(DEFAULT_LLM_TIMEOUT_MS)


class LoggingSettings(BaseModel):
    level: str = Field("INFO")
    json_output: bool = Field(True)

    @field_validator("level")
    @classmethod
    def _validate_log_level(cls, v):
        v_upper = v.upper()
        if v_upper not in logging._nameToLevel:
            raise ValueError(f'invalid value "{v}"')
        return v_upper


class Settings(pydantic_settings.BaseSettings):
    model_config = pydantic_settings.SettingsConfigDict(
        env_prefix="RESUMABLE_AGENT_",
        env_nested_delimiter="__",
    )

    model: str = Field(DEFAULT_MODEL)
    max_iterations: int = Field(DEFAULT_MAX_ITERATIONS)
    streaming: bool = Field(True)

    token: TokenSettings = TokenSettings()
    tool: ToolSettings = ToolSettings()
    llm: LlmSettings = LlmSettings()
    logging: LoggingSettings = LoggingSettings()
