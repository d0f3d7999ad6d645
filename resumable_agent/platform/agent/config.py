"""Configuration dataclasses for reasoning runs.

This module provides the immutable run configuration consumed by the state
machine, the checkpoint token protocol and the streaming runner, plus the
normalization rules that turn loose user input into a valid ``RunConfig``.
"""

import base64
import hashlib
import inspect
import secrets
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, fields
from enum import StrEnum
from functools import cache
from typing import TYPE_CHECKING, Any, Self, TypeAlias

from resumable_agent.platform.observability.logging import get_logger

if TYPE_CHECKING:
    from resumable_agent.platform.settings import Settings

logger = get_logger(__name__)

CONFIG_VERSION = 1
DEFAULT_MODEL = "anthropic/claude-sonnet-4-5"
DEFAULT_MAX_ITERATIONS = 10
DEFAULT_TOOL_TIMEOUT_MS = 15_000
DEFAULT_TOOL_MAX_RETRIES = 1
DEFAULT_TOOL_RETRY_BACKOFF_MS = 200
DEFAULT_TOOL_CONCURRENCY = 4
DEFAULT_LLM_TIMEOUT_MS = 60_000
DEFAULT_CONSUMER_TIMEOUT_MS = 30_000

# Placeholder secrets that must never sign real tokens
INSECURE_TOKEN_SECRETS = frozenset({b"change_me", b"changeme", b"secret", b"default_secret_change_me"})


class ReasoningEffort(StrEnum):
    """Reasoning effort hint forwarded to providers that support it."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class ProviderOptions:
    """Allow-listed pass-through options for model calls.

    Attributes:
        thinking: Provider-specific reasoning/"thinking" hint (bool or provider mapping)
        reasoning_effort: Effort level for reasoning models
        temperature: Sampling temperature
        max_tokens: Maximum tokens to generate per call
        tool_choice: Tool choice directive ("auto", "none", "required" or a mapping)
    """

    thinking: bool | dict[str, Any] | None = None
    reasoning_effort: ReasoningEffort | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    tool_choice: str | dict[str, Any] | None = None

    @classmethod
    def from_value(cls, value: "ProviderOptions | Mapping[str, Any] | None") -> Self:
        """Normalize named options or an open mapping into ProviderOptions.

        Unknown keys and values of the wrong shape are dropped.

        Args:
            value: Existing options, a mapping of option names, or None

        Returns:
            Normalized ProviderOptions
        """
        if isinstance(value, cls):
            return value
        if not value:
            return cls()

        allowed = {f.name for f in fields(cls)}
        dropped = sorted(str(k) for k in value if str(k) not in allowed)
        if dropped:
            logger.debug("provider_options_dropped", keys=dropped)

        raw = {str(k): v for k, v in value.items() if str(k) in allowed}
        return cls(
            thinking=_normalize_thinking(raw.get("thinking")),
            reasoning_effort=_normalize_effort(raw.get("reasoning_effort")),
            temperature=_normalize_float(raw.get("temperature")),
            max_tokens=_normalize_optional_pos_int(raw.get("max_tokens")),
            tool_choice=_normalize_tool_choice(raw.get("tool_choice")),
        )

    def to_call_kwargs(self) -> dict[str, Any]:
        """Return only the options that are set, keyed for the model client."""
        kwargs: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            kwargs[f.name] = str(value) if isinstance(value, ReasoningEffort) else value
        return kwargs


ToolHandler: TypeAlias = Callable[[dict[str, Any]], Any]


@dataclass(frozen=True)
class Tool:
    """A named tool the model may call.

    Attributes:
        name: Unique tool name exposed to the model
        handler: Sync or async callable receiving the argument dict
        description: Human-readable description for the model
        parameters: JSON schema of the arguments
        timeout_ms: Per-invocation timeout overriding the run default
    """

    name: str
    handler: ToolHandler
    description: str = ""
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "additionalProperties": True}
    )
    timeout_ms: int | None = None

    @classmethod
    def from_callable(cls, name: str, handler: ToolHandler) -> Self:
        """Wrap a bare callable, using its docstring as the description."""
        description = inspect.getdoc(handler) or f"Tool: {name}"
        return cls(name=name, handler=handler, description=description)

    def to_openai_tool(self) -> dict[str, Any]:
        """Render the tool in the OpenAI function-calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description or f"Tool: {self.name}",
                "parameters": self.parameters,
            },
        }


@dataclass(frozen=True)
class RunConfig:
    """Immutable configuration for one or more reasoning runs.

    Attributes:
        model: Resolved model identifier
        tools: Tool name to Tool map
        max_iterations: Model calls allowed before the run terminates with max_iterations
        streaming: Use the streaming model API and emit llm_delta events
        provider_options: Allow-listed pass-through model options
        system_prompt: System prompt prepended to every model call
        tool_timeout_ms: Default per-invocation tool timeout
        tool_max_retries: Additional attempts after a retryable tool failure
        tool_retry_backoff_ms: Delay between tool attempts
        tool_concurrency: Maximum tools executing at once within a batch
        llm_timeout_ms: Bound on a single model call, including streaming
        token_secret: HMAC key for checkpoint tokens
        token_ttl_ms: Token lifetime, None for no expiry
        token_compress: zlib-compress token payloads
        redact_tool_args: Mask sensitive argument values in tool_started events
        capture_deltas: Emit llm_delta events while streaming
        consumer_timeout_ms: How long the producer waits for the consumer to pull an event
    """

    model: str
    token_secret: bytes
    tools: Mapping[str, Tool] = field(default_factory=dict)
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    streaming: bool = True
    provider_options: ProviderOptions = field(default_factory=ProviderOptions)
    system_prompt: str = ""
    tool_timeout_ms: int = DEFAULT_TOOL_TIMEOUT_MS
    tool_max_retries: int = DEFAULT_TOOL_MAX_RETRIES
    tool_retry_backoff_ms: int = DEFAULT_TOOL_RETRY_BACKOFF_MS
    tool_concurrency: int = DEFAULT_TOOL_CONCURRENCY
    llm_timeout_ms: int = DEFAULT_LLM_TIMEOUT_MS
    token_ttl_ms: int | None = None
    token_compress: bool = False
    redact_tool_args: bool = True
    capture_deltas: bool = True
    consumer_timeout_ms: int = DEFAULT_CONSUMER_TIMEOUT_MS
    version: int = CONFIG_VERSION

    @classmethod
    def new(cls, **opts: Any) -> Self:
        """Build a config from loose options, applying defaults for invalid values.

        Args:
            **opts: Any RunConfig field; unknown keys raise ValueError

        Returns:
            Normalized RunConfig
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(opts) - known)
        if unknown:
            raise ValueError(f"Unknown run config options: {', '.join(unknown)}")

        model = opts.get("model") or DEFAULT_MODEL
        if not isinstance(model, str):
            raise ValueError(f"model must be a string, got {type(model).__name__}")

        return cls(
            model=model,
            token_secret=normalize_token_secret(opts.get("token_secret")),
            tools=normalize_tools(opts.get("tools")),
            max_iterations=_pos_int(opts.get("max_iterations"), DEFAULT_MAX_ITERATIONS),
            streaming=_bool(opts.get("streaming"), True),
            provider_options=ProviderOptions.from_value(opts.get("provider_options")),
            system_prompt=opts.get("system_prompt") or "",
            tool_timeout_ms=_pos_int(opts.get("tool_timeout_ms"), DEFAULT_TOOL_TIMEOUT_MS),
            tool_max_retries=_non_neg_int(opts.get("tool_max_retries"), DEFAULT_TOOL_MAX_RETRIES),
            tool_retry_backoff_ms=_non_neg_int(
                opts.get("tool_retry_backoff_ms"), DEFAULT_TOOL_RETRY_BACKOFF_MS
            ),
            tool_concurrency=_pos_int(opts.get("tool_concurrency"), DEFAULT_TOOL_CONCURRENCY),
            llm_timeout_ms=_pos_int(opts.get("llm_timeout_ms"), DEFAULT_LLM_TIMEOUT_MS),
            token_ttl_ms=_normalize_optional_pos_int(opts.get("token_ttl_ms")),
            token_compress=_bool(opts.get("token_compress"), False),
            redact_tool_args=_bool(opts.get("redact_tool_args"), True),
            capture_deltas=_bool(opts.get("capture_deltas"), True),
            consumer_timeout_ms=_pos_int(
                opts.get("consumer_timeout_ms"), DEFAULT_CONSUMER_TIMEOUT_MS
            ),
        )

    @classmethod
    def from_settings(cls, settings: "Settings", **overrides: Any) -> Self:
        """Build a config from environment-loaded settings.

        Args:
            settings: Application settings
            **overrides: Options taking precedence over settings (e.g. tools, system_prompt)

        Returns:
            Normalized RunConfig
        """
        opts: dict[str, Any] = {
            "model": settings.model,
            "max_iterations": settings.max_iterations,
            "streaming": settings.streaming,
            "token_secret": settings.token.secret,
            "token_ttl_ms": settings.token.ttl_ms,
            "token_compress": settings.token.compress,
            "tool_timeout_ms": settings.tool.timeout_ms,
            "tool_max_retries": settings.tool.max_retries,
            "tool_retry_backoff_ms": settings.tool.retry_backoff_ms,
            "tool_concurrency": settings.tool.concurrency,
            "llm_timeout_ms": settings.llm.timeout_ms,
        }
        opts.update(overrides)
        return cls.new(**opts)

    @property
    def fingerprint(self) -> str:
        """Stable fingerprint of the model, tool set and system prompt."""
        return fingerprint(self)

    def tool_specs(self) -> list[dict[str, Any]]:
        """Tool definitions to bind to the model, sorted by name."""
        return [self.tools[name].to_openai_tool() for name in sorted(self.tools)]


def fingerprint(config: RunConfig) -> str:
    """Compute the config fingerprint embedded in checkpoint tokens.

    Args:
        config: Run configuration

    Returns:
        URL-safe base64 SHA-256 digest without padding
    """
    parts = [
        f"v{config.version}",
        config.model,
        config.system_prompt,
        ",".join(sorted(config.tools)),
    ]
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def build_config(config: "RunConfig | Mapping[str, Any] | None" = None) -> RunConfig:
    """Normalize user-provided configuration into a RunConfig.

    Args:
        config: An existing RunConfig (returned as-is), a mapping of options, or None

    Returns:
        RunConfig instance
    """
    if isinstance(config, RunConfig):
        return config
    return RunConfig.new(**dict(config or {}))


def normalize_tools(tools: Mapping[str, Any] | Iterable[Tool] | None) -> dict[str, Tool]:
    """Normalize a tool map or tool list into a name to Tool dict.

    Args:
        tools: Mapping of name to Tool/callable, an iterable of Tools, or None

    Returns:
        Dict keyed by tool name
    """
    if not tools:
        return {}

    if not isinstance(tools, Mapping):
        normalized: dict[str, Tool] = {}
        for tool in tools:
            if not isinstance(tool, Tool):
                raise ValueError(f"Expected Tool instances, got {type(tool).__name__}")
            if tool.name in normalized:
                raise ValueError(f"Tool name collision: '{tool.name}'")
            normalized[tool.name] = tool
        return normalized

    normalized = {}
    for name, value in tools.items():
        if isinstance(value, Tool):
            if value.name != name:
                raise ValueError(f"Tool registered as '{name}' is named '{value.name}'")
            normalized[name] = value
        elif callable(value):
            normalized[name] = Tool.from_callable(name, value)
        else:
            raise ValueError(f"Tool '{name}' must be a Tool or a callable")
    return normalized


def normalize_token_secret(secret: str | bytes | None) -> bytes:
    """Normalize the token signing secret.

    Args:
        secret: Configured secret, or None to use a per-process ephemeral secret

    Returns:
        Secret bytes

    Raises:
        ValueError: If the secret is a known placeholder
    """
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    if not secret:
        return _ephemeral_token_secret()
    if secret in INSECURE_TOKEN_SECRETS:
        raise ValueError("Insecure checkpoint token secret rejected; configure a real secret")
    return secret


@cache
def _ephemeral_token_secret() -> bytes:
    logger.warning(
        "ephemeral_token_secret",
        detail="No token secret configured; checkpoint tokens will not survive a restart",
    )
    return secrets.token_bytes(32)


def _pos_int(value: Any, default: int) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return default


def _non_neg_int(value: Any, default: int) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    return default


def _bool(value: Any, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def _normalize_optional_pos_int(value: Any) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return None


def _normalize_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


def _normalize_thinking(value: Any) -> bool | dict[str, Any] | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, Mapping):
        return dict(value)
    return None


def _normalize_effort(value: Any) -> ReasoningEffort | None:
    try:
        return ReasoningEffort(str(value).lower()) if value is not None else None
    except ValueError:
        logger.debug("provider_option_invalid", option="reasoning_effort", value=value)
        return None


def _normalize_tool_choice(value: Any) -> str | dict[str, Any] | None:
    if isinstance(value, str) and value:
        return value
    if isinstance(value, Mapping):
        return dict(value)
    return None
