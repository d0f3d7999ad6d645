"""Unit tests for run configuration.

This module tests RunConfig normalization, provider option filtering,
tool normalization, token secret handling and config fingerprints.
"""

import pytest

from resumable_agent.platform.agent.config import (
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MODEL,
    DEFAULT_TOOL_MAX_RETRIES,
    DEFAULT_TOOL_RETRY_BACKOFF_MS,
    DEFAULT_TOOL_TIMEOUT_MS,
    ProviderOptions,
    ReasoningEffort,
    RunConfig,
    Tool,
    build_config,
    fingerprint,
    normalize_token_secret,
    normalize_tools,
)
from resumable_agent.platform.settings import Settings


def lookup(args):
    """Look up a record by id."""
    return {"id": args.get("id")}


class TestRunConfigNew:
    """Tests for RunConfig.new normalization."""

    def test_defaults(self):
        """Omitted options fall back to defaults."""
        config = RunConfig.new(token_secret="s3cret-value")
        assert config.model == DEFAULT_MODEL
        assert config.max_iterations == DEFAULT_MAX_ITERATIONS
        assert config.streaming is True
        assert config.tool_max_retries == DEFAULT_TOOL_MAX_RETRIES
        assert config.tool_retry_backoff_ms == DEFAULT_TOOL_RETRY_BACKOFF_MS
        assert config.tool_timeout_ms == DEFAULT_TOOL_TIMEOUT_MS
        assert config.token_ttl_ms is None
        assert config.tools == {}

    def test_invalid_numbers_fall_back(self):
        """Non-positive limits and negative retry settings use defaults."""
        config = RunConfig.new(
            token_secret="s3cret-value",
            max_iterations=0,
            tool_max_retries=-1,
            tool_retry_backoff_ms=-5,
            tool_timeout_ms=0,
            token_ttl_ms=-10,
        )
        assert config.max_iterations == DEFAULT_MAX_ITERATIONS
        assert config.tool_max_retries == DEFAULT_TOOL_MAX_RETRIES
        assert config.tool_retry_backoff_ms == DEFAULT_TOOL_RETRY_BACKOFF_MS
        assert config.tool_timeout_ms == DEFAULT_TOOL_TIMEOUT_MS
        assert config.token_ttl_ms is None

    def test_zero_retries_is_valid(self):
        config = RunConfig.new(token_secret="s3cret-value", tool_max_retries=0, tool_retry_backoff_ms=0)
        assert config.tool_max_retries == 0
        assert config.tool_retry_backoff_ms == 0

    def test_unknown_option_raises(self):
        """Unknown keys are rejected rather than silently ignored."""
        with pytest.raises(ValueError, match="max_iteration"):
            RunConfig.new(token_secret="s3cret-value", max_iteration=3)

    def test_non_string_model_raises(self):
        with pytest.raises(ValueError):
            RunConfig.new(token_secret="s3cret-value", model=42)

    def test_is_frozen(self):
        config = RunConfig.new(token_secret="s3cret-value")
        with pytest.raises(AttributeError):
            config.model = "other"  # type: ignore

    def test_build_config_passthrough(self):
        """An existing RunConfig is returned unchanged."""
        config = RunConfig.new(token_secret="s3cret-value")
        assert build_config(config) is config

    def test_build_config_from_mapping(self):
        config = build_config({"model": "openai/gpt-4o-mini", "token_secret": "s3cret-value"})
        assert config.model == "openai/gpt-4o-mini"


class TestRunConfigFromSettings:
    """Tests for building a RunConfig from Settings."""

    def test_uses_settings_values(self, monkeypatch):
        monkeypatch.setenv("RESUMABLE_AGENT_MODEL", "openai/gpt-4o-mini")
        monkeypatch.setenv("RESUMABLE_AGENT_TOKEN__SECRET", "from-env-secret")
        monkeypatch.setenv("RESUMABLE_AGENT_TOOL__MAX_RETRIES", "3")
        config = RunConfig.from_settings(Settings())

        assert config.model == "openai/gpt-4o-mini"
        assert config.token_secret == b"from-env-secret"
        assert config.tool_max_retries == 3

    def test_overrides_take_precedence(self, monkeypatch):
        monkeypatch.setenv("RESUMABLE_AGENT_TOKEN__SECRET", "from-env-secret")
        config = RunConfig.from_settings(Settings(), max_iterations=2, tools={"lookup": lookup})
        assert config.max_iterations == 2
        assert "lookup" in config.tools


class TestProviderOptions:
    """Tests for provider option allow-listing."""

    def test_drops_unknown_keys(self):
        options = ProviderOptions.from_value({"temperature": 0.2, "api_key": "nope", "seed": 1})
        assert options.to_call_kwargs() == {"temperature": 0.2}

    def test_normalizes_reasoning_effort(self):
        options = ProviderOptions.from_value({"reasoning_effort": "HIGH", "thinking": True})
        assert options.reasoning_effort == ReasoningEffort.HIGH
        assert options.to_call_kwargs() == {"thinking": True, "reasoning_effort": "high"}

    def test_invalid_values_dropped(self):
        options = ProviderOptions.from_value(
            {"reasoning_effort": "extreme", "max_tokens": -1, "temperature": "hot"}
        )
        assert options.to_call_kwargs() == {}

    def test_none_is_empty(self):
        assert ProviderOptions.from_value(None) == ProviderOptions()

    def test_config_accepts_mapping(self):
        config = RunConfig.new(token_secret="s3cret-value", provider_options={"tool_choice": "auto"})
        assert config.provider_options.tool_choice == "auto"


class TestNormalizeTools:
    """Tests for tool map normalization."""

    def test_wraps_callables(self):
        """Bare callables become Tools described by their docstring."""
        tools = normalize_tools({"lookup": lookup})
        assert isinstance(tools["lookup"], Tool)
        assert tools["lookup"].description == "Look up a record by id."

    def test_accepts_tool_list(self):
        tool = Tool(name="lookup", handler=lookup)
        assert normalize_tools([tool]) == {"lookup": tool}

    def test_duplicate_names_rejected(self):
        with pytest.raises(ValueError, match="collision"):
            normalize_tools([Tool(name="a", handler=lookup), Tool(name="a", handler=lookup)])

    def test_mismatched_name_rejected(self):
        with pytest.raises(ValueError):
            normalize_tools({"search": Tool(name="lookup", handler=lookup)})

    def test_non_callable_rejected(self):
        with pytest.raises(ValueError):
            normalize_tools({"lookup": "not a tool"})

    def test_openai_tool_format(self):
        tool_schema = Tool(name="lookup", handler=lookup, description="Find it").to_openai_tool()
        assert tool_schema["type"] == "function"
        assert tool_schema["function"]["name"] == "lookup"
        assert tool_schema["function"]["parameters"]["type"] == "object"


class TestTokenSecret:
    """Tests for token secret normalization."""

    def test_string_encoded(self):
        assert normalize_token_secret("abc-123-xyz") == b"abc-123-xyz"

    def test_bytes_kept(self):
        assert normalize_token_secret(b"\x00\x01") == b"\x00\x01"

    def test_insecure_placeholder_rejected(self):
        with pytest.raises(ValueError, match="Insecure"):
            normalize_token_secret("change_me")

    def test_missing_secret_is_stable_per_process(self):
        """The generated secret is reused so tokens verify within the process."""
        first = normalize_token_secret(None)
        assert len(first) == 32
        assert normalize_token_secret("") == first


class TestFingerprint:
    """Tests for config fingerprints."""

    def test_equal_configs_match(self):
        a = RunConfig.new(model="m", token_secret="s3cret-value", tools={"lookup": lookup})
        b = RunConfig.new(model="m", token_secret="other-secret", tools={"lookup": lookup}, max_iterations=2)
        assert fingerprint(a) == fingerprint(b)

    def test_model_changes_fingerprint(self):
        a = RunConfig.new(model="m1", token_secret="s3cret-value")
        b = RunConfig.new(model="m2", token_secret="s3cret-value")
        assert a.fingerprint != b.fingerprint

    def test_tools_change_fingerprint(self):
        a = RunConfig.new(model="m", token_secret="s3cret-value")
        b = RunConfig.new(model="m", token_secret="s3cret-value", tools={"lookup": lookup})
        assert a.fingerprint != b.fingerprint

    def test_system_prompt_changes_fingerprint(self):
        a = RunConfig.new(model="m", token_secret="s3cret-value", system_prompt="be brief")
        b = RunConfig.new(model="m", token_secret="s3cret-value", system_prompt="be verbose")
        assert a.fingerprint != b.fingerprint

    def test_is_url_safe(self):
        value = RunConfig.new(model="m", token_secret="s3cret-value").fingerprint
        assert "=" not in value
        assert "+" not in value
        assert "/" not in value
