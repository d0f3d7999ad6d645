"""Unit tests for checkpoint tokens.

This module tests signing, verification order, expiry, compression and
cancellation of checkpoint tokens.
"""

import json

import pytest

from resumable_agent.platform.agent import token
from resumable_agent.platform.agent.config import RunConfig
from resumable_agent.platform.agent.exceptions import (
    CheckpointTokenError,
    InvalidTokenPayloadError,
    InvalidTokenSignatureError,
    TokenConfigMismatchError,
    TokenExpiredError,
)
from resumable_agent.platform.agent.machine import Env, ModelResult, Start, transition
from resumable_agent.platform.agent.messages import ModelTurn
from resumable_agent.platform.agent.state import ReasoningState, Status, TerminationReason
from resumable_agent.platform.agent.thread import ToolCallBlock

SECRET = "unit-test-token-secret"


def add(args):
    return args["a"] + args["b"]


@pytest.fixture
def config() -> RunConfig:
    return RunConfig.new(model="test/model", token_secret=SECRET, tools={"add": add})


@pytest.fixture
def state() -> ReasoningState:
    """A mid-run state awaiting a tool, with thinking and usage recorded."""
    env = Env(now_ms=lambda: 1_000)
    state, _ = transition(ReasoningState(), Start(query="2 + 3?", call_id="c1"), env)
    turn = ModelTurn(
        thinking="use add",
        tool_calls=(ToolCallBlock(id="t1", name="add", arguments={"a": 2, "b": 3}),),
        usage={"input_tokens": 12, "output_tokens": 4},
    )
    state, _ = transition(state, ModelResult("c1", turn), env)
    return state


def raw_token(body: dict, config: RunConfig) -> str:
    """Sign an arbitrary body so that only payload checks can fail."""
    payload = token._b64encode(token._PLAIN + json.dumps(body).encode("utf-8"))
    signed = f"{token.TOKEN_PREFIX}.{payload}"
    return f"{signed}.{token._sign(signed, config.token_secret)}"


class TestIssueDecode:
    """Tests for token round trips."""

    def test_round_trip(self, state: ReasoningState, config: RunConfig):
        """Decoding returns exactly the state and ids that were issued."""
        value = token.issue(state, config, run_id="run_1", request_id="req_1", issued_at_ms=5_000)
        payload = token.decode(value, config)

        assert payload.state == state
        assert payload.state.status == Status.AWAITING_TOOL
        assert payload.run_id == "run_1"
        assert payload.request_id == "req_1"
        assert payload.issued_at_ms == 5_000
        assert payload.expires_at_ms is None
        assert payload.fingerprint == config.fingerprint

    def test_compressed_round_trip(self, state: ReasoningState):
        config = RunConfig.new(model="test/model", token_secret=SECRET, tools={"add": add}, token_compress=True)
        value = token.issue(state, config, run_id="run_1", request_id="req_1")
        assert token.decode(value, config).state == state

    def test_format(self, state: ReasoningState, config: RunConfig):
        value = token.issue(state, config, run_id="run_1", request_id="req_1")
        prefix, payload, signature = value.split(".")
        assert prefix == "rt1"
        assert "=" not in payload
        assert "=" not in signature

    def test_decode_state(self, state: ReasoningState, config: RunConfig):
        value = token.issue(state, config, run_id="run_1", request_id="req_1")
        decoded, payload = token.decode_state(value, config)
        assert decoded == state
        assert payload.run_id == "run_1"


class TestSignature:
    """Tests for tamper detection."""

    def test_any_character_change_rejected(self, state: ReasoningState, config: RunConfig):
        """Altering any single character of the token fails verification."""
        value = token.issue(state, config, run_id="run_1", request_id="req_1")
        for i, char in enumerate(value):
            replacement = "A" if char != "A" else "B"
            tampered = value[:i] + replacement + value[i + 1 :]
            with pytest.raises(InvalidTokenSignatureError):
                token.decode(tampered, config)

    def test_wrong_secret(self, state: ReasoningState, config: RunConfig):
        value = token.issue(state, config, run_id="run_1", request_id="req_1")
        other = RunConfig.new(model="test/model", token_secret="another-secret", tools={"add": add})
        with pytest.raises(InvalidTokenSignatureError):
            token.decode(value, other)

    def test_signature_checked_before_fingerprint(self, state: ReasoningState, config: RunConfig):
        """A wrong secret and a wrong fingerprint together report the signature."""
        value = token.issue(state, config, run_id="run_1", request_id="req_1")
        other = RunConfig.new(model="other/model", token_secret="another-secret")
        with pytest.raises(InvalidTokenSignatureError):
            token.decode(value, other)

    @pytest.mark.parametrize("value", ["", "rt1", "rt1.abc", "xx1.abc.def", "rt1.a.b.c", "rt1.é.x"])
    def test_malformed(self, value: str, config: RunConfig):
        with pytest.raises(InvalidTokenSignatureError):
            token.decode(value, config)

    def test_non_string(self, config: RunConfig):
        with pytest.raises(InvalidTokenSignatureError):
            token.decode(None, config)  # type: ignore

    def test_errors_share_base_class(self, config: RunConfig):
        with pytest.raises(CheckpointTokenError) as exc_info:
            token.decode("garbage", config)
        assert exc_info.value.kind == "invalid_token_signature"


class TestFingerprintAndExpiry:
    """Tests for config mismatch and expiry checks."""

    def test_fingerprint_mismatch(self, state: ReasoningState, config: RunConfig):
        value = token.issue(state, config, run_id="run_1", request_id="req_1")
        other = RunConfig.new(model="other/model", token_secret=SECRET, tools={"add": add})

        with pytest.raises(TokenConfigMismatchError) as exc_info:
            token.decode(value, other)
        assert exc_info.value.expected == config.fingerprint
        assert exc_info.value.actual == other.fingerprint

    def test_removed_tool_mismatch(self, state: ReasoningState, config: RunConfig):
        value = token.issue(state, config, run_id="run_1", request_id="req_1")
        other = RunConfig.new(model="test/model", token_secret=SECRET)
        with pytest.raises(TokenConfigMismatchError):
            token.decode(value, other)

    def test_non_fingerprinted_options_may_change(self, state: ReasoningState, config: RunConfig):
        value = token.issue(state, config, run_id="run_1", request_id="req_1")
        other = RunConfig.new(model="test/model", token_secret=SECRET, tools={"add": add}, max_iterations=3)
        assert token.decode(value, other).state == state

    def test_expired(self, state: ReasoningState):
        config = RunConfig.new(model="test/model", token_secret=SECRET, token_ttl_ms=1)
        value = token.issue(state, config, run_id="run_1", request_id="req_1", issued_at_ms=1_000)

        with pytest.raises(TokenExpiredError) as exc_info:
            token.decode(value, config, at_ms=1_002)
        assert exc_info.value.expires_at_ms == 1_001
        assert exc_info.value.now_ms == 1_002

    def test_valid_until_expiry(self, state: ReasoningState):
        config = RunConfig.new(model="test/model", token_secret=SECRET, token_ttl_ms=60_000)
        value = token.issue(state, config, run_id="run_1", request_id="req_1", issued_at_ms=1_000)
        assert token.decode(value, config, at_ms=61_000).expires_at_ms == 61_000

    def test_no_ttl_never_expires(self, state: ReasoningState, config: RunConfig):
        value = token.issue(state, config, run_id="run_1", request_id="req_1", issued_at_ms=0)
        assert token.decode(value, config, at_ms=10**15).expires_at_ms is None

    def test_expiry_checked_after_fingerprint(self, state: ReasoningState):
        config = RunConfig.new(model="test/model", token_secret=SECRET, token_ttl_ms=1)
        value = token.issue(state, config, run_id="run_1", request_id="req_1", issued_at_ms=0)
        other = RunConfig.new(model="other/model", token_secret=SECRET, token_ttl_ms=1)
        with pytest.raises(TokenConfigMismatchError):
            token.decode(value, other, at_ms=10_000)


class TestPayload:
    """Tests for correctly signed but invalid payloads."""

    def test_unsupported_version(self, state: ReasoningState, config: RunConfig):
        body = {
            "version": 99,
            "run_id": "run_1",
            "request_id": "req_1",
            "state": state.to_snapshot(),
            "fingerprint": config.fingerprint,
            "issued_at_ms": 0,
        }
        with pytest.raises(InvalidTokenPayloadError, match="version"):
            token.decode(raw_token(body, config), config)

    def test_missing_fields(self, config: RunConfig):
        with pytest.raises(InvalidTokenPayloadError, match="missing"):
            token.decode(raw_token({"version": 1}, config), config)

    def test_invalid_state(self, config: RunConfig):
        body = {
            "version": 1,
            "run_id": "run_1",
            "request_id": "req_1",
            "state": {"status": "dancing"},
            "fingerprint": config.fingerprint,
            "issued_at_ms": 0,
        }
        with pytest.raises(InvalidTokenPayloadError):
            token.decode(raw_token(body, config), config)

    def test_not_json(self, config: RunConfig):
        payload = token._b64encode(token._PLAIN + b"{not json")
        signed = f"rt1.{payload}"
        value = f"{signed}.{token._sign(signed, config.token_secret)}"
        with pytest.raises(InvalidTokenPayloadError):
            token.decode(value, config)


class TestMarkCancelled:
    """Tests for re-issuing tokens as cancelled."""

    def test_cancelled_state(self, state: ReasoningState, config: RunConfig):
        value = token.issue(state, config, run_id="run_1", request_id="req_1")
        cancelled = token.mark_cancelled(value, config, reason="user_abort")
        payload = token.decode(cancelled, config)

        assert payload.run_id == "run_1"
        assert payload.request_id == "req_1"
        assert payload.state.status == Status.COMPLETED
        assert payload.state.termination_reason == TerminationReason.CANCELLED
        assert payload.state.pending_tool_calls == ()
        assert payload.state.error == {"type": "cancelled", "reason": "user_abort"}
        assert payload.state.thread.turns[: len(state.thread)] == state.thread.turns
        assert payload.state.thread.last().content[0].is_error is True

    def test_rejects_invalid_token(self, config: RunConfig):
        with pytest.raises(InvalidTokenSignatureError):
            token.mark_cancelled("rt1.x.y", config)
