"""Signed, expiring checkpoint tokens.

A token is ``rt1.<payload>.<signature>`` where ``payload`` is the URL-safe
base64 JSON (optionally zlib-compressed) of the reasoning state snapshot plus
run identifiers, the config fingerprint and timestamps, and ``signature`` is
the URL-safe base64 HMAC-SHA256 of ``rt1.<payload>`` under the config's token
secret. Callers must treat tokens as opaque.

The signature is verified before anything in the payload is read.
"""

import base64
import binascii
import hashlib
import hmac
import json
import zlib
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from resumable_agent.platform.agent.config import RunConfig
from resumable_agent.platform.agent.exceptions import (
    InvalidTokenPayloadError,
    InvalidTokenSignatureError,
    TokenConfigMismatchError,
    TokenExpiredError,
)
from resumable_agent.platform.agent.machine import cancel
from resumable_agent.platform.agent.messages import now_ms
from resumable_agent.platform.agent.state import ReasoningState
from resumable_agent.platform.observability.logging import get_logger

logger = get_logger(__name__)

TOKEN_VERSION = 1
TOKEN_PREFIX = "rt1"
TOKEN_ISSUER = "resumable_agent"

_PLAIN = b"j"
_COMPRESSED = b"z"


@dataclass(frozen=True)
class TokenPayload:
    """Decoded contents of a checkpoint token.

    Attributes:
        run_id: Run the token belongs to
        request_id: Request that produced the checkpoint
        state: Reasoning state at the checkpoint
        fingerprint: Fingerprint of the issuing config
        issued_at_ms: Issue time in milliseconds
        expires_at_ms: Expiry time in milliseconds, None when the token never expires
    """

    run_id: str
    request_id: str
    state: ReasoningState
    fingerprint: str
    issued_at_ms: int
    expires_at_ms: int | None = None


def issue(
    state: ReasoningState,
    config: RunConfig,
    run_id: str,
    request_id: str,
    issued_at_ms: int | None = None,
) -> str:
    """Serialize and sign a state snapshot.

    Args:
        state: State to checkpoint
        config: Config providing the secret, TTL and fingerprint
        run_id: Run identifier
        request_id: Request identifier
        issued_at_ms: Issue time override, defaults to now

    Returns:
        Opaque token string
    """
    issued_at = issued_at_ms if issued_at_ms is not None else now_ms()
    expires_at = issued_at + config.token_ttl_ms if config.token_ttl_ms else None

    body = {
        "version": TOKEN_VERSION,
        "issuer": TOKEN_ISSUER,
        "run_id": run_id,
        "request_id": request_id,
        "state": state.to_snapshot(),
        "fingerprint": config.fingerprint,
        "issued_at_ms": issued_at,
        "expires_at_ms": expires_at,
    }
    raw = json.dumps(body, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")
    if config.token_compress:
        raw = _COMPRESSED + zlib.compress(raw)
    else:
        raw = _PLAIN + raw

    signed = f"{TOKEN_PREFIX}.{_b64encode(raw)}"
    return f"{signed}.{_sign(signed, config.token_secret)}"


def decode(token: str, config: RunConfig, at_ms: int | None = None) -> TokenPayload:
    """Verify and decode a token.

    Checks run in order: signature, payload, config fingerprint, expiry.

    Args:
        token: Token produced by ``issue``
        config: Config whose secret and fingerprint must match the issuer's
        at_ms: Evaluation time override for the expiry check

    Returns:
        Decoded payload

    Raises:
        InvalidTokenSignatureError: Token altered, malformed or signed with another secret
        InvalidTokenPayloadError: Signed payload is unreadable or has an unsupported version
        TokenConfigMismatchError: Config fingerprint differs from the issuing config
        TokenExpiredError: Token is past its expiry time
    """
    body = _read_payload(_verify(token, config.token_secret))

    expected = body["fingerprint"]
    if not hmac.compare_digest(str(expected), config.fingerprint):
        raise TokenConfigMismatchError(expected=str(expected), actual=config.fingerprint)

    expires_at = body.get("expires_at_ms")
    if expires_at is not None:
        current = at_ms if at_ms is not None else now_ms()
        if current > expires_at:
            raise TokenExpiredError(expires_at_ms=expires_at, now_ms=current)

    try:
        state = ReasoningState.from_snapshot(body["state"])
    except ValidationError as e:
        raise InvalidTokenPayloadError(f"Invalid state snapshot: {e.error_count()} errors") from e

    return TokenPayload(
        run_id=str(body["run_id"]),
        request_id=str(body["request_id"]),
        state=state,
        fingerprint=str(expected),
        issued_at_ms=int(body["issued_at_ms"]),
        expires_at_ms=expires_at,
    )


def decode_state(token: str, config: RunConfig) -> tuple[ReasoningState, TokenPayload]:
    """Decode a token and return its state alongside the full payload."""
    payload = decode(token, config)
    return payload.state, payload


def mark_cancelled(token: str, config: RunConfig, reason: str = "cancelled") -> str:
    """Re-issue a token whose state is terminated as cancelled.

    Args:
        token: Last known checkpoint of the run
        config: Config the token was issued under
        reason: Cancellation reason recorded on the state

    Returns:
        New token for the cancelled state, with the original run and request ids

    Raises:
        CheckpointTokenError: If the token does not decode under config
    """
    payload = decode(token, config)
    logger.info("token_marked_cancelled", run_id=payload.run_id, request_id=payload.request_id, reason=reason)
    return issue(cancel(payload.state, reason), config, run_id=payload.run_id, request_id=payload.request_id)


def _sign(signed: str, secret: bytes) -> str:
    digest = hmac.new(secret, signed.encode("ascii"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def _verify(token: str, secret: bytes) -> str:
    if not isinstance(token, str) or not token.isascii():
        raise InvalidTokenSignatureError()

    parts = token.split(".")
    if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
        raise InvalidTokenSignatureError()

    signed = f"{parts[0]}.{parts[1]}"
    # Compare the encoded text so that any change to the signature segment fails
    if not hmac.compare_digest(_sign(signed, secret), parts[2]):
        raise InvalidTokenSignatureError()
    return parts[1]


def _read_payload(payload: str) -> dict[str, Any]:
    try:
        raw = _b64decode(payload)
    except binascii.Error as e:
        raise InvalidTokenPayloadError("Unreadable token payload") from e

    marker, data = raw[:1], raw[1:]
    if marker not in (_PLAIN, _COMPRESSED):
        raise InvalidTokenPayloadError("Unknown token payload encoding")

    try:
        if marker == _COMPRESSED:
            data = zlib.decompress(data)
        body = json.loads(data)
    except (zlib.error, ValueError) as e:
        raise InvalidTokenPayloadError("Unreadable token payload") from e

    if not isinstance(body, dict):
        raise InvalidTokenPayloadError("Token payload is not an object")
    if body.get("version") != TOKEN_VERSION:
        raise InvalidTokenPayloadError(f"Unsupported token version: {body.get('version')}")
    missing = [key for key in ("run_id", "request_id", "state", "fingerprint", "issued_at_ms") if key not in body]
    if missing:
        raise InvalidTokenPayloadError(f"Token payload missing fields: {', '.join(missing)}")
    return body


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))
