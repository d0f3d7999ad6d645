"""Exception hierarchy for the reasoning runtime.

Checkpoint token failures are surfaced as typed exceptions carrying a stable
``kind`` string, so callers can branch on the failure without string matching.
"""


class CheckpointTokenError(Exception):
    """Base exception for all checkpoint token failures."""

    kind: str = "invalid_token"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.kind)


class InvalidTokenSignatureError(CheckpointTokenError):
    """Raised when a token was altered or signed with a different secret."""

    kind = "invalid_token_signature"


class TokenConfigMismatchError(CheckpointTokenError):
    """Raised when a token is decoded under a config with a different fingerprint."""

    kind = "token_config_mismatch"

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__("Token was issued for a different model, tool set or system prompt")


class TokenExpiredError(CheckpointTokenError):
    """Raised when a token is decoded after its expiry time."""

    kind = "token_expired"

    def __init__(self, expires_at_ms: int, now_ms: int):
        self.expires_at_ms = expires_at_ms
        self.now_ms = now_ms
        super().__init__(f"Token expired {now_ms - expires_at_ms}ms ago")


class InvalidTokenPayloadError(CheckpointTokenError):
    """Raised when a correctly signed token carries an unreadable payload."""

    kind = "invalid_token_payload"


class ToolError(Exception):
    """Raised by tool handlers to report a failure.

    Attributes:
        retryable: Whether the executor may retry the call
    """

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)
