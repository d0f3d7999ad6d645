"""Framework-agnostic model, event and result types.

These types are used across the state machine, the runner and model clients
and define the common vocabulary for run execution.
"""

import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from resumable_agent.platform.agent.thread import ToolCallBlock


class TurnType(StrEnum):
    """Classification of a model response."""

    FINAL_ANSWER = "final_answer"
    TOOL_CALLS = "tool_calls"


class Channel(StrEnum):
    """Delta channel for streamed model output."""

    CONTENT = "content"
    THINKING = "thinking"


@dataclass(frozen=True)
class ModelTurn:
    """A completed model response.

    Attributes:
        text: Answer text (may be empty when tools are requested)
        thinking: Reasoning text embedded in the response, if any
        tool_calls: Tool invocations requested by the model
        usage: Token usage reported for this call
        finish_reason: Provider finish reason
    """

    text: str = ""
    thinking: str | None = None
    tool_calls: tuple[ToolCallBlock, ...] = ()
    usage: dict[str, int] = field(default_factory=dict)
    finish_reason: str | None = None

    @property
    def type(self) -> TurnType:
        return TurnType.TOOL_CALLS if self.tool_calls else TurnType.FINAL_ANSWER


@dataclass(frozen=True)
class ModelError:
    """A failed model call.

    Attributes:
        reason: Human-readable failure description
        error_type: Failure category (llm_request, llm_stream, llm_timeout, llm_response)
    """

    reason: str
    error_type: str = "llm_request"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.error_type, "reason": self.reason}


class EventKind(StrEnum):
    """Kinds of events emitted by the streaming runner."""

    REQUEST_STARTED = "request_started"
    LLM_STARTED = "llm_started"
    LLM_DELTA = "llm_delta"
    LLM_COMPLETED = "llm_completed"
    TOOL_STARTED = "tool_started"
    TOOL_COMPLETED = "tool_completed"
    REQUEST_COMPLETED = "request_completed"
    REQUEST_FAILED = "request_failed"
    REQUEST_CANCELLED = "request_cancelled"
    CHECKPOINT = "checkpoint"


TERMINAL_EVENT_KINDS = frozenset(
    {EventKind.REQUEST_COMPLETED, EventKind.REQUEST_FAILED, EventKind.REQUEST_CANCELLED}
)


class CheckpointReason(StrEnum):
    AFTER_LLM = "after_llm"
    AFTER_TOOLS = "after_tools"
    TERMINAL = "terminal"


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return time.time_ns() // 1_000_000


@dataclass(frozen=True)
class StreamEvent:
    """Run execution event.

    Attributes:
        seq: Strictly increasing, gapless sequence number within one stream
        kind: Event kind
        data: Event-specific payload
        run_id: Run identifier
        request_id: Request identifier
        iteration: State machine iteration when the event was produced
        llm_call_id: Model call the event belongs to, if any
        tool_call_id: Tool call the event belongs to, if any
        tool_name: Tool name for tool events
        id: Globally unique event identifier
        at_ms: Wall-clock emission time in milliseconds
    """

    seq: int
    kind: EventKind
    data: dict[str, Any]
    run_id: str
    request_id: str
    iteration: int = 0
    llm_call_id: str | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex}")
    at_ms: int = field(default_factory=now_ms)

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_EVENT_KINDS


@dataclass(frozen=True)
class RunResult:
    """Aggregate of a run's event stream or checkpoint.

    Attributes:
        result: Final answer text, or the error payload for failed runs
        termination_reason: Why the run ended (None if it has not)
        usage: Accumulated token usage
        final_token: Last checkpoint token observed
        trace: Every event observed, in order
        token_payload: Decoded token payload when collected from a token without resuming
    """

    result: Any = None
    termination_reason: str | None = None
    usage: dict[str, int] = field(default_factory=dict)
    final_token: str | None = None
    trace: list[StreamEvent] = field(default_factory=list)
    token_payload: Any = None


@dataclass(frozen=True)
class StartedRun:
    """Handle for a run whose events have not been consumed yet.

    Attributes:
        run_id: Run identifier
        request_id: Request identifier
        events: Lazy event stream for the run
        checkpoint_token: Token the run was resumed from, None for a fresh start
    """

    run_id: str
    request_id: str
    events: AsyncIterator[StreamEvent]
    checkpoint_token: str | None = None
