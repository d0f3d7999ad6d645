"""Reasoning state definition.

``ReasoningState`` is the complete state of the reasoning state machine and
exactly what a checkpoint token encodes. It is immutable; transitions return
new instances.
"""

from enum import StrEnum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field

from resumable_agent.platform.agent.thread import Thread


class Status(StrEnum):
    IDLE = "idle"
    AWAITING_LLM = "awaiting_llm"
    AWAITING_TOOL = "awaiting_tool"
    COMPLETED = "completed"
    ERROR = "error"


class TerminationReason(StrEnum):
    FINAL_ANSWER = "final_answer"
    MAX_ITERATIONS = "max_iterations"
    ERROR = "error"
    CANCELLED = "cancelled"


# Statuses from which a new start is accepted
STARTABLE_STATUSES = frozenset({Status.IDLE, Status.COMPLETED, Status.ERROR})


class ToolOutcome(BaseModel):
    """Final result of one tool call after retries.

    Attributes:
        ok: Whether the handler succeeded
        output: Handler output when ok
        error: Error payload ``{"type": ..., "message": ...}`` when not ok
    """

    model_config = ConfigDict(frozen=True)

    ok: bool
    output: Any = None
    error: dict[str, Any] | None = None

    @classmethod
    def success(cls, output: Any) -> Self:
        return cls(ok=True, output=output)

    @classmethod
    def failure(cls, error_type: str, message: str) -> Self:
        return cls(ok=False, error={"type": error_type, "message": message})

    @property
    def error_type(self) -> str | None:
        return self.error.get("type") if self.error else None

    def as_content(self) -> Any:
        """Value folded back into the conversation as the tool result."""
        return self.output if self.ok else self.error

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"ok": True, "output": self.output}
        return {"ok": False, "error": self.error}


class PendingToolCall(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result: ToolOutcome | None = None


class ThinkingEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    call_id: str | None
    iteration: int
    thinking: str


class ReasoningState(BaseModel):
    """Full state of the reasoning state machine.

    Attributes:
        status: Current lifecycle status
        iteration: Model-call iteration, 0 before the first start
        thread: Conversation history
        current_call_id: Model call the machine is waiting on
        pending_tool_calls: Tool calls of the current batch
        streaming_text: Accumulated content deltas for the in-flight model call
        streaming_thinking: Accumulated thinking deltas for the in-flight model call
        thinking_trace: Permanent record of captured reasoning text
        usage: Token usage accumulated across every model call of the run
        result: Final answer text, or the error payload on failure
        termination_reason: Why the run ended
        started_at: Start time of the current run in milliseconds
    """

    model_config = ConfigDict(frozen=True)

    status: Status = Status.IDLE
    iteration: int = 0
    thread: Thread = Field(default_factory=Thread)
    current_call_id: str | None = None
    pending_tool_calls: tuple[PendingToolCall, ...] = ()
    streaming_text: str = ""
    streaming_thinking: str = ""
    thinking_trace: tuple[ThinkingEntry, ...] = ()
    usage: dict[str, int] = Field(default_factory=dict)
    result: Any = None
    error: Any = None
    termination_reason: TerminationReason | None = None
    started_at: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (Status.COMPLETED, Status.ERROR)

    @property
    def unresolved_tool_calls(self) -> list[PendingToolCall]:
        return [call for call in self.pending_tool_calls if call.result is None]

    def to_snapshot(self) -> dict[str, Any]:
        """JSON-compatible snapshot of the state."""
        return self.model_dump(mode="json")

    @classmethod
    def from_snapshot(cls, snapshot: dict[str, Any]) -> Self:
        """Rebuild a state from ``to_snapshot`` output.

        Raises:
            pydantic.ValidationError: If the snapshot does not describe a state
        """
        return cls.model_validate(snapshot)


def merge_usage(existing: dict[str, int], new: dict[str, Any] | None) -> dict[str, int]:
    """Accumulate token usage by addition.

    Args:
        existing: Usage accumulated so far
        new: Usage reported by one model call; non-numeric values are ignored

    Returns:
        Merged usage with counts summed per key
    """
    result = dict(existing or {})
    for key, value in (new or {}).items():
        count = _to_count(value)
        if count is None:
            continue
        result[str(key)] = result.get(str(key), 0) + count
    return result


def _to_count(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None
