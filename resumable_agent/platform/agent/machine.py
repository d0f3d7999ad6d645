"""Pure reasoning state machine.

``transition(state, message, env)`` decides the next action from the current
state and one incoming message. It performs no I/O and never raises for
protocol violations: rejected or stale messages yield the unchanged state
plus (at most) a ``RequestError`` directive.
"""

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Self, TypeAlias

from resumable_agent.platform.agent.messages import Channel, ModelError, ModelTurn, now_ms
from resumable_agent.platform.agent.state import (
    STARTABLE_STATUSES,
    PendingToolCall,
    ReasoningState,
    Status,
    TerminationReason,
    ThinkingEntry,
    ToolOutcome,
    merge_usage,
)
from resumable_agent.platform.agent.thread import Turn

if TYPE_CHECKING:
    from resumable_agent.platform.agent.config import RunConfig

MAX_ITERATIONS_RESULT = "Maximum iterations reached without a final answer."


def generate_call_id() -> str:
    return f"call_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class Env:
    """Inputs to a transition that are not part of the persisted state.

    Attributes:
        system_prompt: Prepended to every model call
        max_iterations: Iteration limit
        now_ms: Clock used for started_at
        new_call_id: Generator for follow-up model call ids
    """

    system_prompt: str = ""
    max_iterations: int = 10
    now_ms: Callable[[], int] = now_ms
    new_call_id: Callable[[], str] = generate_call_id

    @classmethod
    def from_config(cls, config: "RunConfig") -> Self:
        return cls(system_prompt=config.system_prompt, max_iterations=config.max_iterations)


# Messages


@dataclass(frozen=True)
class Start:
    query: str
    call_id: str


@dataclass(frozen=True)
class ModelResult:
    call_id: str
    result: ModelTurn | ModelError


@dataclass(frozen=True)
class ModelPartial:
    call_id: str
    delta: str
    channel: Channel = Channel.CONTENT


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    result: ToolOutcome


Message: TypeAlias = Start | ModelResult | ModelPartial | ToolResult


# Directives


@dataclass(frozen=True)
class CallModel:
    call_id: str
    messages: tuple[Turn, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ExecTool:
    call_id: str
    name: str
    arguments: dict = field(default_factory=dict)


@dataclass(frozen=True)
class RequestError:
    call_id: str
    reason: str
    message: str


@dataclass(frozen=True)
class IterationAdvanced:
    """Advisory notice that a follow-up model call was issued."""

    iteration: int
    call_id: str


Directive: TypeAlias = CallModel | ExecTool | RequestError | IterationAdvanced


def transition(
    state: ReasoningState, message: Message, env: Env
) -> tuple[ReasoningState, list[Directive]]:
    """Apply one message to the state.

    Args:
        state: Current state
        message: Incoming message
        env: System prompt, iteration limit, clock and id generator

    Returns:
        Tuple of (new state, directives for the runner)
    """
    if isinstance(message, Start):
        return _on_start(state, message, env)
    if isinstance(message, ModelPartial):
        return _on_partial(state, message), []
    if isinstance(message, ModelResult):
        return _on_model_result(state, message)
    if isinstance(message, ToolResult):
        return _on_tool_result(state, message, env)
    raise TypeError(f"Unsupported message: {type(message).__name__}")


def resume_directives(state: ReasoningState, env: Env) -> tuple[ReasoningState, list[Directive]]:
    """Directives needed to continue a state restored from a checkpoint.

    A state awaiting a model call gets a fresh call id, so late deltas for the
    interrupted call are ignored. A state awaiting tools re-executes every
    call that has no result yet. Terminal and idle states need nothing.
    """
    if state.status == Status.AWAITING_LLM:
        call_id = env.new_call_id()
        state = state.model_copy(
            update={"current_call_id": call_id, "streaming_text": "", "streaming_thinking": ""}
        )
        return state, [CallModel(call_id=call_id, messages=state.thread.to_messages(env.system_prompt))]

    if state.status == Status.AWAITING_TOOL:
        return state, [
            ExecTool(call_id=call.id, name=call.name, arguments=call.arguments)
            for call in state.unresolved_tool_calls
        ]

    return state, []


def cancel(state: ReasoningState, reason: str = "cancelled") -> ReasoningState:
    """Terminate the state as cancelled, keeping the thread for continuation.

    Tool calls of an interrupted batch are closed with their result, or a
    cancelled error when they never finished, so every tool call in the
    thread has a matching tool result.
    """
    thread = state.thread
    for call in state.pending_tool_calls:
        outcome = call.result or ToolOutcome.failure("cancelled", reason)
        thread = thread.append_tool_result(call.id, call.name, outcome.as_content(), is_error=not outcome.ok)

    return state.model_copy(
        update={
            "thread": thread,
            "status": Status.COMPLETED,
            "termination_reason": TerminationReason.CANCELLED,
            "pending_tool_calls": (),
            "streaming_text": "",
            "streaming_thinking": "",
            "error": {"type": "cancelled", "reason": reason},
        }
    )


def _on_start(
    state: ReasoningState, message: Start, env: Env
) -> tuple[ReasoningState, list[Directive]]:
    if state.status not in STARTABLE_STATUSES:
        return state, [
            RequestError(
                call_id=message.call_id,
                reason="busy",
                message=f"Agent is busy (status: {state.status})",
            )
        ]

    thread = state.thread.append_user(message.query)
    new_state = ReasoningState(
        status=Status.AWAITING_LLM,
        iteration=1,
        thread=thread,
        current_call_id=message.call_id,
        started_at=env.now_ms(),
    )
    return new_state, [CallModel(call_id=message.call_id, messages=thread.to_messages(env.system_prompt))]


def _on_partial(state: ReasoningState, message: ModelPartial) -> ReasoningState:
    if state.status != Status.AWAITING_LLM or message.call_id != state.current_call_id:
        return state
    if not message.delta:
        return state

    if message.channel == Channel.THINKING:
        return state.model_copy(update={"streaming_thinking": state.streaming_thinking + message.delta})
    return state.model_copy(update={"streaming_text": state.streaming_text + message.delta})


def _on_model_result(
    state: ReasoningState, message: ModelResult
) -> tuple[ReasoningState, list[Directive]]:
    if state.status != Status.AWAITING_LLM or message.call_id != state.current_call_id:
        return state, []

    result = message.result
    if isinstance(result, ModelError):
        return (
            state.model_copy(
                update={
                    "status": Status.ERROR,
                    "termination_reason": TerminationReason.ERROR,
                    "error": result.to_dict(),
                    "streaming_text": "",
                    "streaming_thinking": "",
                }
            ),
            [],
        )

    thinking = state.streaming_thinking or result.thinking or ""
    trace = _capture_thinking(state.thinking_trace, thinking, message.call_id, state.iteration)
    usage = merge_usage(state.usage, result.usage)
    text = result.text or state.streaming_text

    if not result.tool_calls:
        return (
            state.model_copy(
                update={
                    "status": Status.COMPLETED,
                    "thread": state.thread.append_assistant(text, thinking=thinking or None),
                    "thinking_trace": trace,
                    "usage": usage,
                    "result": text,
                    "termination_reason": TerminationReason.FINAL_ANSWER,
                    "streaming_text": "",
                    "streaming_thinking": "",
                }
            ),
            [],
        )

    # Accumulators survive into the tool phase and are captured again when the batch completes
    pending = tuple(
        PendingToolCall(id=call.id, name=call.name, arguments=call.arguments) for call in result.tool_calls
    )
    new_state = state.model_copy(
        update={
            "status": Status.AWAITING_TOOL,
            "thread": state.thread.append_assistant(
                result.text, thinking=thinking or None, tool_calls=list(result.tool_calls)
            ),
            "thinking_trace": trace,
            "usage": usage,
            "pending_tool_calls": pending,
        }
    )
    return new_state, [ExecTool(call_id=call.id, name=call.name, arguments=call.arguments) for call in pending]


def _on_tool_result(
    state: ReasoningState, message: ToolResult, env: Env
) -> tuple[ReasoningState, list[Directive]]:
    if state.status != Status.AWAITING_TOOL:
        return state, []

    matched = False
    pending: list[PendingToolCall] = []
    for call in state.pending_tool_calls:
        if not matched and call.id == message.call_id and call.result is None:
            call = call.model_copy(update={"result": message.result})
            matched = True
        pending.append(call)
    if not matched:
        return state, []

    state = state.model_copy(update={"pending_tool_calls": tuple(pending)})
    if state.unresolved_tool_calls:
        return state, []

    trace = _capture_thinking(
        state.thinking_trace, state.streaming_thinking, state.current_call_id, state.iteration
    )
    thread = state.thread
    for call in state.pending_tool_calls:
        outcome = call.result
        thread = thread.append_tool_result(call.id, call.name, outcome.as_content(), is_error=not outcome.ok)

    iteration = state.iteration + 1
    common = {
        "thread": thread,
        "thinking_trace": trace,
        "iteration": iteration,
        "pending_tool_calls": (),
        "streaming_text": "",
        "streaming_thinking": "",
    }

    if iteration > env.max_iterations:
        return (
            state.model_copy(
                update={
                    **common,
                    "status": Status.COMPLETED,
                    "termination_reason": TerminationReason.MAX_ITERATIONS,
                    "result": MAX_ITERATIONS_RESULT,
                }
            ),
            [],
        )

    call_id = env.new_call_id()
    new_state = state.model_copy(
        update={**common, "status": Status.AWAITING_LLM, "current_call_id": call_id}
    )
    return new_state, [
        IterationAdvanced(iteration=iteration, call_id=call_id),
        CallModel(call_id=call_id, messages=thread.to_messages(env.system_prompt)),
    ]


def _capture_thinking(
    trace: tuple[ThinkingEntry, ...], thinking: str, call_id: str | None, iteration: int
) -> tuple[ThinkingEntry, ...]:
    if not thinking:
        return trace
    return trace + (ThinkingEntry(call_id=call_id, iteration=iteration, thinking=thinking),)
