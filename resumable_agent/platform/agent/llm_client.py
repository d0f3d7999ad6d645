"""Model client interface and LiteLLM implementation.

The runner talks to models only through ``ModelClient``: a non-streaming
``complete`` returning a ``ModelTurn`` and a streaming ``stream`` yielding
``StreamChunk`` values. ``LiteLLMModelClient`` implements both on top of
ChatLiteLLM; provider protocols, authentication and HTTP retries stay there.
"""

import json
import uuid
from collections.abc import AsyncIterator, Iterable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

import litellm
from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langchain_litellm import ChatLiteLLM

from resumable_agent.platform.agent.config import ProviderOptions
from resumable_agent.platform.agent.messages import ModelTurn
from resumable_agent.platform.agent.state import merge_usage
from resumable_agent.platform.agent.thread import (
    Role,
    ToolCallBlock,
    ToolResultBlock,
    Turn,
)
from resumable_agent.platform.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_THINKING_BUDGET_TOKENS = 2048


class ChunkType(StrEnum):
    CONTENT = "content"
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    USAGE = "usage"
    FINISH = "finish"


@dataclass(frozen=True)
class StreamChunk:
    """One piece of a streamed model response.

    Attributes:
        type: Chunk type
        delta: Text delta for content and thinking chunks
        tool_call: Complete tool call for tool_call chunks
        usage: Token usage for usage chunks
        finish_reason: Provider finish reason for finish chunks
    """

    type: ChunkType
    delta: str = ""
    tool_call: ToolCallBlock | None = None
    usage: dict[str, int] = field(default_factory=dict)
    finish_reason: str | None = None


class ModelClient(Protocol):
    """Protocol for model backends driven by the streaming runner."""

    async def complete(
        self,
        model: str,
        messages: Sequence[Turn],
        options: ProviderOptions,
        tools: list[dict[str, Any]],
    ) -> ModelTurn:
        """Run a single non-streaming completion."""
        ...

    def stream(
        self,
        model: str,
        messages: Sequence[Turn],
        options: ProviderOptions,
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[StreamChunk]:
        """Stream a completion as content/thinking deltas, tool calls, usage and finish."""
        ...


def summarize_chunks(chunks: Iterable[StreamChunk]) -> ModelTurn:
    """Fold streamed chunks into a completed model turn.

    Args:
        chunks: Chunks in arrival order

    Returns:
        ModelTurn with concatenated text and thinking, tool calls, summed usage
    """
    text: list[str] = []
    thinking: list[str] = []
    tool_calls: list[ToolCallBlock] = []
    usage: dict[str, int] = {}
    finish_reason = None

    for chunk in chunks:
        if chunk.type == ChunkType.CONTENT:
            text.append(chunk.delta)
        elif chunk.type == ChunkType.THINKING:
            thinking.append(chunk.delta)
        elif chunk.type == ChunkType.TOOL_CALL and chunk.tool_call is not None:
            tool_calls.append(chunk.tool_call)
        elif chunk.type == ChunkType.USAGE:
            usage = merge_usage(usage, chunk.usage)
        elif chunk.type == ChunkType.FINISH:
            finish_reason = chunk.finish_reason

    return ModelTurn(
        text="".join(text),
        thinking="".join(thinking) or None,
        tool_calls=tuple(tool_calls),
        usage=usage,
        finish_reason=finish_reason,
    )


class LiteLLMModelClient:
    """ModelClient backed by ChatLiteLLM.

    A ChatLiteLLM instance is built per call because model and sampling
    options come from the run config rather than the client.
    """

    def __init__(self, api_key: str | None = None, api_base: str | None = None) -> None:
        """Initialize the client.

        Args:
            api_key: API key for the provider or LiteLLM proxy
            api_base: Base URL for the provider or LiteLLM proxy
        """
        self._api_key = api_key
        self._api_base = api_base

    async def complete(
        self,
        model: str,
        messages: Sequence[Turn],
        options: ProviderOptions,
        tools: list[dict[str, Any]],
    ) -> ModelTurn:
        llm, kwargs = self._prepare(model, options, tools)
        response = await llm.ainvoke(to_langchain_messages(messages), **kwargs)
        return from_ai_message(response)

    async def stream(
        self,
        model: str,
        messages: Sequence[Turn],
        options: ProviderOptions,
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[StreamChunk]:
        llm, kwargs = self._prepare(model, options, tools)
        aggregate: AIMessageChunk | None = None

        async for chunk in llm.astream(
            to_langchain_messages(messages), stream_options={"include_usage": True}, **kwargs
        ):
            aggregate = chunk if aggregate is None else aggregate + chunk

            thinking = chunk.additional_kwargs.get("reasoning_content")
            if thinking:
                yield StreamChunk(type=ChunkType.THINKING, delta=thinking)
            for block_type, value in _content_parts(chunk.content):
                yield StreamChunk(type=ChunkType(block_type), delta=value)

        if aggregate is None:
            yield StreamChunk(type=ChunkType.FINISH, finish_reason=None)
            return

        for tool_call in _tool_calls(aggregate):
            yield StreamChunk(type=ChunkType.TOOL_CALL, tool_call=tool_call)
        usage = extract_usage(aggregate)
        if usage:
            yield StreamChunk(type=ChunkType.USAGE, usage=usage)
        yield StreamChunk(
            type=ChunkType.FINISH, finish_reason=aggregate.response_metadata.get("finish_reason")
        )

    def _prepare(
        self, model: str, options: ProviderOptions, tools: list[dict[str, Any]]
    ) -> tuple[Any, dict[str, Any]]:
        call_kwargs = options.to_call_kwargs()
        llm_kwargs: dict[str, Any] = {}
        for key in ("temperature", "max_tokens"):
            if key in call_kwargs:
                llm_kwargs[key] = call_kwargs.pop(key)

        llm = ChatLiteLLM(model=model, api_key=self._api_key, api_base=self._api_base, **llm_kwargs)

        tool_choice = call_kwargs.pop("tool_choice", None)
        if tools:
            runnable: Any = llm.bind_tools(tools, tool_choice=tool_choice)
        else:
            runnable = llm

        if not supports_reasoning(model):
            dropped = [key for key in ("thinking", "reasoning_effort") if call_kwargs.pop(key, None) is not None]
            if dropped:
                logger.debug("reasoning_options_dropped", model=model, options=dropped)

        thinking = call_kwargs.pop("thinking", None)
        if thinking is True:
            call_kwargs["thinking"] = {"type": "enabled", "budget_tokens": DEFAULT_THINKING_BUDGET_TOKENS}
        elif isinstance(thinking, dict):
            call_kwargs["thinking"] = thinking
        return runnable, call_kwargs


def supports_reasoning(model: str) -> bool:
    """Whether reasoning options may be forwarded for a model.

    Models unknown to LiteLLM's local model database are given the benefit of
    the doubt; only an explicit ``supports_reasoning: False`` disables them.
    """
    # Strip litellm_proxy/ prefix if present
    if model.startswith("litellm_proxy/"):
        model = model[len("litellm_proxy/") :]

    try:
        model_info = litellm.get_model_info(model)
    except Exception:
        return True
    return model_info.get("supports_reasoning") is not False


def to_langchain_messages(messages: Sequence[Turn]) -> list[BaseMessage]:
    """Convert conversation turns to LangChain messages.

    Thinking blocks are not replayed to the provider.
    """
    converted: list[BaseMessage] = []
    for turn in messages:
        if turn.role == Role.SYSTEM:
            converted.append(SystemMessage(content=turn.text))
        elif turn.role == Role.USER:
            converted.append(HumanMessage(content=turn.text))
        elif turn.role == Role.ASSISTANT:
            converted.append(
                AIMessage(
                    content=turn.text,
                    tool_calls=[
                        {"id": call.id, "name": call.name, "args": call.arguments} for call in turn.tool_calls
                    ],
                )
            )
        else:
            blocks = () if isinstance(turn.content, str) else turn.content
            for block in blocks:
                if isinstance(block, ToolResultBlock):
                    converted.append(
                        ToolMessage(
                            content=_tool_content(block.output),
                            tool_call_id=block.id,
                            name=block.name,
                            status="error" if block.is_error else "success",
                        )
                    )
    return converted


def from_ai_message(message: AIMessage) -> ModelTurn:
    """Convert a LangChain AI message into a ModelTurn."""
    text: list[str] = []
    thinking: list[str] = []
    reasoning = message.additional_kwargs.get("reasoning_content")
    if reasoning:
        thinking.append(reasoning)
    for block_type, value in _content_parts(message.content):
        (thinking if block_type == ChunkType.THINKING else text).append(value)

    return ModelTurn(
        text="".join(text),
        thinking="".join(thinking) or None,
        tool_calls=tuple(_tool_calls(message)),
        usage=extract_usage(message),
        finish_reason=message.response_metadata.get("finish_reason"),
    )


def extract_usage(message: AIMessage) -> dict[str, int]:
    """Extract token counts from an AIMessage's usage metadata.

    Args:
        message: AIMessage or aggregated AIMessageChunk

    Returns:
        Dict with input_tokens and output_tokens, empty if unavailable
    """
    usage = getattr(message, "usage_metadata", None)
    if not usage:
        return {}
    return {
        "input_tokens": usage.get("input_tokens", 0),
        "output_tokens": usage.get("output_tokens", 0),
    }


def _content_parts(content: str | list[Any]) -> list[tuple[str, str]]:
    if isinstance(content, str):
        return [(ChunkType.CONTENT, content)] if content else []

    parts: list[tuple[str, str]] = []
    for block in content:
        if isinstance(block, str):
            parts.append((ChunkType.CONTENT, block))
        elif isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
            parts.append((ChunkType.CONTENT, block["text"]))
        elif isinstance(block, dict) and block.get("type") == "thinking" and block.get("thinking"):
            parts.append((ChunkType.THINKING, block["thinking"]))
    return parts


def _tool_calls(message: AIMessage) -> list[ToolCallBlock]:
    return [
        ToolCallBlock(id=call.get("id") or f"toolu_{uuid.uuid4().hex}", name=call["name"], arguments=call.get("args") or {})
        for call in message.tool_calls
    ]


def _tool_content(output: Any) -> str:
    if isinstance(output, str):
        return output
    return json.dumps(output, default=str)
