"""Integration test fixtures.

This module provides shared fixtures for integration tests including:
- A scripted model client replaying canned model turns through both the
  streaming and non-streaming APIs
- Run config factories with fast retries and test tools
- Helpers for draining streams and waiting on background tasks

No network calls are made; the runner, state machine, tool executor and
token protocol are exercised together.
"""

import asyncio
from collections.abc import AsyncIterable, AsyncIterator, Callable, Sequence
from typing import Any

import pytest

from resumable_agent.platform.agent.agent import ReasoningAgent
from resumable_agent.platform.agent.config import ProviderOptions, RunConfig
from resumable_agent.platform.agent.exceptions import ToolError
from resumable_agent.platform.agent.llm_client import ChunkType, StreamChunk
from resumable_agent.platform.agent.messages import ModelTurn, StreamEvent
from resumable_agent.platform.agent.thread import ToolCallBlock, Turn

TEST_SECRET = "integration-test-secret"
TEST_MODEL = "test/scripted-model"


class ScriptedModelClient:
    """ModelClient that replays a fixed list of responses.

    Each model call consumes the next response. A ModelTurn is returned (or
    streamed as thinking, content, tool_call, usage and finish chunks); an
    exception is raised from the call.
    """

    def __init__(self, responses: Sequence[ModelTurn | Exception], delay: float = 0.0, piece_size: int = 4):
        self.responses = list(responses)
        self.delay = delay
        self.piece_size = piece_size
        self.calls: list[tuple[Turn, ...]] = []

    def _next(self, messages: Sequence[Turn]) -> ModelTurn | Exception:
        self.calls.append(tuple(messages))
        if not self.responses:
            return AssertionError("No scripted model response left")
        return self.responses.pop(0)

    async def complete(
        self,
        model: str,
        messages: Sequence[Turn],
        options: ProviderOptions,
        tools: list[dict[str, Any]],
    ) -> ModelTurn:
        response = self._next(messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(response, Exception):
            raise response
        return response

    async def stream(
        self,
        model: str,
        messages: Sequence[Turn],
        options: ProviderOptions,
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[StreamChunk]:
        response = self._next(messages)
        if isinstance(response, Exception):
            if self.delay:
                await asyncio.sleep(self.delay)
            raise response

        for piece in self._pieces(response.thinking or ""):
            await self._pause()
            yield StreamChunk(type=ChunkType.THINKING, delta=piece)
        for piece in self._pieces(response.text):
            await self._pause()
            yield StreamChunk(type=ChunkType.CONTENT, delta=piece)
        for call in response.tool_calls:
            yield StreamChunk(type=ChunkType.TOOL_CALL, tool_call=call)
        if response.usage:
            yield StreamChunk(type=ChunkType.USAGE, usage=dict(response.usage))
        yield StreamChunk(type=ChunkType.FINISH, finish_reason=response.finish_reason or "stop")

    def _pieces(self, text: str) -> list[str]:
        return [text[i : i + self.piece_size] for i in range(0, len(text), self.piece_size)]

    async def _pause(self) -> None:
        await asyncio.sleep(self.delay)


def final(text: str, thinking: str | None = None, **usage: int) -> ModelTurn:
    return ModelTurn(text=text, thinking=thinking, usage=usage)


def tool_calls(*calls: tuple[str, str, dict[str, Any]], thinking: str | None = None, **usage: int) -> ModelTurn:
    return ModelTurn(
        tool_calls=tuple(ToolCallBlock(id=call_id, name=name, arguments=args) for call_id, name, args in calls),
        thinking=thinking,
        usage=usage,
    )


async def add(args: dict[str, Any]) -> int:
    """Add two numbers."""
    return args["a"] + args["b"]


async def multiply(args: dict[str, Any]) -> int:
    """Multiply two numbers."""
    await asyncio.sleep(0.01)
    return args["a"] * args["b"]


async def slow(args: dict[str, Any]) -> str:
    """Wait longer than any test."""
    await asyncio.sleep(30)
    return "done"


class FlakyTool:
    """Raises a retryable ToolError on its first call."""

    def __init__(self) -> None:
        self.calls = 0

    async def __call__(self, args: dict[str, Any]) -> str:
        self.calls += 1
        if self.calls == 1:
            raise ToolError("temporarily unavailable")
        return "recovered"


async def drain(events: AsyncIterable[StreamEvent]) -> list[StreamEvent]:
    return [event async for event in events]


async def wait_until_idle(agent: ReasoningAgent, timeout: float = 2.0) -> int:
    """Poll until no background task of the agent is alive, returning the final count."""
    async with asyncio.timeout(timeout):
        while agent.outstanding():
            await asyncio.sleep(0.01)
    return agent.outstanding()


# =============================================================================
# Config Fixtures
# =============================================================================


@pytest.fixture
def flaky_tool() -> FlakyTool:
    return FlakyTool()


@pytest.fixture
def make_config(flaky_tool: FlakyTool) -> Callable[..., RunConfig]:
    """Build run configs with test tools, fast retries and a fixed secret."""

    def factory(**opts: Any) -> RunConfig:
        opts.setdefault("model", TEST_MODEL)
        opts.setdefault("token_secret", TEST_SECRET)
        opts.setdefault("tool_retry_backoff_ms", 0)
        opts.setdefault("tools", {"add": add, "multiply": multiply, "slow": slow, "flaky": flaky_tool})
        return RunConfig.new(**opts)

    return factory


@pytest.fixture
def config(make_config: Callable[..., RunConfig]) -> RunConfig:
    return make_config()


# =============================================================================
# Agent Fixtures
# =============================================================================


@pytest.fixture
def make_agent() -> Callable[..., tuple[ReasoningAgent, ScriptedModelClient]]:
    """Create an agent backed by a scripted model client."""

    def factory(*responses: ModelTurn | Exception, delay: float = 0.0) -> tuple[ReasoningAgent, ScriptedModelClient]:
        client = ScriptedModelClient(responses, delay=delay)
        return ReasoningAgent(client), client

    return factory
