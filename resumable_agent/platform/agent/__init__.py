"""Agent infrastructure module.

This module provides the core abstractions for resumable reasoning runs:
- Agent protocol definition
- Run configuration dataclasses
- Reasoning state machine and checkpoint tokens
- Streaming runner and tool executor
- LiteLLM model client
- Agent-specific metrics
"""

from resumable_agent.platform.agent.agent import ReasoningAgent, collect_stream
from resumable_agent.platform.agent.config import (
    ProviderOptions,
    RunConfig,
    Tool,
    build_config,
)
from resumable_agent.platform.agent.exceptions import (
    CheckpointTokenError,
    InvalidTokenPayloadError,
    InvalidTokenSignatureError,
    TokenConfigMismatchError,
    TokenExpiredError,
    ToolError,
)
from resumable_agent.platform.agent.llm_client import LiteLLMModelClient, ModelClient, StreamChunk
from resumable_agent.platform.agent.messages import (
    EventKind,
    ModelError,
    ModelTurn,
    RunResult,
    StartedRun,
    StreamEvent,
)
from resumable_agent.platform.agent.protocol import Agent
from resumable_agent.platform.agent.runner import EventStream, StreamingRunner
from resumable_agent.platform.agent.state import ReasoningState, Status, TerminationReason
from resumable_agent.platform.agent.thread import Thread, Turn

__all__ = [
    "Agent",
    "CheckpointTokenError",
    "EventKind",
    "EventStream",
    "InvalidTokenPayloadError",
    "InvalidTokenSignatureError",
    "LiteLLMModelClient",
    "ModelClient",
    "ModelError",
    "ModelTurn",
    "ProviderOptions",
    "ReasoningAgent",
    "ReasoningState",
    "RunConfig",
    "RunResult",
    "StartedRun",
    "Status",
    "StreamChunk",
    "StreamEvent",
    "StreamingRunner",
    "TerminationReason",
    "Thread",
    "TokenConfigMismatchError",
    "TokenExpiredError",
    "Tool",
    "ToolError",
    "Turn",
    "build_config",
    "collect_stream",
]
