"""Reasoning runtime infrastructure.

This module provides the building blocks of a resumable agent:
- Pure reasoning state machine and conversation thread
- Signed, expiring checkpoint tokens
- Streaming runner with tool execution and consumer-driven cancellation
- Settings and observability utilities
"""

from resumable_agent.platform.agent import (
    Agent,
    EventKind,
    EventStream,
    ReasoningAgent,
    ReasoningState,
    RunConfig,
    RunResult,
    StartedRun,
    StreamEvent,
    StreamingRunner,
    Tool,
)
from resumable_agent.platform.settings import Settings

__all__ = [
    # Core protocols
    "Agent",
    # Configuration
    "RunConfig",
    "Settings",
    "Tool",
    # Runtime
    "EventStream",
    "ReasoningAgent",
    "ReasoningState",
    "StreamingRunner",
    # Event and result types
    "EventKind",
    "RunResult",
    "StartedRun",
    "StreamEvent",
]
