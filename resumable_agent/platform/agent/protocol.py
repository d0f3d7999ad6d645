"""Agent protocol definitions.

This module defines the public call surface of a resumable reasoning agent,
so embedding applications can depend on the protocol rather than on a
concrete implementation.
"""

from collections.abc import AsyncIterable
from typing import Any, Protocol, TypeAlias

from resumable_agent.platform.agent.config import RunConfig
from resumable_agent.platform.agent.messages import RunResult, StartedRun, StreamEvent
from resumable_agent.platform.agent.state import ReasoningState

ConfigInput: TypeAlias = RunConfig | dict[str, Any] | None


class Agent(Protocol):
    """Protocol for a resumable reasoning agent."""

    def stream(
        self,
        query: str,
        config: ConfigInput = None,
        *,
        request_id: str | None = None,
        run_id: str | None = None,
        state: ReasoningState | None = None,
    ) -> AsyncIterable[StreamEvent]:
        """Run a query and return the lazy stream of events."""
        ...

    def stream_from_state(
        self,
        state: ReasoningState,
        config: ConfigInput = None,
        *,
        request_id: str | None = None,
        run_id: str | None = None,
        query: str | None = None,
    ) -> AsyncIterable[StreamEvent]:
        """Resume from a state and return the lazy stream of events."""
        ...

    async def run(
        self,
        query: str,
        config: ConfigInput = None,
        *,
        request_id: str | None = None,
        run_id: str | None = None,
    ) -> RunResult:
        """Run a query to completion and return the aggregate result."""
        ...

    def start(
        self,
        query: str,
        config: ConfigInput = None,
        *,
        request_id: str | None = None,
        run_id: str | None = None,
    ) -> StartedRun:
        """Start a run and return its identifiers and event stream."""
        ...

    def continue_run(
        self,
        checkpoint_token: str,
        config: ConfigInput = None,
        *,
        request_id: str | None = None,
    ) -> StartedRun:
        """Resume a run from a checkpoint token."""
        ...

    async def collect(
        self,
        source: str | AsyncIterable[StreamEvent],
        config: ConfigInput = None,
        *,
        run_until_terminal: bool = True,
    ) -> RunResult:
        """Aggregate a run from a checkpoint token or an event stream."""
        ...

    def cancel(self, checkpoint_token: str, config: ConfigInput = None, reason: str = "cancelled") -> str:
        """Mark the run behind a checkpoint token as cancelled and return the new token."""
        ...
