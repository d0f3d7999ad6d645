"""Resumable reasoning agent.

``ReasoningAgent`` is the public surface for embedding applications. It
wraps a ``StreamingRunner`` and the checkpoint token protocol:

    settings = Settings()
    agent = ReasoningAgent.from_settings(settings)
    config = RunConfig.from_settings(settings, tools={"search": search})

    result = await agent.run("What changed in the last release?", config)

    started = agent.start("Summarize the incident", config)
    async for event in started.events:
        if event.kind == EventKind.CHECKPOINT:
            last_token = event.data["token"]

    resumed = await agent.collect(last_token, config)
"""

from collections.abc import AsyncIterable
from typing import TYPE_CHECKING, Any, Self

from resumable_agent.platform.agent import token
from resumable_agent.platform.agent.config import RunConfig, build_config
from resumable_agent.platform.agent.llm_client import LiteLLMModelClient, ModelClient
from resumable_agent.platform.agent.messages import EventKind, RunResult, StartedRun, StreamEvent
from resumable_agent.platform.agent.runner import EventStream, StreamingRunner
from resumable_agent.platform.agent.state import ReasoningState, Status, TerminationReason
from resumable_agent.platform.observability.logging import get_logger

if TYPE_CHECKING:
    from resumable_agent.platform.settings import Settings

logger = get_logger(__name__)


class ReasoningAgent:
    """ReAct-style agent whose runs can be streamed, checkpointed, resumed and cancelled."""

    def __init__(self, model_client: ModelClient | None = None) -> None:
        """Initialize the agent.

        Args:
            model_client: Model backend, defaults to LiteLLM with provider env configuration
        """
        self._runner = StreamingRunner(model_client or LiteLLMModelClient())

    @classmethod
    def from_settings(cls, settings: "Settings") -> Self:
        """Create an agent whose model client uses the configured LLM endpoint."""
        return cls(LiteLLMModelClient(api_key=settings.llm.api_key, api_base=settings.llm.api_base))

    @property
    def runner(self) -> StreamingRunner:
        return self._runner

    def stream(
        self,
        query: str,
        config: RunConfig | dict[str, Any] | None = None,
        *,
        request_id: str | None = None,
        run_id: str | None = None,
        state: ReasoningState | None = None,
    ) -> EventStream:
        return self._runner.stream(query, config, request_id=request_id, run_id=run_id, state=state)

    def stream_from_state(
        self,
        state: ReasoningState,
        config: RunConfig | dict[str, Any] | None = None,
        *,
        request_id: str | None = None,
        run_id: str | None = None,
        query: str | None = None,
    ) -> EventStream:
        return self._runner.stream_from_state(
            state, config, request_id=request_id, run_id=run_id, query=query
        )

    async def run(
        self,
        query: str,
        config: RunConfig | dict[str, Any] | None = None,
        *,
        request_id: str | None = None,
        run_id: str | None = None,
        state: ReasoningState | None = None,
    ) -> RunResult:
        """Run a query to its terminal event.

        Args:
            query: User query
            config: Run configuration
            request_id: Request identifier, generated when omitted
            run_id: Run identifier, generated when omitted
            state: Prior terminal state to continue the conversation from

        Returns:
            Aggregate of the run's events
        """
        async with self.stream(query, config, request_id=request_id, run_id=run_id, state=state) as events:
            return await collect_stream(events)

    def start(
        self,
        query: str,
        config: RunConfig | dict[str, Any] | None = None,
        *,
        request_id: str | None = None,
        run_id: str | None = None,
    ) -> StartedRun:
        """Start a run without consuming it.

        Returns:
            StartedRun with generated or given identifiers and the lazy event stream
        """
        events = self._runner.stream(query, config, request_id=request_id, run_id=run_id)
        return StartedRun(run_id=events.run_id, request_id=events.request_id, events=events)

    def continue_run(
        self,
        checkpoint_token: str,
        config: RunConfig | dict[str, Any] | None = None,
        *,
        request_id: str | None = None,
    ) -> StartedRun:
        """Resume a run from a checkpoint token.

        Args:
            checkpoint_token: Token from a checkpoint event or ``cancel``
            config: Config fingerprint-equal to the one that issued the token
            request_id: Overrides the request id carried by the token

        Returns:
            StartedRun carrying the token's run id and the given token

        Raises:
            CheckpointTokenError: If the token does not decode under config
        """
        events, payload = self._runner.continue_run(checkpoint_token, config, request_id=request_id)
        logger.info(
            "run_continued",
            run_id=payload.run_id,
            request_id=events.request_id,
            status=str(payload.state.status),
        )
        return StartedRun(
            run_id=payload.run_id,
            request_id=events.request_id,
            events=events,
            checkpoint_token=checkpoint_token,
        )

    async def collect(
        self,
        source: str | AsyncIterable[StreamEvent],
        config: RunConfig | dict[str, Any] | None = None,
        *,
        run_until_terminal: bool = True,
    ) -> RunResult:
        """Aggregate a run from a checkpoint token or an event stream.

        Args:
            source: Checkpoint token, or an event stream to reduce
            config: Run configuration (required for tokens)
            run_until_terminal: For tokens, resume and run to the terminal event;
                when False, report the token's state without executing anything

        Returns:
            Aggregate result

        Raises:
            CheckpointTokenError: If a token does not decode under config
        """
        if not isinstance(source, str):
            return await collect_stream(source)

        if run_until_terminal:
            started = self.continue_run(source, config)
            async with started.events as events:
                return await collect_stream(events)

        payload = token.decode(source, build_config(config))
        state = payload.state
        return RunResult(
            result=state.error if state.status == Status.ERROR else state.result,
            termination_reason=_state_termination(state),
            usage=dict(state.usage),
            final_token=source,
            trace=[],
            token_payload=payload,
        )

    def cancel(
        self,
        checkpoint_token: str,
        config: RunConfig | dict[str, Any] | None = None,
        reason: str = "cancelled",
    ) -> str:
        """Mark the run behind a token as cancelled without resuming it.

        Returns:
            New checkpoint token whose state is terminated as cancelled

        Raises:
            CheckpointTokenError: If the token does not decode under config
        """
        return token.mark_cancelled(checkpoint_token, build_config(config), reason)

    def outstanding(self) -> int:
        """Live background tasks across all streams of this agent."""
        return self._runner.outstanding()


async def collect_stream(events: AsyncIterable[StreamEvent]) -> RunResult:
    """Reduce an event stream to its aggregate result.

    Args:
        events: Events of one run, in order

    Returns:
        RunResult with the terminal result, the last checkpoint token and the full trace
    """
    trace: list[StreamEvent] = []
    result: Any = None
    termination_reason: str | None = None
    usage: dict[str, int] = {}
    final_token: str | None = None

    async for event in events:
        trace.append(event)
        if event.kind == EventKind.CHECKPOINT:
            final_token = event.data.get("token", final_token)
        elif event.kind == EventKind.REQUEST_COMPLETED:
            result = event.data.get("result")
            termination_reason = event.data.get("termination_reason")
            usage = dict(event.data.get("usage") or {})
        elif event.kind == EventKind.REQUEST_FAILED:
            result = event.data.get("error")
            termination_reason = "failed"
        elif event.kind == EventKind.REQUEST_CANCELLED:
            termination_reason = "cancelled"

    return RunResult(
        result=result,
        termination_reason=termination_reason,
        usage=usage,
        final_token=final_token,
        trace=trace,
    )


def _state_termination(state: ReasoningState) -> str | None:
    if state.termination_reason == TerminationReason.CANCELLED:
        return "cancelled"
    if state.status == Status.COMPLETED:
        return "completed"
    if state.status == Status.ERROR:
        return "failed"
    return None
