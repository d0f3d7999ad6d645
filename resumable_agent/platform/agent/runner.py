"""Streaming runner.

The runner drives the reasoning state machine against a model client and the
tool executor, and exposes the run as an ``EventStream``: a lazy, pull-based
async iterator of ``StreamEvent`` values.

Each stream owns one producer task. The producer starts on the first pull,
hands events over through a single-slot queue (so it never races ahead of the
consumer) and stops when:

- the run reaches a terminal state (terminal event, then terminal checkpoint),
- ``EventStream.cancel()`` is called (cooperative: ``request_cancelled`` and a
  terminal checkpoint are still emitted),
- ``EventStream.aclose()`` is called, the ``async with`` block exits or the
  consumer drops its last reference to the stream (hard cancel, nothing more
  is emitted),
- the consumer does not pull within ``consumer_timeout_ms`` (the stream is
  treated as abandoned and the producer cancels itself).

The producer only holds the stream's ``_Channel``, never the stream itself.
"""

import asyncio
import uuid
import weakref
from collections.abc import AsyncIterator, Awaitable, Coroutine
from contextlib import aclosing, suppress
from dataclasses import replace
from time import monotonic
from typing import Any, Self

from opentelemetry import trace

from resumable_agent.platform.agent import machine, token
from resumable_agent.platform.agent.config import RunConfig, build_config
from resumable_agent.platform.agent.llm_client import ChunkType, ModelClient, StreamChunk, summarize_chunks
from resumable_agent.platform.agent.machine import (
    CallModel,
    Directive,
    Env,
    ExecTool,
    IterationAdvanced,
    ModelPartial,
    ModelResult,
    RequestError,
    Start,
    ToolResult,
)
from resumable_agent.platform.agent.messages import (
    Channel,
    CheckpointReason,
    EventKind,
    ModelError,
    ModelTurn,
    StreamEvent,
)
from resumable_agent.platform.agent.metrics import (
    AgentMetricsLabels,
    RunTerminationLabels,
    collect_agent_metrics,
    record_model_call,
    record_run_termination,
)
from resumable_agent.platform.agent.state import ReasoningState, Status, TerminationReason
from resumable_agent.platform.agent.tools import ToolExecutor, redact_arguments
from resumable_agent.platform.observability.logging import get_logger

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)

_END = object()


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex}"


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex}"


class _StreamInterrupted(Exception):
    """Base for conditions that stop production before the run is terminal."""


class _ConsumerDetached(_StreamInterrupted):
    pass


class _CancelRequested(_StreamInterrupted):
    pass


class StreamingRunner:
    """Runs reasoning loops as cancellable event streams.

    Example:
        runner = StreamingRunner(LiteLLMModelClient())
        async with runner.stream("What is 2 + 2?", config) as events:
            async for event in events:
                print(event.kind, event.data)
    """

    def __init__(self, model_client: ModelClient) -> None:
        self._model_client = model_client
        self._tasks: set[asyncio.Task] = set()

    def stream(
        self,
        query: str,
        config: RunConfig | dict[str, Any] | None = None,
        *,
        request_id: str | None = None,
        run_id: str | None = None,
        state: ReasoningState | None = None,
    ) -> "EventStream":
        """Start a run for a query.

        Args:
            query: User query
            config: Run configuration
            request_id: Request identifier, generated when omitted
            run_id: Run identifier, generated when omitted
            state: Prior terminal state to continue the conversation from

        Returns:
            Lazy event stream; nothing runs until the first pull
        """
        return self._open(
            state or ReasoningState(),
            build_config(config),
            query=query,
            request_id=request_id,
            run_id=run_id,
        )

    def stream_from_state(
        self,
        state: ReasoningState,
        config: RunConfig | dict[str, Any] | None = None,
        *,
        request_id: str | None = None,
        run_id: str | None = None,
        query: str | None = None,
    ) -> "EventStream":
        """Resume a run from a state, or continue a terminal one with a new query.

        Without a query, a state awaiting a model call issues a fresh call, a
        state awaiting tools executes its unresolved calls, and a terminal state
        re-emits its terminal event and checkpoint.
        """
        return self._open(state, build_config(config), query=query, request_id=request_id, run_id=run_id)

    def continue_run(
        self,
        checkpoint_token: str,
        config: RunConfig | dict[str, Any] | None = None,
        *,
        request_id: str | None = None,
    ) -> tuple["EventStream", token.TokenPayload]:
        """Decode a checkpoint token and resume from its state.

        Raises:
            CheckpointTokenError: If the token does not decode under config
        """
        config = build_config(config)
        payload = token.decode(checkpoint_token, config)
        events = self._open(
            payload.state,
            config,
            query=None,
            request_id=request_id or payload.request_id,
            run_id=payload.run_id,
        )
        return events, payload

    def outstanding(self) -> int:
        """Number of live producer and in-flight work tasks across all streams."""
        return sum(1 for task in self._tasks if not task.done())

    def _open(
        self,
        state: ReasoningState,
        config: RunConfig,
        query: str | None,
        request_id: str | None,
        run_id: str | None,
    ) -> "EventStream":
        channel = _Channel(self, config.consumer_timeout_ms)
        producer = _RunProducer(
            channel=channel,
            model_client=self._model_client,
            config=config,
            state=state,
            query=query,
            run_id=run_id or new_run_id(),
            request_id=request_id or new_request_id(),
        )
        return EventStream(channel, producer)

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


class _Channel:
    """Hand-over point between one producer task and its EventStream."""

    def __init__(self, runner: StreamingRunner, consumer_timeout_ms: int) -> None:
        self._runner = runner
        self._consumer_timeout = consumer_timeout_ms / 1000
        self.queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=1)
        self.finished = False
        self.cancel_event = asyncio.Event()
        self.cancel_reason = "cancelled"
        self._seq = 0

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    async def publish(self, event: StreamEvent) -> None:
        """Number an event and hand it to the consumer, waiting at most the consumer timeout.

        The sequence number is only consumed once the event is queued, so an
        interrupted hand-over leaves no gap.

        Raises:
            _ConsumerDetached: If the consumer does not pull in time
        """
        event = replace(event, seq=self._seq + 1)
        try:
            async with asyncio.timeout(self._consumer_timeout):
                await self.queue.put(event)
        except TimeoutError:
            raise _ConsumerDetached() from None
        self._seq = event.seq

    async def wait_cancelled(self) -> None:
        await self.cancel_event.wait()

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        return self._runner._track(asyncio.create_task(coro))

    async def produce(self, producer: "_RunProducer") -> None:
        try:
            await producer.run()
        finally:
            self.finished = True
            with suppress(asyncio.QueueFull):
                self.queue.put_nowait(_END)


class EventStream:
    """Lazy, backpressured, cancellable stream of run events."""

    def __init__(self, channel: _Channel, producer: "_RunProducer") -> None:
        self._channel = channel
        self._producer = producer
        self._task: asyncio.Task | None = None
        self._closed = False

    @property
    def run_id(self) -> str:
        return self._producer.run_id

    @property
    def request_id(self) -> str:
        return self._producer.request_id

    @property
    def cancel_requested(self) -> bool:
        return self._channel.cancel_requested

    @property
    def cancel_reason(self) -> str:
        return self._channel.cancel_reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Ask the producer to stop at its next suspension point.

        The stream still ends with ``request_cancelled`` and a terminal checkpoint.
        """
        if not self._channel.cancel_event.is_set():
            self._channel.cancel_reason = reason
            self._channel.cancel_event.set()

    async def aclose(self) -> None:
        """Stop the producer immediately; no further events are delivered."""
        self._closed = True
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    def __aiter__(self) -> Self:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._closed:
            raise StopAsyncIteration
        self._ensure_started()
        channel = self._channel
        if channel.finished and channel.queue.empty():
            self._closed = True
            raise StopAsyncIteration

        item = await channel.queue.get()
        if item is _END:
            self._closed = True
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _ensure_started(self) -> None:
        if self._task is None:
            self._task = self._channel.spawn(self._channel.produce(self._producer))
            # A stream dropped by its consumer takes its producer down with it
            finalizer = weakref.finalize(self, self._task.cancel)
            finalizer.atexit = False


class _RunProducer:
    """Run-scoped production loop behind one EventStream."""

    def __init__(
        self,
        channel: _Channel,
        model_client: ModelClient,
        config: RunConfig,
        state: ReasoningState,
        query: str | None,
        run_id: str,
        request_id: str,
    ) -> None:
        self.run_id = run_id
        self.request_id = request_id
        self._channel = channel
        self._client = model_client
        self._config = config
        self._env = Env.from_config(config)
        self._executor = ToolExecutor(config)
        self._state = state
        self._query = query
        self._labels = AgentMetricsLabels(model=config.model)
        self._log = logger.bind(run_id=run_id, request_id=request_id)

    async def run(self) -> None:
        with tracer.start_as_current_span("agent.run") as span:
            span.set_attribute("agent.run_id", self.run_id)
            span.set_attribute("agent.request_id", self.request_id)
            span.set_attribute("agent.model", self._config.model)
            try:
                async with collect_agent_metrics(self._labels):
                    await self._drive(span)
            except _ConsumerDetached:
                self._log.warning("consumer_detached", timeout_ms=self._config.consumer_timeout_ms)
            except asyncio.CancelledError:
                self._log.info("stream_closed")
                raise

    async def _drive(self, span: trace.Span) -> None:
        try:
            directives = await self._begin()
            if directives is None:
                return
            while directives:
                self._check_cancel()
                directives = await self._step(directives, span)
            await self._emit_terminal()
        except _CancelRequested:
            reason = self._channel.cancel_reason
            self._log.info("run_cancelled", reason=reason)
            self._state = machine.cancel(self._state, reason)
            await self._emit(EventKind.REQUEST_CANCELLED, {"reason": reason})
            await self._checkpoint(CheckpointReason.TERMINAL)
            record_run_termination(RunTerminationLabels(self._config.model, TerminationReason.CANCELLED))
        except _ConsumerDetached:
            raise
        except Exception as e:
            self._log.exception("run_failed_unexpectedly")
            span.record_exception(e)
            error = {"type": "internal", "reason": f"{type(e).__name__}: {e}"}
            self._state = self._state.model_copy(
                update={
                    "status": Status.ERROR,
                    "termination_reason": TerminationReason.ERROR,
                    "error": error,
                }
            )
            await self._emit(EventKind.REQUEST_FAILED, {"error": error, "error_type": "internal"})
            await self._checkpoint(CheckpointReason.TERMINAL)
            record_run_termination(RunTerminationLabels(self._config.model, TerminationReason.ERROR))

    async def _begin(self) -> list[Directive] | None:
        """Initial directives, or None when the run was rejected and already reported."""
        if self._query is not None:
            await self._emit(
                EventKind.REQUEST_STARTED,
                {"query": self._query, "config_fingerprint": self._config.fingerprint},
            )
            self._check_cancel()
            self._state, directives = machine.transition(
                self._state, Start(query=self._query, call_id=machine.generate_call_id()), self._env
            )
            rejected = [d for d in directives if isinstance(d, RequestError)]
            if rejected:
                self._log.info("run_rejected", reason=rejected[0].reason, status=str(self._state.status))
                await self._emit(
                    EventKind.REQUEST_FAILED,
                    {"error": rejected[0].message, "error_type": rejected[0].reason},
                )
                await self._checkpoint(CheckpointReason.TERMINAL)
                return None
            return directives

        if self._state.status == Status.IDLE:
            return []
        self._state, directives = machine.resume_directives(self._state, self._env)
        if directives:
            self._log.info("run_resumed", status=str(self._state.status), iteration=self._state.iteration)
        return directives

    async def _step(self, directives: list[Directive], span: trace.Span) -> list[Directive]:
        for directive in directives:
            if isinstance(directive, IterationAdvanced):
                self._log.info("iteration_advanced", iteration=directive.iteration, call_id=directive.call_id)
                span.add_event(
                    "iteration_advanced",
                    {"iteration": directive.iteration, "call_id": directive.call_id},
                )

        call = next((d for d in directives if isinstance(d, CallModel)), None)
        if call is not None:
            return await self._interruptible(self._call_model(call))

        tool_calls = [d for d in directives if isinstance(d, ExecTool)]
        if tool_calls:
            return await self._interruptible(self._exec_tools(tool_calls))
        return []

    async def _call_model(self, directive: CallModel) -> list[Directive]:
        call_id = directive.call_id
        await self._emit(
            EventKind.LLM_STARTED,
            {"call_id": call_id, "model": self._config.model, "message_count": len(directive.messages)},
            llm_call_id=call_id,
        )

        start = monotonic()
        result: ModelTurn | ModelError
        with tracer.start_as_current_span("agent.llm_call") as span:
            span.set_attribute("llm.call_id", call_id)
            span.set_attribute("llm.streaming", self._config.streaming)
            try:
                if self._config.streaming:
                    result = await self._stream_model(directive)
                else:
                    async with asyncio.timeout(self._config.llm_timeout_ms / 1000):
                        result = await self._client.complete(
                            self._config.model,
                            directive.messages,
                            self._config.provider_options,
                            self._config.tool_specs(),
                        )
            except _StreamInterrupted:
                raise
            except TimeoutError:
                result = ModelError(f"Model call timed out after {self._config.llm_timeout_ms}ms", "llm_timeout")
            except Exception as e:
                span.record_exception(e)
                error_type = "llm_stream" if self._config.streaming else "llm_request"
                result = ModelError(f"{type(e).__name__}: {e}", error_type)

        usage = result.usage if isinstance(result, ModelTurn) else {}
        record_model_call(self._labels, monotonic() - start, usage)

        self._state, directives = machine.transition(
            self._state, ModelResult(call_id=call_id, result=result), self._env
        )
        if isinstance(result, ModelError):
            self._log.warning("llm_call_failed", call_id=call_id, error_type=result.error_type, reason=result.reason)
            return directives

        await self._emit(
            EventKind.LLM_COMPLETED,
            {
                "call_id": call_id,
                "turn_type": str(result.type),
                "text": result.text,
                "thinking": result.thinking,
                "tool_calls": [call.model_dump(exclude={"type"}) for call in result.tool_calls],
                "usage": dict(result.usage),
            },
            llm_call_id=call_id,
        )
        await self._checkpoint(CheckpointReason.AFTER_LLM)
        return directives

    async def _stream_model(self, directive: CallModel) -> ModelTurn:
        """Stream one model call, publishing deltas as they arrive.

        Only time spent waiting on the model counts against ``llm_timeout_ms``;
        time blocked handing deltas to a slow consumer does not.

        Raises:
            TimeoutError: If the model's total wait exceeds the timeout
        """
        chunks = []
        async with aclosing(self._model_chunks(directive)) as model_chunks:
            async for chunk in model_chunks:
                chunks.append(chunk)
                if chunk.type not in (ChunkType.CONTENT, ChunkType.THINKING) or not chunk.delta:
                    continue
                channel = Channel.THINKING if chunk.type == ChunkType.THINKING else Channel.CONTENT
                self._state, _ = machine.transition(
                    self._state,
                    ModelPartial(call_id=directive.call_id, delta=chunk.delta, channel=channel),
                    self._env,
                )
                if self._config.capture_deltas:
                    await self._emit(
                        EventKind.LLM_DELTA,
                        {"call_id": directive.call_id, "chunk_type": str(channel), "delta": chunk.delta},
                        llm_call_id=directive.call_id,
                    )
                self._check_cancel()
        return summarize_chunks(chunks)

    async def _model_chunks(self, directive: CallModel) -> AsyncIterator[StreamChunk]:
        remaining = self._config.llm_timeout_ms / 1000
        chunks = aiter(
            self._client.stream(
                self._config.model,
                directive.messages,
                self._config.provider_options,
                self._config.tool_specs(),
            )
        )
        try:
            while True:
                waited_from = monotonic()
                async with asyncio.timeout(max(remaining, 0)):
                    chunk = await anext(chunks, _END)
                if chunk is _END:
                    return
                remaining -= monotonic() - waited_from
                yield chunk
        finally:
            close = getattr(chunks, "aclose", None)
            if close is not None:
                await close()

    async def _exec_tools(self, calls: list[ExecTool]) -> list[Directive]:
        for call in calls:
            arguments = redact_arguments(call.arguments) if self._config.redact_tool_args else call.arguments
            await self._emit(
                EventKind.TOOL_STARTED,
                {"tool_call_id": call.call_id, "tool_name": call.name, "arguments": arguments},
                tool_call_id=call.call_id,
                tool_name=call.name,
            )

        semaphore = asyncio.Semaphore(self._config.tool_concurrency)

        async def execute(call: ExecTool):
            async with semaphore:
                return call, *(await self._executor.execute(call))

        directives: list[Directive] = []
        tasks = [self._channel.spawn(execute(call)) for call in calls]
        try:
            for next_done in asyncio.as_completed(tasks):
                call, outcome, attempts, duration_ms = await next_done
                await self._emit(
                    EventKind.TOOL_COMPLETED,
                    {
                        "tool_call_id": call.call_id,
                        "tool_name": call.name,
                        "result": outcome.to_dict(),
                        "attempts": attempts,
                        "duration_ms": duration_ms,
                    },
                    tool_call_id=call.call_id,
                    tool_name=call.name,
                )
                self._state, new_directives = machine.transition(
                    self._state, ToolResult(call_id=call.call_id, result=outcome), self._env
                )
                directives.extend(new_directives)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        # Tool results are now in the thread; resuming from here never re-runs them
        await self._checkpoint(CheckpointReason.AFTER_TOOLS)
        return directives

    async def _emit_terminal(self) -> None:
        state = self._state
        reason = state.termination_reason
        if reason == TerminationReason.CANCELLED:
            cancel_reason = (state.error or {}).get("reason", "cancelled")
            await self._emit(EventKind.REQUEST_CANCELLED, {"reason": cancel_reason})
        elif state.status == Status.COMPLETED:
            await self._emit(
                EventKind.REQUEST_COMPLETED,
                {"result": state.result, "termination_reason": str(reason), "usage": dict(state.usage)},
            )
        elif state.status == Status.ERROR:
            error = state.error or {}
            await self._emit(
                EventKind.REQUEST_FAILED,
                {"error": error, "error_type": error.get("type", "error")},
            )
        else:
            await self._emit(
                EventKind.REQUEST_FAILED,
                {"error": f"Run cannot proceed from status {state.status}", "error_type": "invalid_state"},
            )
        await self._checkpoint(CheckpointReason.TERMINAL)
        record_run_termination(RunTerminationLabels(self._config.model, str(reason)))
        self._log.info("run_finished", status=str(state.status), termination_reason=str(reason))

    async def _checkpoint(self, reason: CheckpointReason) -> None:
        checkpoint = token.issue(self._state, self._config, run_id=self.run_id, request_id=self.request_id)
        await self._emit(EventKind.CHECKPOINT, {"token": checkpoint, "reason": str(reason)})

    async def _emit(
        self,
        kind: EventKind,
        data: dict[str, Any],
        llm_call_id: str | None = None,
        tool_call_id: str | None = None,
        tool_name: str | None = None,
    ) -> None:
        event = StreamEvent(
            seq=0,
            kind=kind,
            data=data,
            run_id=self.run_id,
            request_id=self.request_id,
            iteration=self._state.iteration,
            llm_call_id=llm_call_id,
            tool_call_id=tool_call_id,
            tool_name=tool_name,
        )
        await self._channel.publish(event)

    def _check_cancel(self) -> None:
        if self._channel.cancel_requested:
            raise _CancelRequested()

    async def _interruptible(self, work: Awaitable[list[Directive]]) -> list[Directive]:
        """Await model or tool work, abandoning it as soon as cancel is requested."""
        work_task = self._channel.spawn(work)
        cancel_task = self._channel.spawn(self._channel.wait_cancelled())
        try:
            await asyncio.wait({work_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_task.cancel()
            if not work_task.done():
                work_task.cancel()
                with suppress(asyncio.CancelledError):
                    await work_task

        if work_task.cancelled():
            raise _CancelRequested()
        return work_task.result()
