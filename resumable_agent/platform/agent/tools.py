"""Tool execution with timeout, retry and backoff.

``ToolExecutor`` resolves a tool call against the run's tool map, invokes the
handler under a bounded wait and retries transient failures. Every outcome,
success or failure, is returned as a ``ToolOutcome`` so a failing tool never
crashes the run.
"""

import asyncio
import inspect
from collections.abc import Mapping
from time import monotonic
from typing import Any

from opentelemetry import trace
from pydantic_core import to_jsonable_python
from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt, wait_fixed

from resumable_agent.platform.agent.config import RunConfig, Tool
from resumable_agent.platform.agent.exceptions import ToolError
from resumable_agent.platform.agent.machine import ExecTool
from resumable_agent.platform.agent.metrics import ToolMetricsLabels, record_tool_call
from resumable_agent.platform.agent.state import ToolOutcome
from resumable_agent.platform.observability.logging import get_logger

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)

UNKNOWN_TOOL = "unknown_tool"
TIMEOUT = "timeout"
EXCEPTION = "exception"
EXECUTION_ERROR = "execution_error"

RETRYABLE_ERROR_TYPES = frozenset({TIMEOUT, EXCEPTION, EXECUTION_ERROR})

REDACTED = "[REDACTED]"
SENSITIVE_KEY_MARKERS = ("password", "secret", "token", "api_key", "apikey", "authorization", "credential")


class ToolExecutor:
    """Executes tool calls for one run configuration."""

    def __init__(self, config: RunConfig) -> None:
        self._tools: Mapping[str, Tool] = config.tools
        self._timeout_ms = config.tool_timeout_ms
        self._max_retries = config.tool_max_retries
        self._backoff_ms = config.tool_retry_backoff_ms

    async def execute(self, call: ExecTool) -> tuple[ToolOutcome, int, int]:
        """Execute a tool call, retrying retryable failures.

        Args:
            call: Tool call directive from the state machine

        Returns:
            Tuple of (outcome, attempts, duration_ms)
        """
        start = monotonic()
        log = logger.bind(tool_call_id=call.call_id, tool_name=call.name)

        tool = self._tools.get(call.name)
        if tool is None:
            log.warning("tool_unknown")
            outcome = ToolOutcome.failure(UNKNOWN_TOOL, f"Tool '{call.name}' is not registered")
            return outcome, 1, _elapsed_ms(start)

        with tracer.start_as_current_span(f"tool {call.name}") as span:
            span.set_attribute("tool.name", call.name)
            span.set_attribute("tool.call_id", call.call_id)

            def log_retry(retry_state: RetryCallState) -> None:
                failed, _ = retry_state.outcome.result()
                log.info("tool_retry", attempt=retry_state.attempt_number, error=failed.error)

            retrying = AsyncRetrying(
                stop=stop_after_attempt(self._max_retries + 1),
                wait=wait_fixed(self._backoff_ms / 1000),
                retry=retry_if_result(_should_retry),
                before_sleep=log_retry,
                # Exhausted retries return the last failure instead of raising RetryError
                retry_error_callback=lambda retry_state: retry_state.outcome.result(),
            )
            async for attempt in retrying:
                with attempt:
                    outcome, retryable = await self._attempt(tool, call.arguments)
                if not attempt.retry_state.outcome.failed:
                    attempt.retry_state.set_result((outcome, retryable))
            attempts = attempt.retry_state.attempt_number

            span.set_attribute("tool.attempts", attempts)
            span.set_attribute("tool.ok", outcome.ok)

        duration_ms = _elapsed_ms(start)
        record_tool_call(
            ToolMetricsLabels(tool_name=call.name, outcome="ok" if outcome.ok else str(outcome.error_type)),
            duration_ms / 1000,
            attempts,
        )
        log.debug("tool_completed", ok=outcome.ok, attempts=attempts, duration_ms=duration_ms)
        return outcome, attempts, duration_ms

    async def _attempt(self, tool: Tool, arguments: dict[str, Any]) -> tuple[ToolOutcome, bool]:
        timeout_ms = tool.timeout_ms or self._timeout_ms
        try:
            async with asyncio.timeout(timeout_ms / 1000):
                if inspect.iscoroutinefunction(tool.handler):
                    output = await tool.handler(dict(arguments))
                else:
                    output = await asyncio.to_thread(tool.handler, dict(arguments))
                    if inspect.isawaitable(output):
                        output = await output
        except TimeoutError:
            return ToolOutcome.failure(TIMEOUT, f"Tool '{tool.name}' timed out after {timeout_ms}ms"), True
        except ToolError as e:
            return ToolOutcome.failure(EXECUTION_ERROR, str(e)), e.retryable
        except Exception as e:
            logger.warning("tool_exception", tool_name=tool.name, error=str(e), exc_info=True)
            return ToolOutcome.failure(EXCEPTION, f"{type(e).__name__}: {e}"), True

        return ToolOutcome.success(to_jsonable_python(output, serialize_unknown=True)), False


def redact_arguments(arguments: Mapping[str, Any]) -> dict[str, Any]:
    """Mask values of sensitive-looking keys, recursively.

    Args:
        arguments: Tool call arguments

    Returns:
        Copy of arguments with sensitive values replaced
    """
    redacted: dict[str, Any] = {}
    for key, value in arguments.items():
        if any(marker in str(key).lower() for marker in SENSITIVE_KEY_MARKERS):
            redacted[key] = REDACTED
        elif isinstance(value, Mapping):
            redacted[key] = redact_arguments(value)
        elif isinstance(value, list):
            redacted[key] = [redact_arguments(v) if isinstance(v, Mapping) else v for v in value]
        else:
            redacted[key] = value
    return redacted


def _should_retry(result: tuple[ToolOutcome, bool]) -> bool:
    outcome, retryable = result
    return not outcome.ok and retryable


def _elapsed_ms(start: float) -> int:
    return int((monotonic() - start) * 1000)
