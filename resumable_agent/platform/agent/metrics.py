"""Reasoning run metrics.

Counters and histograms for model token usage, tool calls and run
terminations, registered on the default Prometheus registry.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from time import monotonic
from typing import Any, NamedTuple

import prometheus_client

from resumable_agent.platform.observability.metrics import setup_metrics_factory


class AgentMetricsLabels(NamedTuple):
    model: str


class ToolMetricsLabels(NamedTuple):
    tool_name: str
    outcome: str


class RunTerminationLabels(NamedTuple):
    model: str
    termination_reason: str


run_histogram = setup_metrics_factory(
    prometheus_client.REGISTRY,
    name="agent_run_stream_duration_seconds",
    documentation="Duration of a run event stream (seconds)",
    labelnames=AgentMetricsLabels._fields,
)

model_call_histogram = setup_metrics_factory(
    prometheus_client.REGISTRY,
    name="agent_llm_call_duration_seconds",
    documentation="Duration of a single model call (seconds)",
    labelnames=AgentMetricsLabels._fields,
)

tool_histogram = setup_metrics_factory(
    prometheus_client.REGISTRY,
    name="agent_tool_duration_seconds",
    documentation="Duration of a tool call including retries (seconds)",
    labelnames=ToolMetricsLabels._fields,
)

tool_attempts_counter = prometheus_client.Counter(
    "agent_tool_attempts",
    "Tool handler invocations, including retries",
    labelnames=("tool_name",),
)

token_counter = prometheus_client.Counter(
    "agent_llm_tokens",
    "Model tokens reported by providers",
    labelnames=("model", "kind"),
)

run_termination_counter = prometheus_client.Counter(
    "agent_run_terminations",
    "Runs reaching a terminal event",
    labelnames=RunTerminationLabels._fields,
)


@asynccontextmanager
async def collect_agent_metrics(labels: AgentMetricsLabels) -> AsyncIterator[None]:
    """Time a run stream, recording the duration even when it is cancelled."""
    start = monotonic()
    try:
        yield
    finally:
        run_histogram.labels(*labels).observe(monotonic() - start)


def record_model_call(labels: AgentMetricsLabels, elapsed_sec: float, usage: dict[str, Any]) -> None:
    """Record one model call duration and its reported token usage."""
    model_call_histogram.labels(*labels).observe(elapsed_sec)
    for kind, count in usage.items():
        if isinstance(count, int) and not isinstance(count, bool) and count > 0:
            token_counter.labels(labels.model, kind).inc(count)


def record_tool_call(labels: ToolMetricsLabels, elapsed_sec: float, attempts: int) -> None:
    tool_histogram.labels(*labels).observe(elapsed_sec)
    tool_attempts_counter.labels(labels.tool_name).inc(attempts)


def record_run_termination(labels: RunTerminationLabels) -> None:
    run_termination_counter.labels(*labels).inc()
