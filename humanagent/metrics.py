"""Prometheus metrics for the agent pipeline.

The module bundles all collectors in one place so registration side-effects
happen exactly once per process.  Services simply
``from humanagent.metrics import …`` and increment.
"""

from __future__ import annotations

from prometheus_client import Counter
from prometheus_client import Histogram

pipeline_runs_total = Counter(
    "pipeline_runs_total",
    "Agent pipeline runs by final status",
    labelnames=("status",),
)

pipeline_run_duration_seconds = Histogram(
    "pipeline_run_duration_seconds",
    "End-to-end duration of a single pipeline run (seconds)",
    buckets=(0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 900),
)

llm_tokens_total = Counter(
    "llm_tokens_total",
    "Tokens consumed by model invocations",
    labelnames=("model",),
)

external_api_retry_total = Counter(
    "external_api_retry_total",
    "Total retries executed against external providers",
    labelnames=("provider", "function"),
)

security_verdicts_total = Counter(
    "security_verdicts_total",
    "Security scanner verdicts",
    labelnames=("verdict",),
)

stale_tasks_reconciled_total = Counter(
    "stale_tasks_reconciled_total",
    "Tasks force-failed by the staleness guard",
)

a2a_messages_total = Counter(
    "a2a_messages_total",
    "Agent-to-agent messages by delivery outcome",
    labelnames=("outcome",),
)

actions_executed_total = Counter(
    "actions_executed_total",
    "Action directives executed from model output",
    labelnames=("type", "result"),
)

scheduler_dispatch_total = Counter(
    "scheduler_dispatch_total",
    "Scheduler dispatches by outcome",
    labelnames=("outcome",),
)

__all__ = [
    "pipeline_runs_total",
    "pipeline_run_duration_seconds",
    "llm_tokens_total",
    "external_api_retry_total",
    "security_verdicts_total",
    "stale_tasks_reconciled_total",
    "a2a_messages_total",
    "actions_executed_total",
    "scheduler_dispatch_total",
]
