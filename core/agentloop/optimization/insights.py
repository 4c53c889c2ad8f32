"""Trace anomaly detection.

Flags individual runs that stand out against the agent's own averages:

    cost or latency > 3x average  -> medium  (> 5x -> high)
    more than 3 failed tool calls -> high
    feedback score of 2 or less   -> medium
"""

from __future__ import annotations

import logging
from datetime import datetime

from agentloop.optimization.schemas import Anomaly, AnomalySeverity, AnomalyType
from agentloop.tracing.repository import TraceRepository
from agentloop.tracing.schemas import Trace

logger = logging.getLogger(__name__)

SPIKE_FACTOR = 3.0
SEVERE_SPIKE_FACTOR = 5.0
MAX_TOOL_FAILURES = 3
LOW_FEEDBACK_SCORE = 2


def _spike_severity(value: float, average: float) -> AnomalySeverity | None:
    if average <= 0 or value <= average * SPIKE_FACTOR:
        return None
    if value > average * SEVERE_SPIKE_FACTOR:
        return AnomalySeverity.HIGH
    return AnomalySeverity.MEDIUM


def detect_anomalies(traces: list[Trace]) -> list[Anomaly]:
    if not traces:
        return []

    avg_cost = sum(t.total_cost for t in traces) / len(traces)
    latencies = [t.latency_ms for t in traces if t.latency_ms is not None]
    avg_latency = sum(latencies) / len(latencies) if latencies else 0.0

    anomalies: list[Anomaly] = []
    for trace in traces:
        severity = _spike_severity(trace.total_cost, avg_cost)
        if severity:
            anomalies.append(
                Anomaly(
                    type=AnomalyType.HIGH_COST,
                    trace_id=trace.trace_id,
                    value=trace.total_cost,
                    expected=avg_cost,
                    severity=severity,
                    description=(
                        f"Cost ${trace.total_cost:.4f} is "
                        f"{trace.total_cost / avg_cost:.1f}x the average"
                    ),
                )
            )

        if trace.latency_ms is not None:
            severity = _spike_severity(trace.latency_ms, avg_latency)
            if severity:
                anomalies.append(
                    Anomaly(
                        type=AnomalyType.HIGH_LATENCY,
                        trace_id=trace.trace_id,
                        value=trace.latency_ms,
                        expected=avg_latency,
                        severity=severity,
                        description=(
                            f"Latency {trace.latency_ms}ms is "
                            f"{trace.latency_ms / avg_latency:.1f}x the average"
                        ),
                    )
                )

        if trace.tool_failures > MAX_TOOL_FAILURES:
            anomalies.append(
                Anomaly(
                    type=AnomalyType.TOOL_FAILURES,
                    trace_id=trace.trace_id,
                    value=trace.tool_failures,
                    expected=0,
                    severity=AnomalySeverity.HIGH,
                    description=f"{trace.tool_failures} tool calls failed",
                )
            )

        if trace.feedback_score is not None and trace.feedback_score <= LOW_FEEDBACK_SCORE:
            anomalies.append(
                Anomaly(
                    type=AnomalyType.LOW_SATISFACTION,
                    trace_id=trace.trace_id,
                    value=trace.feedback_score,
                    expected=4,
                    severity=AnomalySeverity.MEDIUM,
                    description=f"User rated this run {trace.feedback_score}/5",
                )
            )

    return anomalies


class InsightsEngine:
    def __init__(self, traces: TraceRepository) -> None:
        self._traces = traces

    def anomalies(self, agent_id: str, since: datetime | None = None) -> list[Anomaly]:
        traces = self._traces.list_for_agent(agent_id, since=since)
        found = detect_anomalies(traces)
        if found:
            logger.info(f"Detected {len(found)} anomalies across {len(traces)} runs of {agent_id}")
        return found
