"""Performance Analyzer.

Aggregates an agent's traces and conversation evaluations over a window:

* completion rate: completed traces / all traces
* satisfaction: mean of evaluation scores and trace feedback scores
* failure modes seen in at least ``failure_mode_min_frequency`` of evaluations
* per-tool usage, success rate and latency
* complaint categories from keywords in the users' messages
* hallucination rate: evaluations flagging ``hallucination`` / evaluations

All computation is local and deterministic; no LLM calls.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import UTC, datetime, timedelta

from agentloop.config import OptimizationPolicy
from agentloop.optimization.repository import EvaluationRepository
from agentloop.optimization.schemas import (
    ConversationEvaluation,
    PerformanceAnalysis,
    ToolUsageStats,
)
from agentloop.tracing.repository import TraceRepository
from agentloop.tracing.schemas import Trace, TraceStatus

logger = logging.getLogger(__name__)

HALLUCINATION = "hallucination"

COMPLAINT_KEYWORDS: dict[str, tuple[str, ...]] = {
    "too_verbose": ("too long", "verbose"),
    "too_brief": ("too short", "more detail"),
    "too_creative": ("creative", "unpredictable"),
    "too_robotic": ("robotic", "generic"),
    "inaccurate": ("wrong", "incorrect"),
}


def extract_common_failures(
    evaluations: list[ConversationEvaluation],
    min_frequency: float = 0.1,
    max_modes: int = 5,
) -> list[str]:
    counts: Counter[str] = Counter()
    for evaluation in evaluations:
        counts.update(evaluation.failure_modes)

    threshold = len(evaluations) * min_frequency
    frequent = [(mode, n) for mode, n in counts.items() if n >= threshold]
    frequent.sort(key=lambda item: item[1], reverse=True)
    return [mode for mode, _ in frequent[:max_modes]]


def analyze_tool_usage(traces: list[Trace]) -> list[ToolUsageStats]:
    counts: Counter[str] = Counter()
    successes: Counter[str] = Counter()
    latencies: dict[str, list[int]] = {}

    for trace in traces:
        for event in trace.tool_events:
            name = event.tool_name or "unknown"
            counts[name] += 1
            if event.success:
                successes[name] += 1
            if event.latency_ms:
                latencies.setdefault(name, []).append(event.latency_ms)

    total_calls = sum(counts.values())
    stats = []
    for name, count in counts.items():
        tool_latencies = latencies.get(name, [])
        stats.append(
            ToolUsageStats(
                tool_name=name,
                usage_count=count,
                usage_rate=count / max(total_calls, 1),
                success_rate=successes[name] / max(count, 1),
                avg_latency_ms=sum(tool_latencies) / len(tool_latencies) if tool_latencies else 0.0,
            )
        )
    stats.sort(key=lambda s: s.usage_count, reverse=True)
    return stats


def extract_complaints(traces: list[Trace]) -> list[str]:
    """Complaint categories found in user messages, in first-seen order."""
    found: dict[str, None] = {}
    for trace in traces:
        for message in trace.user_messages:
            content = message.lower()
            for category, keywords in COMPLAINT_KEYWORDS.items():
                if any(keyword in content for keyword in keywords):
                    found.setdefault(category, None)
    return list(found)


def is_performing_well(analysis: PerformanceAnalysis, policy: OptimizationPolicy) -> bool:
    return (
        analysis.avg_satisfaction >= policy.healthy_satisfaction
        and analysis.completion_rate >= policy.healthy_completion_rate
        and analysis.hallucination_rate < policy.max_hallucination_rate
        and not analysis.common_failures
    )


class PerformanceAnalyzer:
    """Builds a PerformanceAnalysis from stored traces and evaluations.

    Usage::

        analyzer = PerformanceAnalyzer(trace_repo, evaluation_repo)
        analysis = analyzer.analyze("agent_1")
        if not analyzer.is_performing_well(analysis):
            ...
    """

    def __init__(
        self,
        traces: TraceRepository,
        evaluations: EvaluationRepository,
        policy: OptimizationPolicy | None = None,
    ) -> None:
        self._traces = traces
        self._evaluations = evaluations
        self._policy = policy or OptimizationPolicy()

    @property
    def policy(self) -> OptimizationPolicy:
        return self._policy

    def is_performing_well(self, analysis: PerformanceAnalysis) -> bool:
        return is_performing_well(analysis, self._policy)

    def analyze(self, agent_id: str, window_days: int | None = None) -> PerformanceAnalysis:
        policy = self._policy
        if window_days is None:
            window_days = policy.window_days
        since = datetime.now(UTC) - timedelta(days=window_days)

        traces = self._traces.list_for_agent(agent_id, since=since)
        if not traces:
            logger.info(f"No traces for agent {agent_id} in the last {window_days} days")
            return PerformanceAnalysis(
                agent_id=agent_id,
                window_days=window_days,
                avg_satisfaction=policy.neutral_satisfaction,
            )

        evaluations = self._evaluations.list_for_agent(agent_id, since=since)

        completed = sum(1 for t in traces if t.status == TraceStatus.COMPLETED)
        scores = [e.user_satisfaction_score for e in evaluations]
        scores.extend(t.feedback_score for t in traces if t.feedback_score is not None)
        avg_satisfaction = sum(scores) / len(scores) if scores else policy.neutral_satisfaction

        latencies = [t.latency_ms for t in traces if t.latency_ms is not None]
        hallucinations = sum(1 for e in evaluations if HALLUCINATION in e.failure_modes)

        analysis = PerformanceAnalysis(
            agent_id=agent_id,
            window_days=window_days,
            total_runs=len(traces),
            completion_rate=completed / len(traces),
            avg_satisfaction=avg_satisfaction,
            avg_cost=sum(t.total_cost for t in traces) / len(traces),
            avg_latency_ms=sum(latencies) / len(latencies) if latencies else 0.0,
            common_failures=extract_common_failures(
                evaluations,
                policy.failure_mode_min_frequency,
                policy.max_failure_modes,
            ),
            tool_usage=analyze_tool_usage(traces),
            top_complaints=extract_complaints(traces),
            hallucination_rate=hallucinations / max(len(evaluations), 1),
        )
        logger.info(
            f"Analyzed agent {agent_id}: {analysis.total_runs} runs, "
            f"completion {analysis.completion_rate:.0%}, "
            f"satisfaction {analysis.avg_satisfaction:.1f}/5"
        )
        return analysis
