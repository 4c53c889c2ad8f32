"""Conversation evaluation.

Turns the traces of one finished conversation into a ConversationEvaluation,
the record the PerformanceAnalyzer aggregates:

* goal completion from the last user message, the final trace status and
  the tool success rate
* satisfaction (1..5) from the sentiment of the last user message, user
  edits and tool failures; explicit trace feedback overrides the inference
* topic categories from keywords across the user messages
* failure modes from the evaluation gate's results (``hallucination``,
  blocked L3 review) plus tool error rate and step-limit hits
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from agentloop.errors import NotFoundError
from agentloop.optimization.feedback import SentimentAnalyzer
from agentloop.optimization.repository import EvaluationRepository
from agentloop.optimization.schemas import ConversationEvaluation, Sentiment
from agentloop.tracing.repository import TraceRepository
from agentloop.tracing.schemas import Trace, TraceStatus

logger = logging.getLogger(__name__)

UNSAFE_OUTPUT = "unsafe_output"
TOOL_ERRORS = "tool_errors"
MAX_STEPS_REACHED = "max_steps_reached"
HALLUCINATION = "hallucination"

GOAL_MET_KEYWORDS = (
    "thank", "perfect", "great", "awesome", "excellent", "worked", "works", "done", "solved",
)  # fmt: skip
GOAL_MISSED_KEYWORDS = (
    "didn't work", "not working", "failed", "error", "problem", "issue", "wrong", "broken",
)  # fmt: skip

CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "sales": ("deal", "lead", "prospect", "quote", "proposal", "crm", "pipeline"),
    "support": ("ticket", "issue", "bug", "help", "problem", "error", "fix"),
    "marketing": ("campaign", "email", "newsletter", "content", "seo", "analytics"),
    "research": ("analyze", "research", "data", "insight", "report", "study"),
    "hr": ("candidate", "resume", "interview", "hire", "onboard", "employee"),
    "finance": ("invoice", "payment", "billing", "expense", "budget", "revenue"),
}

SUGGESTIONS: dict[str, str] = {
    TOOL_ERRORS: "Review tool configurations and error handling",
    HALLUCINATION: "Add RAG context or increase grounding in system prompt",
    MAX_STEPS_REACHED: "Increase the step limit or simplify task decomposition",
    UNSAFE_OUTPUT: "Review and strengthen safety guardrails",
}

_TOOL_ERROR_RATE = 0.3
_NEUTRAL_SATISFACTION = 3.0


@dataclass
class GoalCompletion:
    completed: bool
    confidence: float
    reasoning: str


def _tool_totals(traces: list[Trace]) -> tuple[int, int]:
    successes = sum(t.tool_successes for t in traces)
    failures = sum(t.tool_failures for t in traces)
    return successes, failures


def detect_goal_completion(user_messages: list[str], traces: list[Trace]) -> GoalCompletion:
    if user_messages:
        last = user_messages[-1].lower()
        if any(kw in last for kw in GOAL_MET_KEYWORDS):
            return GoalCompletion(True, 0.8, "User expressed satisfaction")
        if any(kw in last for kw in GOAL_MISSED_KEYWORDS):
            return GoalCompletion(False, 0.7, "User reported a problem")

    if traces and traces[-1].status == TraceStatus.COMPLETED:
        return GoalCompletion(True, 0.6, "Conversation completed without errors")

    successes, failures = _tool_totals(traces)
    total = successes + failures
    success_rate = successes / total if total else 1.0
    if success_rate > 0.8:
        return GoalCompletion(
            True, 0.5 + success_rate * 0.3, f"High tool success rate ({success_rate:.0%})"
        )
    return GoalCompletion(False, 0.3, "No clear completion signals")


def infer_satisfaction(
    user_messages: list[str],
    traces: list[Trace],
    sentiment: SentimentAnalyzer,
) -> float:
    """Satisfaction on a 1..5 scale, rounded to one decimal."""
    explicit = next((t.feedback_score for t in traces if t.feedback_score is not None), None)
    if explicit is not None:
        return float(max(1, min(5, explicit)))

    score = _NEUTRAL_SATISFACTION
    if user_messages:
        result = sentiment.analyze(user_messages[-1])
        if result.sentiment == Sentiment.POSITIVE:
            score += 1.5 * result.confidence
        elif result.sentiment == Sentiment.NEGATIVE:
            score -= 1.5 * result.confidence

    if any(t.user_edited for t in traces):
        score -= 1

    if traces:
        avg_failures = sum(t.tool_failures for t in traces) / len(traces)
        if avg_failures > 0:
            score -= min(avg_failures * 0.5, 1.5)

    return max(1.0, min(5.0, round(score, 1)))


def categorize(user_messages: list[str]) -> list[str]:
    text = " ".join(user_messages).lower()
    categories = [
        category
        for category, keywords in CATEGORY_KEYWORDS.items()
        if sum(1 for kw in keywords if kw in text) >= 2
    ]
    return categories or ["general"]


def detect_failures(traces: list[Trace]) -> list[str]:
    """Failure modes in first-seen order, without duplicates."""
    found: dict[str, None] = {}

    for trace in traces:
        summary = trace.eval_summary
        if summary is None:
            continue
        if summary.l3_blocked:
            found.setdefault(UNSAFE_OUTPUT, None)
        for mode in summary.failure_modes:
            found.setdefault(mode, None)

    successes, failures = _tool_totals(traces)
    total = successes + failures
    if total and failures / total > _TOOL_ERROR_RATE:
        found.setdefault(TOOL_ERRORS, None)

    if any(t.total_steps >= t.max_steps or t.status == TraceStatus.TIMEOUT for t in traces):
        found.setdefault(MAX_STEPS_REACHED, None)

    return list(found)


def suggest_improvements(failure_modes: list[str]) -> list[str]:
    return [SUGGESTIONS[mode] for mode in failure_modes if mode in SUGGESTIONS]


class ConversationEvaluator:
    """Scores finished conversations and stores the result.

    Usage::

        evaluator = ConversationEvaluator(trace_repo, evaluation_repo)
        evaluation = await evaluator.evaluate_conversation("conv_42")

    Re-evaluating a conversation replaces its earlier evaluation.
    """

    def __init__(
        self,
        traces: TraceRepository,
        evaluations: EvaluationRepository,
        sentiment: SentimentAnalyzer | None = None,
    ) -> None:
        self._traces = traces
        self._evaluations = evaluations
        self._sentiment = sentiment or SentimentAnalyzer()

    def evaluate_traces(self, traces: list[Trace]) -> ConversationEvaluation:
        """Build an evaluation from one conversation's traces, oldest first."""
        if not traces:
            raise ValueError("Cannot evaluate a conversation without traces")

        user_messages = [message for trace in traces for message in trace.user_messages]
        goal = detect_goal_completion(user_messages, traces)
        failure_modes = detect_failures(traces)

        return ConversationEvaluation(
            agent_id=traces[0].agent_id,
            conversation_id=traces[0].conversation_id,
            trace_id=traces[-1].trace_id,
            goal_completed=goal.completed,
            goal_completion_confidence=goal.confidence,
            user_satisfaction_score=infer_satisfaction(user_messages, traces, self._sentiment),
            categories=categorize(user_messages),
            failure_modes=failure_modes,
            improvement_suggestions=suggest_improvements(failure_modes),
            total_steps=sum(t.total_steps for t in traces),
            total_cost=sum(t.total_cost for t in traces),
        )

    async def evaluate_conversation(self, conversation_id: str) -> ConversationEvaluation:
        """Evaluate and store one conversation.

        Raises:
            NotFoundError: if no trace belongs to the conversation.
        """
        traces = await asyncio.to_thread(self._traces.list_for_conversation, conversation_id)
        if not traces:
            raise NotFoundError("Conversation", conversation_id)

        evaluation = self.evaluate_traces(traces)
        await asyncio.to_thread(self._evaluations.save, evaluation)
        logger.info(
            f"Evaluated conversation {conversation_id}: "
            f"satisfaction {evaluation.user_satisfaction_score}/5, "
            f"goal {'met' if evaluation.goal_completed else 'not met'}, "
            f"failures {evaluation.failure_modes or 'none'}"
        )
        return evaluation

    async def evaluate_agent(
        self, agent_id: str, window_days: int = 30
    ) -> list[ConversationEvaluation]:
        """Evaluate every finished conversation of an agent within the window.

        Traces without a conversation id are evaluated on their own.
        Conversations with a running trace are skipped.
        """
        since = datetime.now(UTC) - timedelta(days=window_days)
        traces = await asyncio.to_thread(self._traces.list_for_agent, agent_id, since)

        grouped: dict[str, list[Trace]] = defaultdict(list)
        for trace in sorted(traces, key=lambda t: t.started_at):
            grouped[trace.conversation_id or trace.trace_id].append(trace)

        results = []
        for key, conversation in grouped.items():
            if any(not t.is_finalized for t in conversation):
                logger.debug(f"Skipping conversation {key}: still running")
                continue
            evaluation = self.evaluate_traces(conversation)
            await asyncio.to_thread(self._evaluations.save, evaluation)
            results.append(evaluation)

        logger.info(f"Evaluated {len(results)} conversations for agent {agent_id}")
        return results
