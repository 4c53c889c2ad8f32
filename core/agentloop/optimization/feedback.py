"""Feedback collection.

Every piece of user feedback is stored as a FeedbackRecord and mirrored onto
its trace through the Tracer:

    thumbs_up        -> feedback_score 5
    thumbs_down      -> feedback_score 1
    approval_reject  -> feedback_score 2
    user_edit        -> user_edited + JSON edit summary

Edits and corrections are counted per agent; crossing the threshold within
the window flags the agent for optimization.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

from agentloop.optimization.repository import FeedbackRepository
from agentloop.optimization.schemas import (
    FeedbackRecord,
    FeedbackStats,
    FeedbackType,
    Sentiment,
    SentimentResult,
)
from agentloop.tracing.repository import TraceRepository
from agentloop.tracing.tracer import Tracer

logger = logging.getLogger(__name__)

FEEDBACK_SCORES: dict[FeedbackType, int] = {
    FeedbackType.THUMBS_UP: 5,
    FeedbackType.THUMBS_DOWN: 1,
    FeedbackType.APPROVAL_REJECT: 2,
}

EDIT_TYPES = (FeedbackType.USER_EDIT, FeedbackType.EXPLICIT_CORRECTION)
NEGATIVE_TYPES = (FeedbackType.THUMBS_DOWN, FeedbackType.APPROVAL_REJECT, FeedbackType.USER_EDIT)

_SNIPPET_LENGTH = 200
_LARGE_CHANGE = 50


def compute_edit_diff(original: str, edited: str) -> str:
    """Summarize an edit as JSON: change type, lengths and leading snippets."""
    if original == edited:
        return json.dumps({"type": "no_change"})

    length_diff = len(edited) - len(original)
    if length_diff > _LARGE_CHANGE:
        change_type = "addition"
    elif length_diff < -_LARGE_CHANGE:
        change_type = "deletion"
    else:
        change_type = "modification"

    return json.dumps(
        {
            "type": change_type,
            "original_length": len(original),
            "edited_length": len(edited),
            "length_diff": length_diff,
            "original_snippet": original[:_SNIPPET_LENGTH],
            "edited_snippet": edited[:_SNIPPET_LENGTH],
        }
    )


class FeedbackCollector:
    """Records user feedback and keeps traces in sync with it.

    Usage::

        collector = FeedbackCollector(feedback_repo, trace_repo)
        await collector.record_rating(trace_id, conv_id, user_id, agent_id, positive=False)
        stats = collector.stats(agent_id, days=30)
    """

    def __init__(
        self,
        feedback: FeedbackRepository,
        traces: TraceRepository,
        edit_threshold: int = 10,
        threshold_window_days: int = 7,
        on_threshold: Callable[[str, int], Awaitable[None]] | None = None,
    ) -> None:
        self._feedback = feedback
        self._traces = traces
        self._edit_threshold = edit_threshold
        self._threshold_window_days = threshold_window_days
        self._on_threshold = on_threshold
        self._flagged: set[str] = set()

    @property
    def flagged_agents(self) -> set[str]:
        """Agents whose recent edits crossed the optimization threshold."""
        return set(self._flagged)

    async def record(self, record: FeedbackRecord) -> FeedbackRecord:
        await asyncio.to_thread(self._feedback.add, record)
        logger.info(f"Recorded {record.type.value} feedback for agent {record.agent_id}")

        await self._update_trace(record)

        if record.type in EDIT_TYPES:
            await self._check_threshold(record.agent_id)
        return record

    async def _update_trace(self, record: FeedbackRecord) -> None:
        score = FEEDBACK_SCORES.get(record.type)
        edited = record.type == FeedbackType.USER_EDIT and record.user_edit is not None
        if score is None and not edited:
            return

        tracer = Tracer(self._traces, agent_id=record.agent_id, trace_id=record.trace_id)
        await tracer.record_feedback(
            score=score,
            user_edited=edited,
            edit_diff=compute_edit_diff(record.original_output, record.user_edit)
            if edited
            else None,
        )

    async def _check_threshold(self, agent_id: str) -> None:
        since = datetime.now(UTC) - timedelta(days=self._threshold_window_days)
        count = await asyncio.to_thread(
            self._feedback.count, agent_id, since=since, types=EDIT_TYPES
        )
        if count < self._edit_threshold or agent_id in self._flagged:
            return

        self._flagged.add(agent_id)
        logger.info(
            f"Optimization threshold reached for agent {agent_id} "
            f"({count} edits in {self._threshold_window_days} days)"
        )
        if self._on_threshold is not None:
            await self._on_threshold(agent_id, count)

    def clear_flag(self, agent_id: str) -> None:
        self._flagged.discard(agent_id)

    async def record_rating(
        self,
        trace_id: str,
        conversation_id: str,
        user_id: str,
        agent_id: str,
        positive: bool,
    ) -> FeedbackRecord:
        return await self.record(
            FeedbackRecord(
                trace_id=trace_id,
                conversation_id=conversation_id,
                user_id=user_id,
                agent_id=agent_id,
                type=FeedbackType.THUMBS_UP if positive else FeedbackType.THUMBS_DOWN,
            )
        )

    async def record_edit(
        self,
        trace_id: str,
        conversation_id: str,
        user_id: str,
        agent_id: str,
        original_output: str,
        edited_output: str,
        step_number: int = 0,
    ) -> FeedbackRecord:
        return await self.record(
            FeedbackRecord(
                trace_id=trace_id,
                conversation_id=conversation_id,
                user_id=user_id,
                agent_id=agent_id,
                type=FeedbackType.USER_EDIT,
                original_output=original_output,
                user_edit=edited_output,
                step_number=step_number,
            )
        )

    async def record_correction(
        self,
        trace_id: str,
        conversation_id: str,
        user_id: str,
        agent_id: str,
        original_output: str,
        correction: str,
        step_number: int = 0,
    ) -> FeedbackRecord:
        return await self.record(
            FeedbackRecord(
                trace_id=trace_id,
                conversation_id=conversation_id,
                user_id=user_id,
                agent_id=agent_id,
                type=FeedbackType.EXPLICIT_CORRECTION,
                original_output=original_output,
                correction_text=correction,
                step_number=step_number,
            )
        )

    async def record_rejection(
        self,
        trace_id: str,
        conversation_id: str,
        user_id: str,
        agent_id: str,
        rejected_output: str,
        step_number: int = 0,
    ) -> FeedbackRecord:
        return await self.record(
            FeedbackRecord(
                trace_id=trace_id,
                conversation_id=conversation_id,
                user_id=user_id,
                agent_id=agent_id,
                type=FeedbackType.APPROVAL_REJECT,
                original_output=rejected_output,
                step_number=step_number,
            )
        )

    def list_feedback(
        self,
        agent_id: str,
        types: list[FeedbackType] | None = None,
        limit: int = 100,
    ) -> list[FeedbackRecord]:
        return self._feedback.list_for_agent(agent_id, types=types, limit=limit)

    def stats(self, agent_id: str, days: int = 30) -> FeedbackStats:
        since = datetime.now(UTC) - timedelta(days=days)
        records = self._feedback.list_for_agent(agent_id, since=since)

        by_type = Counter({t.value: 0 for t in FeedbackType})
        by_type.update(r.type.value for r in records)
        total = len(records)
        if total == 0:
            return FeedbackStats(by_type=dict(by_type))

        negative = sum(by_type[t.value] for t in NEGATIVE_TYPES)
        return FeedbackStats(
            total=total,
            by_type=dict(by_type),
            positive_rate=by_type[FeedbackType.THUMBS_UP.value] / total,
            negative_rate=negative / total,
            edit_rate=by_type[FeedbackType.USER_EDIT.value] / total,
        )


# ---------------------------------------------------------------------------
# Sentiment
# ---------------------------------------------------------------------------

POSITIVE_KEYWORDS = (
    "thank", "thanks", "perfect", "great", "awesome", "excellent", "amazing",
    "wonderful", "fantastic", "love", "appreciate", "helpful", "worked", "works",
    "solved", "fixed", "success", "good", "nice", "happy", "satisfied",
)  # fmt: skip

NEGATIVE_KEYWORDS = (
    "bad", "terrible", "awful", "horrible", "wrong", "broken", "failed", "error",
    "problem", "issue", "bug", "not working", "doesn't work", "disappointed",
    "frustrated", "annoying", "useless", "waste", "unhappy", "dissatisfied",
)  # fmt: skip


def _label(score: float) -> Sentiment:
    if score > 0.2:
        return Sentiment.POSITIVE
    if score < -0.2:
        return Sentiment.NEGATIVE
    return Sentiment.NEUTRAL


class SentimentAnalyzer:
    """Keyword-based sentiment of user messages, score in -1..1."""

    def analyze(self, text: str) -> SentimentResult:
        lowered = text.lower()
        positive = sum(1 for kw in POSITIVE_KEYWORDS if kw in lowered)
        negative = sum(1 for kw in NEGATIVE_KEYWORDS if kw in lowered)
        hits = positive + negative
        if hits == 0:
            return SentimentResult(sentiment=Sentiment.NEUTRAL, score=0.0, confidence=0.3)

        score = (positive - negative) / hits
        return SentimentResult(sentiment=_label(score), score=score, confidence=min(hits / 3, 1.0))

    def analyze_batch(self, texts: list[str]) -> list[SentimentResult]:
        return [self.analyze(text) for text in texts]

    def average(self, results: list[SentimentResult]) -> SentimentResult:
        if not results:
            return SentimentResult()
        score = sum(r.score for r in results) / len(results)
        confidence = sum(r.confidence for r in results) / len(results)
        return SentimentResult(sentiment=_label(score), score=score, confidence=confidence)
