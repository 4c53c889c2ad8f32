"""Evaluator - the approval gate.

Progressive evaluation of one agent output:

    L1 assertions ──► L2 scoring ──► L3 judge (only if triggered and L1 passed)
                                        │
                                        ▼
                                  decide_final()

The decision policy is a pure function so it can be reproduced from stored
fields alone:

1. l1_passed is False                          -> blocked
2. L3 triggered and blocked                    -> blocked
3. l2_score >= auto_send_threshold, L3 not triggered or passed,
   confidence >= min_confidence, approval not required -> auto_send
4. anything else (including missing values)    -> needs_review
"""

from __future__ import annotations

import asyncio
import logging

from agentloop.config import EvaluationPolicy
from agentloop.errors import EvaluationFailure
from agentloop.evaluation.assertions import evaluate_assertions
from agentloop.evaluation.grounding import GroundingVerifier
from agentloop.evaluation.judge import Judge, should_trigger
from agentloop.evaluation.schemas import (
    Decision,
    EvalContext,
    EvalResult,
    EvalRules,
    GroundingResult,
    JudgeVerdict,
    Verdict,
)
from agentloop.evaluation.scoring import score_output
from agentloop.tracing.tracer import Tracer

logger = logging.getLogger(__name__)

HALLUCINATION = "hallucination"


def decide_final(
    *,
    l1_passed: bool | None,
    l2_score: int | None,
    l3_triggered: bool,
    l3_blocked: bool | None,
    l3_passed: bool | None,
    confidence: float | None,
    auto_send_threshold: int,
    min_confidence: float,
    require_approval: bool | None,
) -> Decision:
    if l1_passed is False:
        return Decision.BLOCKED
    if l3_triggered and l3_blocked is True:
        return Decision.BLOCKED

    if (
        l1_passed is True
        and l2_score is not None
        and l2_score >= auto_send_threshold
        and (not l3_triggered or l3_passed is True)
        and confidence is not None
        and confidence >= min_confidence
        and require_approval is False
    ):
        return Decision.AUTO_SEND
    return Decision.NEEDS_REVIEW


def overall_confidence(
    context: EvalContext,
    verdict: JudgeVerdict | None,
    l2_score: int,
) -> float:
    """Lowest reported confidence; the L2 score scaled to 0..1 when none is reported."""
    signals = [c for c in (context.confidence, verdict.confidence if verdict else None) if c is not None]
    if signals:
        return min(signals)
    return l2_score / 100


class Evaluator:
    """Runs the three evaluation tiers and applies the decision policy.

    Usage:
        evaluator = Evaluator(policy=EvaluationPolicy(), judge=LLMJudge(provider))
        result = await evaluator.evaluate(
            draft,
            EvalRules(assertions=[Assertion(check="no_placeholders")]),
            EvalContext(action="send_email", recipient_name="Ana Lopez"),
        )
        if result.final_decision == Decision.AUTO_SEND:
            ...
    """

    def __init__(
        self,
        policy: EvaluationPolicy | None = None,
        judge: Judge | None = None,
        grounding: GroundingVerifier | None = None,
    ) -> None:
        self._policy = policy or EvaluationPolicy()
        self._judge = judge
        self._grounding = grounding

    @property
    def policy(self) -> EvaluationPolicy:
        return self._policy

    async def evaluate(
        self,
        output: str,
        rules: EvalRules | None = None,
        context: EvalContext | None = None,
    ) -> EvalResult:
        """Evaluate one candidate output.

        Judge failures never raise: they route the run to needs_review with
        a system note. Configuration errors (unknown checks or criteria)
        raise EvaluationFailure.
        """
        policy = self._policy
        rules = rules or EvalRules()
        context = context or EvalContext()

        l2_min_score = rules.l2_min_score if rules.l2_min_score is not None else policy.l2_min_score
        threshold = (
            rules.auto_send_threshold
            if rules.auto_send_threshold is not None
            else policy.auto_send_threshold
        )
        require_approval = (
            rules.require_approval if rules.require_approval is not None else policy.require_approval
        )

        l1 = evaluate_assertions(output, rules.assertions, context)
        try:
            l2 = score_output(
                output,
                context,
                weights=rules.l2_weights or policy.l2_weights,
                method=policy.l2_aggregation,
                min_score=l2_min_score,
            )
        except KeyError as e:
            raise EvaluationFailure(f"Unknown L2 criterion: {e}") from e

        suggestions = [f"L1 warning: {w.message}" for w in l1.warnings if w.message]
        suggestions.extend(l2.recommendations)
        system_notes: list[str] = []
        failure_modes: list[str] = []

        l3_triggered = False
        l3_blocked = False
        l3_passed: bool | None = None
        l3_reason: str | None = None
        verdict: JudgeVerdict | None = None
        grounding: GroundingResult | None = None

        if l1.passed and should_trigger(policy, context, l2.score, l2_min_score):
            l3_triggered = True
            verdict = await self._run_judge(output, context, system_notes)

            if verdict is not None:
                if verdict.verdict == Verdict.FAIL and verdict.confidence > policy.judge_min_confidence:
                    l3_blocked = True
                    l3_reason = verdict.reason or "Judge rejected the output"
                l3_passed = verdict.verdict == Verdict.PASS
                suggestions.extend(f"L3: {s}" for s in verdict.suggestions)

                ungrounded = [c.text for c in verdict.claims if not c.grounded]
                if ungrounded:
                    failure_modes.append(HALLUCINATION)
                    l3_passed = False
                    suggestions.append(f"Ungrounded claims: {'; '.join(ungrounded)}")

            try:
                grounding = await self._run_grounding(output, context)
            except EvaluationFailure as e:
                logger.error(f"Grounding verification failed: {e}")
                system_notes.append(
                    f"Grounding verification could not complete: {e}. Routed to human review."
                )
                l3_passed = False
            if grounding is not None and grounding.ungrounded_count > 0:
                if HALLUCINATION not in failure_modes:
                    failure_modes.append(HALLUCINATION)
                l3_passed = False
                suggestions.append(
                    f"Grounding score {grounding.grounding_score}: "
                    f"{grounding.ungrounded_count} claim(s) not supported by sources"
                )

        confidence = overall_confidence(context, verdict, l2.score)
        decision = decide_final(
            l1_passed=l1.passed,
            l2_score=l2.score,
            l3_triggered=l3_triggered,
            l3_blocked=l3_blocked,
            l3_passed=l3_passed,
            confidence=confidence,
            auto_send_threshold=threshold,
            min_confidence=policy.min_confidence,
            require_approval=require_approval,
        )

        if not l1.passed:
            failed = ", ".join(r.check for r in l1.failed)
            logger.info(f"L1 blocked output ({failed})")
        logger.info(
            f"Evaluated {context.action or 'output'}: decision={decision.value} "
            f"l1={l1.passed} l2={l2.score} l3_triggered={l3_triggered} l3_blocked={l3_blocked}"
        )

        return EvalResult(
            l1_passed=l1.passed,
            assertion_results=l1.results,
            l2_score=l2.score,
            l2_passed=l2.passed,
            l2_breakdown=l2.breakdown,
            l3_triggered=l3_triggered,
            l3_blocked=l3_blocked,
            l3_reason=l3_reason,
            l3_verdict=verdict,
            grounding=grounding,
            confidence=confidence,
            final_decision=decision,
            failure_modes=failure_modes,
            system_notes=system_notes,
            suggestions=suggestions,
        )

    async def _run_judge(
        self,
        output: str,
        context: EvalContext,
        system_notes: list[str],
    ) -> JudgeVerdict | None:
        if self._judge is None:
            system_notes.append("L3 review was required but no judge is configured")
            logger.warning("L3 triggered without a configured judge")
            return None

        try:
            return await asyncio.wait_for(
                self._judge.judge(output, context),
                timeout=self._policy.judge_timeout_seconds,
            )
        except TimeoutError:
            failure = EvaluationFailure(
                f"Judge timed out after {self._policy.judge_timeout_seconds}s"
            )
        except EvaluationFailure as e:
            failure = e
        except Exception as e:
            failure = EvaluationFailure(f"Judge call failed: {type(e).__name__}: {e}")

        logger.error(f"L3 evaluation failed: {failure}")
        system_notes.append(f"L3 review could not complete: {failure}. Routed to human review.")
        return None

    async def _run_grounding(
        self,
        output: str,
        context: EvalContext,
    ) -> GroundingResult | None:
        """Verify claims against the run's sources.

        Raises:
            EvaluationFailure: if verification times out or the model call fails.
        """
        if self._grounding is None or not context.sources:
            return None
        if not GroundingVerifier.applies_to(context.action):
            return None
        try:
            return await asyncio.wait_for(
                self._grounding.verify(output, context.action, context.sources),
                timeout=self._policy.judge_timeout_seconds,
            )
        except TimeoutError as e:
            raise EvaluationFailure(
                f"Grounding timed out after {self._policy.judge_timeout_seconds}s"
            ) from e
        except EvaluationFailure:
            raise
        except Exception as e:
            raise EvaluationFailure(f"Grounding call failed: {type(e).__name__}: {e}") from e

    async def evaluate_and_record(
        self,
        tracer: Tracer,
        output: str,
        rules: EvalRules | None = None,
        context: EvalContext | None = None,
    ) -> EvalResult:
        """Evaluate, then complete the run's trace with the evaluation summary."""
        result = await self.evaluate(output, rules, context)
        result.trace_id = tracer.trace_id
        await tracer.complete_trace(eval_summary=result.to_summary())
        return result
