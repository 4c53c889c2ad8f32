"""Evaluation gate.

Every agent output passes through three tiers before it may act:

- L1 assertions: deterministic checks; any block-severity failure blocks
- L2 scoring: weighted rule-based criteria, 0..100
- L3 judge: model review, only when the configured trigger fires

decide_final() turns the tier results into auto_send, needs_review or blocked.
"""

from agentloop.evaluation.assertions import CHECKS, evaluate_assertions, run_assertion
from agentloop.evaluation.evaluator import Evaluator, decide_final, overall_confidence
from agentloop.evaluation.grounding import GroundingVerifier, summarize_grounding
from agentloop.evaluation.judge import Judge, LLMJudge, parse_verdict, should_trigger
from agentloop.evaluation.schemas import (
    Assertion,
    AssertionResult,
    Claim,
    ClaimType,
    CriterionScore,
    Decision,
    EvalContext,
    EvalResult,
    EvalRules,
    GroundingResult,
    GroundingSource,
    JudgeVerdict,
    L1Result,
    L2Result,
    Severity,
    Tone,
    UserAction,
    Verdict,
)
from agentloop.evaluation.scoring import CRITERIA, aggregate, score_output

__all__ = [
    "CHECKS",
    "CRITERIA",
    "Assertion",
    "AssertionResult",
    "Claim",
    "ClaimType",
    "CriterionScore",
    "Decision",
    "EvalContext",
    "EvalResult",
    "EvalRules",
    "Evaluator",
    "GroundingResult",
    "GroundingSource",
    "GroundingVerifier",
    "Judge",
    "JudgeVerdict",
    "L1Result",
    "L2Result",
    "LLMJudge",
    "Severity",
    "Tone",
    "UserAction",
    "Verdict",
    "aggregate",
    "decide_final",
    "evaluate_assertions",
    "overall_confidence",
    "parse_verdict",
    "run_assertion",
    "score_output",
    "should_trigger",
    "summarize_grounding",
]
