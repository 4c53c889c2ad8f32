"""Evaluation gate data models.

EvalResult
├── L1: l1_passed + assertion_results (every check, including warnings)
├── L2: l2_score + breakdown (one CriterionScore per criterion)
├── L3: l3_triggered / l3_blocked / l3_reason + verdict (claims, confidence)
├── final_decision: auto_send | needs_review | blocked
└── user action: filled in later by the approval gateway
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from agentloop.tracing.schemas import EvalSummary


class Severity(StrEnum):
    BLOCK = "block"
    WARN = "warn"
    INFO = "info"


class Decision(StrEnum):
    AUTO_SEND = "auto_send"
    NEEDS_REVIEW = "needs_review"
    BLOCKED = "blocked"


class Verdict(StrEnum):
    PASS = "pass"
    FAIL = "fail"
    RETRY = "retry"


class UserAction(StrEnum):
    APPROVED = "approved"
    EDITED = "edited"
    REJECTED = "rejected"


class ClaimType(StrEnum):
    FACTUAL = "factual"
    TEMPORAL = "temporal"
    QUANTITATIVE = "quantitative"
    RELATIONAL = "relational"


class Tone(StrEnum):
    PROFESSIONAL = "professional"
    FRIENDLY = "friendly"
    CASUAL = "casual"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


class Assertion(BaseModel):
    """A configured L1 check. ``severity`` overrides the check's default."""

    check: str
    severity: Severity = Severity.BLOCK
    params: dict[str, Any] = Field(default_factory=dict)


class GroundingSource(BaseModel):
    """Source material a draft's claims can be verified against."""

    type: str = Field(description="action_args | conversation_history | tool_result")
    label: str
    content: str


class EvalRules(BaseModel):
    """Per-agent evaluation rules."""

    assertions: list[Assertion] = Field(default_factory=list)
    l2_weights: dict[str, float] | None = Field(
        default=None,
        description="Overrides the policy weights; criteria missing here are not scored",
    )
    l2_min_score: int | None = None
    auto_send_threshold: int | None = None
    require_approval: bool | None = None


class EvalContext(BaseModel):
    """What the evaluator knows about the run that produced the output."""

    action: str = ""
    recipient_name: str | None = None
    query: str | None = None
    expected_tone: Tone = Tone.PROFESSIONAL
    required_elements: list[str] = Field(default_factory=list)
    confidence: float | None = Field(
        default=None,
        description="Runtime-reported confidence in the output, 0..1",
    )
    sources: list[GroundingSource] = Field(default_factory=list)
    extra: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Tier results
# ---------------------------------------------------------------------------


class AssertionResult(BaseModel):
    check: str
    passed: bool
    severity: Severity
    message: str | None = None


class L1Result(BaseModel):
    passed: bool
    results: list[AssertionResult] = Field(default_factory=list)

    @property
    def failed(self) -> list[AssertionResult]:
        return [r for r in self.results if not r.passed and r.severity == Severity.BLOCK]

    @property
    def warnings(self) -> list[AssertionResult]:
        return [r for r in self.results if not r.passed and r.severity != Severity.BLOCK]


class CriterionScore(BaseModel):
    criterion: str
    score: int = Field(ge=0, le=100)
    weight: float = 0.0
    issues: list[str] = Field(default_factory=list)


class L2Result(BaseModel):
    score: int
    passed: bool
    breakdown: list[CriterionScore] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class Claim(BaseModel):
    text: str
    type: ClaimType = ClaimType.FACTUAL
    grounded: bool = False
    evidence: str | None = None


class JudgeVerdict(BaseModel):
    verdict: Verdict
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str = ""
    claims: list[Claim] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    score: int | None = None


class GroundingResult(BaseModel):
    claims: list[Claim] = Field(default_factory=list)
    grounded_count: int = 0
    ungrounded_count: int = 0
    unknown_count: int = 0
    grounding_score: int = 100


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


class EvalResult(BaseModel):
    """The gate's verdict for one run."""

    eval_id: str = Field(default_factory=lambda: uuid4().hex[:12])
    trace_id: str | None = None

    l1_passed: bool
    assertion_results: list[AssertionResult] = Field(default_factory=list)

    l2_score: int
    l2_passed: bool = False
    l2_breakdown: list[CriterionScore] = Field(default_factory=list)

    l3_triggered: bool = False
    l3_blocked: bool = False
    l3_reason: str | None = None
    l3_verdict: JudgeVerdict | None = None
    grounding: GroundingResult | None = None

    confidence: float | None = None
    final_decision: Decision

    failure_modes: list[str] = Field(default_factory=list)
    system_notes: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    evaluated_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    user_action: UserAction | None = None
    edited_output: str | None = None
    actioned_at: str | None = None
    actioned_by: str | None = None

    @property
    def is_actioned(self) -> bool:
        return self.user_action is not None

    def to_summary(self) -> EvalSummary:
        return EvalSummary(
            l1_passed=self.l1_passed,
            l1_failures=[
                r.check
                for r in self.assertion_results
                if not r.passed and r.severity == Severity.BLOCK
            ],
            l2_score=self.l2_score,
            l2_breakdown={c.criterion: c.score for c in self.l2_breakdown},
            l3_triggered=self.l3_triggered,
            l3_blocked=self.l3_blocked if self.l3_triggered else None,
            failure_modes=list(self.failure_modes),
            final_decision=self.final_decision.value,
        )
