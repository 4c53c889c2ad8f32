"""Self-optimization data models.

Covers the agent configuration being optimized, the performance analysis
computed from traces and evaluations, typed modification proposals, A/B
tests, user feedback and trace anomalies.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from agentloop.tracing.schemas import ModelTier, tier_from_model


def _now() -> str:
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ProposalType(StrEnum):
    """Closed set of configuration changes the optimizer may propose."""

    PROMPT_REFINEMENT = "prompt_refinement"
    MODEL_DOWNGRADE = "model_downgrade"
    MODEL_UPGRADE = "model_upgrade"
    ADD_TOOL = "add_tool"
    REMOVE_TOOL = "remove_tool"
    ADD_RAG = "add_rag"
    ADJUST_TEMPERATURE = "adjust_temperature"


class ProposalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"


class ABTestStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Variant(StrEnum):
    A = "A"
    B = "B"


class FeedbackType(StrEnum):
    THUMBS_UP = "thumbs_up"
    THUMBS_DOWN = "thumbs_down"
    USER_EDIT = "user_edit"
    APPROVAL_REJECT = "approval_reject"
    EXPLICIT_CORRECTION = "explicit_correction"
    RETRY_REQUEST = "retry_request"


class Sentiment(StrEnum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class AnomalyType(StrEnum):
    HIGH_COST = "high_cost"
    HIGH_LATENCY = "high_latency"
    TOOL_FAILURES = "tool_failures"
    LOW_SATISFACTION = "low_satisfaction"


class AnomalySeverity(StrEnum):
    MEDIUM = "medium"
    HIGH = "high"


# ---------------------------------------------------------------------------
# Agent configuration
# ---------------------------------------------------------------------------


class KnowledgeSettings(BaseModel):
    """Retrieval settings attached to an agent."""

    enabled: bool = False
    similarity_threshold: float = 0.7
    max_results: int = 5


class AgentConfig(BaseModel):
    """The mutable configuration of one agent."""

    agent_id: str
    name: str = ""
    system_prompt: str = ""
    model: str = "claude-3-5-sonnet-20241022"
    temperature: float = 0.7
    tools: list[str] = Field(default_factory=list)
    knowledge: KnowledgeSettings | None = None
    updated_at: str = Field(default_factory=_now)
    extra: dict[str, Any] = Field(default_factory=dict)

    @property
    def model_tier(self) -> ModelTier:
        return tier_from_model(self.model)


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


class ConversationEvaluation(BaseModel):
    """Post-conversation satisfaction score and the failure modes observed."""

    evaluation_id: str = Field(default_factory=lambda: uuid4().hex[:12])
    agent_id: str
    conversation_id: str = ""
    trace_id: str | None = None
    goal_completed: bool = False
    goal_completion_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    user_satisfaction_score: float = Field(ge=1, le=5)
    categories: list[str] = Field(default_factory=list)
    failure_modes: list[str] = Field(default_factory=list)
    improvement_suggestions: list[str] = Field(default_factory=list)
    total_steps: int = 0
    total_cost: float = 0.0
    evaluated_at: str = Field(default_factory=_now)


class ToolUsageStats(BaseModel):
    tool_name: str
    usage_count: int = 0
    usage_rate: float = Field(default=0.0, description="Share of all tool calls, 0..1")
    success_rate: float = 0.0
    avg_latency_ms: float = 0.0


class PerformanceAnalysis(BaseModel):
    """Aggregated view of one agent over the analysis window."""

    agent_id: str
    window_days: int = 30
    total_runs: int = 0
    completion_rate: float = 0.0
    avg_satisfaction: float = 3.0
    avg_cost: float = 0.0
    avg_latency_ms: float = 0.0
    common_failures: list[str] = Field(
        default_factory=list,
        description="Failure modes seen in at least the configured share of evaluations",
    )
    tool_usage: list[ToolUsageStats] = Field(default_factory=list)
    top_complaints: list[str] = Field(default_factory=list)
    hallucination_rate: float = 0.0
    analyzed_at: str = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------


class ModificationProposal(BaseModel):
    """A human-approvable change to an agent's configuration.

    ``current`` and ``proposed`` hold the textual value being replaced and
    its replacement: a prompt, a model name, a temperature, or a
    comma-separated tool list.
    """

    proposal_id: str = Field(default_factory=lambda: f"prop-{uuid4().hex[:8]}")
    agent_id: str
    type: ProposalType
    current: str = ""
    proposed: str = ""
    rationale: str = ""
    impact: str = ""
    estimated_savings: float | None = None
    requires_approval: bool = True

    status: ProposalStatus = ProposalStatus.PENDING
    created_at: str = Field(default_factory=_now)
    reviewed_at: str | None = None
    reviewed_by: str | None = None
    applied_at: str | None = None
    last_error: str | None = None


class SelfModificationResult(BaseModel):
    agent_id: str
    analysis: PerformanceAnalysis
    proposals: list[ModificationProposal] = Field(default_factory=list)
    recommendation: str = ""


# ---------------------------------------------------------------------------
# A/B testing
# ---------------------------------------------------------------------------


class ABTest(BaseModel):
    """Traffic-split experiment between the live config (A) and a candidate (B)."""

    test_id: str = Field(default_factory=lambda: f"ab-{uuid4().hex[:8]}")
    agent_id: str
    proposal_id: str | None = None
    variant_a: AgentConfig
    variant_b: AgentConfig
    traffic_split: float = Field(default=0.5, ge=0.0, le=1.0, description="Share routed to B")

    samples_a: int = 0
    samples_b: int = 0
    score_a: float | None = None
    score_b: float | None = None

    status: ABTestStatus = ABTestStatus.RUNNING
    winning_variant: Variant | None = None
    started_at: str = Field(default_factory=_now)
    ended_at: str | None = None

    @property
    def is_running(self) -> bool:
        return self.status == ABTestStatus.RUNNING

    def samples(self, variant: Variant) -> int:
        return self.samples_a if variant == Variant.A else self.samples_b

    def config_for(self, variant: Variant) -> AgentConfig:
        return self.variant_a if variant == Variant.A else self.variant_b


# ---------------------------------------------------------------------------
# Feedback and insights
# ---------------------------------------------------------------------------


class FeedbackRecord(BaseModel):
    feedback_id: str = Field(default_factory=lambda: uuid4().hex[:12])
    trace_id: str
    conversation_id: str = ""
    user_id: str = ""
    agent_id: str
    type: FeedbackType
    original_output: str = ""
    user_edit: str | None = None
    correction_text: str | None = None
    step_number: int = 0
    timestamp: str = Field(default_factory=_now)
    extra: dict[str, Any] = Field(default_factory=dict)


class FeedbackStats(BaseModel):
    total: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    positive_rate: float = 0.0
    negative_rate: float = 0.0
    edit_rate: float = 0.0


class SentimentResult(BaseModel):
    sentiment: Sentiment = Sentiment.NEUTRAL
    score: float = Field(default=0.0, ge=-1.0, le=1.0)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class Anomaly(BaseModel):
    type: AnomalyType
    trace_id: str
    value: float
    expected: float
    severity: AnomalySeverity
    description: str
