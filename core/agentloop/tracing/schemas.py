"""Pydantic schemas for agent run traces.

Trace format:
    Trace
    ├── identity: trace_id, agent_id, conversation_id, user_id, workspace_id
    ├── steps: list[TraceStep]
    ├── llm_events: list[LLMCallEvent]
    ├── tool_events: list[ToolCallEvent]
    ├── counters: tokens in/out, cost, tool successes/failures
    ├── eval_summary: EvalSummary (attached once, by complete_trace)
    └── feedback: score, comment, edit diff (may arrive after finalization)
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


def _now() -> str:
    return datetime.now(UTC).isoformat()


class TraceStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not TraceStatus.RUNNING


class ModelTier(StrEnum):
    HAIKU = "haiku"
    SONNET = "sonnet"
    OPUS = "opus"


def tier_from_model(model: str) -> ModelTier:
    """Derive the pricing tier from a model identifier."""
    name = (model or "").lower()
    if "haiku" in name:
        return ModelTier.HAIKU
    if "opus" in name:
        return ModelTier.OPUS
    return ModelTier.SONNET


class LLMCallEvent(BaseModel):
    """A single language-model call made during a run."""

    event_id: str = Field(default_factory=lambda: uuid4().hex[:8])
    timestamp: str = Field(default_factory=_now)
    step_number: int = 0
    action: str = ""
    model: str = ""
    tier: ModelTier = ModelTier.SONNET
    tokens_in: int = 0
    tokens_out: int = 0
    cost: float = 0.0
    latency_ms: int = 0
    success: bool = True
    error: str | None = None


class ToolCallEvent(BaseModel):
    """A single tool invocation and its result.

    ``input`` and ``output`` are caller-defined and stay untyped.
    """

    event_id: str = Field(default_factory=lambda: uuid4().hex[:8])
    timestamp: str = Field(default_factory=_now)
    step_number: int = 0
    tool_name: str = ""
    input: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    success: bool = True
    error: str | None = None
    latency_ms: int = 0


class TraceStep(BaseModel):
    """One step of the agent loop."""

    step_number: int
    action: str = ""
    llm_call: LLMCallEvent | None = None
    tool_call: ToolCallEvent | None = None
    duration_ms: int = 0
    timestamp: str = Field(default_factory=_now)


class EvalSummary(BaseModel):
    """Evaluation fields copied onto the trace when it completes."""

    l1_passed: bool | None = None
    l1_failures: list[str] = Field(default_factory=list)
    l2_score: int | None = None
    l2_breakdown: dict[str, int] = Field(default_factory=dict)
    l3_triggered: bool = False
    l3_blocked: bool | None = None
    failure_modes: list[str] = Field(default_factory=list)
    final_decision: str | None = None


class Trace(BaseModel):
    """Durable record of one agent execution."""

    trace_id: str = Field(default_factory=lambda: uuid4().hex[:16])
    agent_id: str = ""
    conversation_id: str = ""
    user_id: str = ""
    workspace_id: str = ""
    status: TraceStatus = TraceStatus.RUNNING
    max_steps: int = 5

    steps: list[TraceStep] = Field(default_factory=list)
    llm_events: list[LLMCallEvent] = Field(default_factory=list)
    tool_events: list[ToolCallEvent] = Field(default_factory=list)

    total_steps: int = 0
    total_tokens_in: int = 0
    total_tokens_out: int = 0
    total_cost: float = 0.0
    tool_successes: int = 0
    tool_failures: int = 0

    started_at: str = Field(default_factory=_now)
    completed_at: str | None = None
    latency_ms: int | None = None
    error: str | None = None

    eval_summary: EvalSummary | None = None

    feedback_score: int | None = None
    feedback_comment: str | None = None
    user_edited: bool = False
    edit_diff: str | None = None

    user_messages: list[str] = Field(
        default_factory=list,
        description="User turns of the conversation, used for complaint analysis",
    )
    extra: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_finalized(self) -> bool:
        return self.status.is_terminal

    @property
    def total_tokens(self) -> int:
        return self.total_tokens_in + self.total_tokens_out

    def started_datetime(self) -> datetime:
        return datetime.fromisoformat(self.started_at)
