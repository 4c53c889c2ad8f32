"""Execution Tracing Module.

Best-effort, append-only recording of agent runs:

- Tracer: per-run recorder whose operations never raise into the run
- TraceRepository: injected storage interface (in-memory and JSON file stores)
- Trace: the durable record of one run, with its LLM and tool events

Recording is diagnostic, not transactional: a storage failure is logged as a
TracingFailure outcome and the run continues.
"""

from agentloop.tracing.repository import (
    InMemoryTraceRepository,
    JsonFileTraceRepository,
    TraceRepository,
)
from agentloop.tracing.schemas import (
    EvalSummary,
    LLMCallEvent,
    ModelTier,
    ToolCallEvent,
    Trace,
    TraceStatus,
    TraceStep,
    tier_from_model,
)
from agentloop.tracing.tracer import RunCallbacks, StepEvent, ToolCall, TraceOutcome, Tracer

__all__ = [
    "EvalSummary",
    "InMemoryTraceRepository",
    "JsonFileTraceRepository",
    "LLMCallEvent",
    "ModelTier",
    "RunCallbacks",
    "StepEvent",
    "ToolCall",
    "ToolCallEvent",
    "Trace",
    "TraceOutcome",
    "TraceRepository",
    "TraceStatus",
    "TraceStep",
    "Tracer",
    "tier_from_model",
]
