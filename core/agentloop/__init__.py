"""
agentloop - evaluation, tracing and self-optimization for deployed LLM agents.

Each agent run is traced, passed through the L1/L2/L3 evaluation gate, and
either sent, queued for human approval or blocked. Traces, evaluations and
user feedback then drive performance analysis, human-approved configuration
proposals and A/B tests.

Packages:
- tracing: per-run Tracer and TraceRepository
- evaluation: assertions, scoring, model-as-judge and the final decision
- approvals: human review queue and action execution
- optimization: analysis, proposals, lifecycle, A/B tests, feedback, insights
- swarm: batched fan-out of one agent configuration over many inputs
"""

from agentloop.config import (
    ABTestPolicy,
    EvaluationPolicy,
    LLMSettings,
    OptimizationPolicy,
    PipelineConfig,
    SwarmPolicy,
)
from agentloop.errors import AgentLoopError

__version__ = "0.1.0"

__all__ = [
    "ABTestPolicy",
    "AgentLoopError",
    "EvaluationPolicy",
    "LLMSettings",
    "OptimizationPolicy",
    "PipelineConfig",
    "SwarmPolicy",
]
