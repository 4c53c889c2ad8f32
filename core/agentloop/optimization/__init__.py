"""Self-optimization loop.

- ConversationEvaluator: scores finished conversations for the analyzer
- PerformanceAnalyzer: aggregates traces and evaluations per agent
- ModificationProposer: turns an analysis into pending proposals
- ProposalManager: pending -> approved -> applied (or rejected)
- ABTestManager: current config vs. candidate, promoted on a clear winner
- FeedbackCollector / SentimentAnalyzer: user signals mirrored onto traces
- InsightsEngine: per-run cost, latency, tool and rating anomalies
- BatchOptimizer: analyze + propose for many agents at once
"""

from agentloop.optimization.ab_testing import ABTestManager
from agentloop.optimization.analyzer import PerformanceAnalyzer, is_performing_well
from agentloop.optimization.batch import BatchFailure, BatchOptimizer, BatchReport
from agentloop.optimization.conversation import ConversationEvaluator, GoalCompletion
from agentloop.optimization.feedback import FeedbackCollector, SentimentAnalyzer, compute_edit_diff
from agentloop.optimization.insights import InsightsEngine, detect_anomalies
from agentloop.optimization.lifecycle import APPLY_HANDLERS, ProposalManager, apply_proposal
from agentloop.optimization.proposer import ModificationProposer
from agentloop.optimization.repository import (
    ABTestRepository,
    AgentRepository,
    EvaluationRepository,
    FeedbackRepository,
    InMemoryABTestRepository,
    InMemoryAgentRepository,
    InMemoryEvaluationRepository,
    InMemoryFeedbackRepository,
    InMemoryProposalRepository,
    ProposalRepository,
)
from agentloop.optimization.schemas import (
    ABTest,
    ABTestStatus,
    AgentConfig,
    Anomaly,
    AnomalySeverity,
    AnomalyType,
    ConversationEvaluation,
    FeedbackRecord,
    FeedbackStats,
    FeedbackType,
    KnowledgeSettings,
    ModificationProposal,
    PerformanceAnalysis,
    ProposalStatus,
    ProposalType,
    SelfModificationResult,
    Sentiment,
    SentimentResult,
    ToolUsageStats,
    Variant,
)

__all__ = [
    "APPLY_HANDLERS",
    "ABTest",
    "ABTestManager",
    "ABTestRepository",
    "ABTestStatus",
    "AgentConfig",
    "AgentRepository",
    "Anomaly",
    "AnomalySeverity",
    "AnomalyType",
    "BatchFailure",
    "BatchOptimizer",
    "BatchReport",
    "ConversationEvaluation",
    "ConversationEvaluator",
    "EvaluationRepository",
    "FeedbackCollector",
    "FeedbackRecord",
    "FeedbackRepository",
    "FeedbackStats",
    "FeedbackType",
    "GoalCompletion",
    "InMemoryABTestRepository",
    "InMemoryAgentRepository",
    "InMemoryEvaluationRepository",
    "InMemoryFeedbackRepository",
    "InMemoryProposalRepository",
    "InsightsEngine",
    "KnowledgeSettings",
    "ModificationProposal",
    "ModificationProposer",
    "PerformanceAnalysis",
    "PerformanceAnalyzer",
    "ProposalManager",
    "ProposalRepository",
    "ProposalStatus",
    "ProposalType",
    "SelfModificationResult",
    "Sentiment",
    "SentimentAnalyzer",
    "ToolUsageStats",
    "Variant",
    "apply_proposal",
    "compute_edit_diff",
    "detect_anomalies",
    "is_performing_well",
]
