"""Human approval queue for outputs the evaluator routed to review."""

from agentloop.approvals.gateway import (
    ActionExecutor,
    ApprovalDecision,
    ApprovalGateway,
    ApprovalRepository,
    DecisionType,
    InMemoryApprovalRepository,
    PendingApproval,
    WebhookActionExecutor,
)

__all__ = [
    "ActionExecutor",
    "ApprovalDecision",
    "ApprovalGateway",
    "ApprovalRepository",
    "DecisionType",
    "InMemoryApprovalRepository",
    "PendingApproval",
    "WebhookActionExecutor",
]
