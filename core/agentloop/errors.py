"""Error taxonomy for the evaluation, tracing and optimization pipeline.

Propagation rules:
- TracingFailure is absorbed by the Tracer and only ever logged.
- EvaluationFailure from the judge is converted to a needs_review decision;
  configuration errors (unknown assertion checks) propagate.
- ProposalApplicationFailure, UnknownProposalType and InsufficientSampleError
  propagate to the caller so a human or a retry policy can act.
"""

from __future__ import annotations


class AgentLoopError(Exception):
    """Base class for all pipeline errors."""


class NotFoundError(AgentLoopError):
    """A requested record does not exist in its repository."""

    def __init__(self, kind: str, record_id: str) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id} not found")


class TracingFailure(AgentLoopError):
    """A trace write failed. Never surfaced to the run's caller."""

    def __init__(self, operation: str, trace_id: str, cause: Exception | None = None) -> None:
        self.operation = operation
        self.trace_id = trace_id
        self.cause = cause
        super().__init__(f"{operation} failed for trace {trace_id}: {cause}")


class RunTimeout(AgentLoopError):
    """A run exceeded its wall-clock or step budget and was finalized as timeout."""

    def __init__(self, trace_id: str, budget: float | int, unit: str = "seconds") -> None:
        self.trace_id = trace_id
        self.budget = budget
        super().__init__(f"Run for trace {trace_id} exceeded its budget of {budget} {unit}")


class EvaluationFailure(AgentLoopError):
    """The evaluation gate could not complete (judge error, bad configuration)."""


class ApprovalError(AgentLoopError):
    """An approval decision could not be applied to a run."""


class InvalidProposalTransition(AgentLoopError):
    """A proposal state change that the lifecycle does not allow."""

    def __init__(self, proposal_id: str, current: str, target: str) -> None:
        self.proposal_id = proposal_id
        self.current = current
        self.target = target
        super().__init__(f"Proposal {proposal_id} cannot move from {current} to {target}")


class ProposalApplicationFailure(AgentLoopError):
    """Mutating the agent configuration failed after approval.

    The proposal stays approved and the application can be retried.
    """

    def __init__(self, proposal_id: str, cause: Exception | None = None) -> None:
        self.proposal_id = proposal_id
        self.cause = cause
        super().__init__(f"Failed to apply proposal {proposal_id}: {cause}")


class UnknownProposalType(AgentLoopError):
    """No apply handler is registered for a proposal type."""

    def __init__(self, proposal_type: str) -> None:
        self.proposal_type = proposal_type
        super().__init__(f"No apply handler registered for proposal type '{proposal_type}'")


class ABTestStateError(AgentLoopError):
    """An A/B test operation that is illegal in the test's current state."""


class InsufficientSampleError(ABTestStateError):
    """Winner selection was requested before both variants reached the minimum sample."""

    def __init__(self, test_id: str, samples_a: int, samples_b: int, minimum: int) -> None:
        self.test_id = test_id
        self.samples_a = samples_a
        self.samples_b = samples_b
        self.minimum = minimum
        super().__init__(
            f"A/B test {test_id} needs {minimum} samples per variant "
            f"(A={samples_a}, B={samples_b})"
        )


class SwarmStateError(AgentLoopError):
    """A swarm operation that is illegal in the swarm's current status."""
