"""Proposal Lifecycle Manager.

    pending ──approve──► approved ──apply──► applied
       │
       └──reject──► rejected

Applying dispatches through APPLY_HANDLERS, one pure handler per
ProposalType that returns the new AgentConfig. The table is checked for
completeness at import time.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from agentloop.config import OptimizationPolicy
from agentloop.errors import (
    InvalidProposalTransition,
    NotFoundError,
    ProposalApplicationFailure,
    UnknownProposalType,
)
from agentloop.optimization.repository import AgentRepository, ProposalRepository
from agentloop.optimization.schemas import (
    AgentConfig,
    KnowledgeSettings,
    ModificationProposal,
    ProposalStatus,
    ProposalType,
)

logger = logging.getLogger(__name__)

ApplyHandler = Callable[[AgentConfig, ModificationProposal, OptimizationPolicy], AgentConfig]


def _split_tools(value: str) -> list[str]:
    return [tool.strip() for tool in value.split(",") if tool.strip()]


# ---------------------------------------------------------------------------
# Apply handlers
# ---------------------------------------------------------------------------


def apply_prompt(
    agent: AgentConfig, proposal: ModificationProposal, policy: OptimizationPolicy
) -> AgentConfig:
    return agent.model_copy(update={"system_prompt": proposal.proposed})


def apply_model(
    agent: AgentConfig, proposal: ModificationProposal, policy: OptimizationPolicy
) -> AgentConfig:
    if not proposal.proposed:
        raise ValueError("Model proposal has no target model")
    return agent.model_copy(update={"model": proposal.proposed})


def apply_temperature(
    agent: AgentConfig, proposal: ModificationProposal, policy: OptimizationPolicy
) -> AgentConfig:
    temperature = float(proposal.proposed)
    if not 0.0 <= temperature <= 2.0:
        raise ValueError(f"Temperature out of range: {temperature}")
    return agent.model_copy(update={"temperature": temperature})


def apply_add_tool(
    agent: AgentConfig, proposal: ModificationProposal, policy: OptimizationPolicy
) -> AgentConfig:
    tools = list(agent.tools)
    for tool in _split_tools(proposal.proposed):
        if tool not in tools:
            tools.append(tool)
    return agent.model_copy(update={"tools": tools})


def apply_remove_tool(
    agent: AgentConfig, proposal: ModificationProposal, policy: OptimizationPolicy
) -> AgentConfig:
    """The proposal carries the full list of tools to keep."""
    return agent.model_copy(update={"tools": _split_tools(proposal.proposed)})


def apply_rag(
    agent: AgentConfig, proposal: ModificationProposal, policy: OptimizationPolicy
) -> AgentConfig:
    if agent.knowledge is None:
        knowledge = KnowledgeSettings(
            enabled=True,
            similarity_threshold=policy.rag_similarity_threshold,
            max_results=policy.rag_max_results,
        )
    else:
        knowledge = agent.knowledge.model_copy(
            update={"enabled": True, "similarity_threshold": policy.rag_similarity_threshold}
        )
    return agent.model_copy(update={"knowledge": knowledge})


APPLY_HANDLERS: dict[ProposalType, ApplyHandler] = {
    ProposalType.PROMPT_REFINEMENT: apply_prompt,
    ProposalType.MODEL_DOWNGRADE: apply_model,
    ProposalType.MODEL_UPGRADE: apply_model,
    ProposalType.ADJUST_TEMPERATURE: apply_temperature,
    ProposalType.ADD_TOOL: apply_add_tool,
    ProposalType.REMOVE_TOOL: apply_remove_tool,
    ProposalType.ADD_RAG: apply_rag,
}

_missing = set(ProposalType) - set(APPLY_HANDLERS)
if _missing:
    raise ImportError(f"No apply handler for proposal types: {sorted(_missing)}")


def apply_proposal(
    agent: AgentConfig,
    proposal: ModificationProposal,
    policy: OptimizationPolicy | None = None,
    handlers: dict[ProposalType, ApplyHandler] | None = None,
) -> AgentConfig:
    """Return ``agent`` with ``proposal`` applied. Does not persist anything."""
    handler = (handlers or APPLY_HANDLERS).get(proposal.type)
    if handler is None:
        raise UnknownProposalType(str(proposal.type))
    updated = handler(agent, proposal, policy or OptimizationPolicy())
    updated.updated_at = datetime.now(UTC).isoformat()
    return updated


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class ProposalManager:
    """Approves, rejects and applies modification proposals."""

    def __init__(
        self,
        proposals: ProposalRepository,
        agents: AgentRepository,
        policy: OptimizationPolicy | None = None,
        handlers: dict[ProposalType, ApplyHandler] | None = None,
    ) -> None:
        self._proposals = proposals
        self._agents = agents
        self._policy = policy or OptimizationPolicy()
        self._handlers = handlers if handlers is not None else APPLY_HANDLERS

    def get(self, proposal_id: str) -> ModificationProposal:
        proposal = self._proposals.get(proposal_id)
        if proposal is None:
            raise NotFoundError("Proposal", proposal_id)
        return proposal

    def _transition(
        self,
        proposal_id: str,
        expected: set[ProposalStatus],
        target: ProposalStatus,
        **changes,
    ) -> ModificationProposal:
        updated = self._proposals.transition(proposal_id, expected, target, **changes)
        if updated is None:
            current = self.get(proposal_id)
            raise InvalidProposalTransition(proposal_id, current.status.value, target.value)
        return updated

    def approve(self, proposal_id: str, reviewer: str) -> ModificationProposal:
        proposal = self._transition(
            proposal_id,
            {ProposalStatus.PENDING},
            ProposalStatus.APPROVED,
            reviewed_by=reviewer,
            reviewed_at=datetime.now(UTC).isoformat(),
        )
        logger.info(f"Proposal {proposal_id} approved by {reviewer}")
        return proposal

    def reject(self, proposal_id: str, reviewer: str) -> ModificationProposal:
        proposal = self._transition(
            proposal_id,
            {ProposalStatus.PENDING},
            ProposalStatus.REJECTED,
            reviewed_by=reviewer,
            reviewed_at=datetime.now(UTC).isoformat(),
        )
        logger.info(f"Proposal {proposal_id} rejected by {reviewer}")
        return proposal

    def apply(self, proposal_id: str) -> AgentConfig:
        """Apply an approved proposal to its agent.

        Raises:
            InvalidProposalTransition: if the proposal is not approved.
            UnknownProposalType: if no handler is registered for its type.
            ProposalApplicationFailure: if the change cannot be computed or
                saved. The proposal stays approved with ``last_error`` set.
        """
        proposal = self.get(proposal_id)
        if proposal.status != ProposalStatus.APPROVED:
            raise InvalidProposalTransition(
                proposal_id, proposal.status.value, ProposalStatus.APPLIED.value
            )
        if proposal.type not in self._handlers:
            raise UnknownProposalType(str(proposal.type))

        agent = self._agents.get(proposal.agent_id)
        if agent is None:
            error = NotFoundError("Agent", proposal.agent_id)
            self._proposals.set_error(proposal_id, str(error))
            raise ProposalApplicationFailure(proposal_id, error)

        logger.info(f"Applying {proposal.type.value} proposal {proposal_id}")
        try:
            updated = apply_proposal(agent, proposal, self._policy, self._handlers)
            self._agents.save(updated)
        except Exception as e:
            logger.exception(f"Failed to apply proposal {proposal_id}")
            self._proposals.set_error(proposal_id, f"{type(e).__name__}: {e}")
            raise ProposalApplicationFailure(proposal_id, e) from e

        self._transition(
            proposal_id,
            {ProposalStatus.APPROVED},
            ProposalStatus.APPLIED,
            applied_at=datetime.now(UTC).isoformat(),
            last_error=None,
        )
        logger.info(f"Proposal {proposal_id} applied to agent {proposal.agent_id}")
        return updated

    def approve_and_apply(self, proposal_id: str, reviewer: str) -> AgentConfig:
        self.approve(proposal_id, reviewer)
        return self.apply(proposal_id)

    def mark_applied(self, proposal_id: str) -> ModificationProposal:
        """Record that an approved proposal reached the agent through an A/B rollout."""
        return self._transition(
            proposal_id,
            {ProposalStatus.APPROVED},
            ProposalStatus.APPLIED,
            applied_at=datetime.now(UTC).isoformat(),
        )

    def list_recent(
        self,
        agent_id: str,
        status: ProposalStatus | None = None,
        limit: int = 20,
    ) -> list[ModificationProposal]:
        return self._proposals.list_for_agent(agent_id, status=status, limit=limit)
