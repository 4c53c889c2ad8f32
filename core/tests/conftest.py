"""
Shared fixtures for cross-module pipeline tests.

Every fixture wires in-memory repositories, so a test can run a full
trace -> evaluate -> review -> analyze -> propose loop without I/O.
"""

from unittest.mock import AsyncMock

import pytest

from agentloop.approvals import ApprovalGateway, InMemoryApprovalRepository
from agentloop.llm import LLMResponse
from agentloop.optimization import (
    AgentConfig,
    FeedbackCollector,
    InMemoryAgentRepository,
    InMemoryEvaluationRepository,
    InMemoryFeedbackRepository,
    InMemoryProposalRepository,
    ModificationProposer,
    PerformanceAnalyzer,
    ProposalManager,
)
from agentloop.tracing import InMemoryTraceRepository


@pytest.fixture
def trace_repo() -> InMemoryTraceRepository:
    return InMemoryTraceRepository()


@pytest.fixture
def agent_repo() -> InMemoryAgentRepository:
    return InMemoryAgentRepository(
        [
            AgentConfig(
                agent_id="sdr",
                name="SDR",
                system_prompt="You write outbound sales emails.",
                tools=["search", "send_email"],
            )
        ]
    )


@pytest.fixture
def evaluation_repo() -> InMemoryEvaluationRepository:
    return InMemoryEvaluationRepository()


@pytest.fixture
def proposal_repo() -> InMemoryProposalRepository:
    return InMemoryProposalRepository()


@pytest.fixture
def feedback(trace_repo) -> FeedbackCollector:
    return FeedbackCollector(InMemoryFeedbackRepository(), trace_repo)


@pytest.fixture
def executor() -> AsyncMock:
    executor = AsyncMock()
    executor.execute.return_value = True
    return executor


@pytest.fixture
def gateway(executor, feedback) -> ApprovalGateway:
    return ApprovalGateway(InMemoryApprovalRepository(), executor=executor, feedback=feedback)


@pytest.fixture
def rewrite_llm() -> AsyncMock:
    llm = AsyncMock()
    llm.acomplete.return_value = LLMResponse(
        content="You write short, specific outbound sales emails under 120 words."
    )
    return llm


@pytest.fixture
def proposer(rewrite_llm, trace_repo, evaluation_repo, agent_repo, proposal_repo):
    analyzer = PerformanceAnalyzer(trace_repo, evaluation_repo)
    return ModificationProposer(
        rewrite_llm, analyzer=analyzer, agents=agent_repo, proposals=proposal_repo
    )


@pytest.fixture
def proposal_manager(proposal_repo, agent_repo) -> ProposalManager:
    return ProposalManager(proposal_repo, agent_repo)
