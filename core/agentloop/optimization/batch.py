"""Out-of-band optimization across many agents."""

from __future__ import annotations

import asyncio
import logging

from pydantic import BaseModel, Field

from agentloop.optimization.proposer import ModificationProposer
from agentloop.optimization.repository import AgentRepository
from agentloop.optimization.schemas import SelfModificationResult

logger = logging.getLogger(__name__)


class BatchFailure(BaseModel):
    agent_id: str
    error: str


class BatchReport(BaseModel):
    results: list[SelfModificationResult] = Field(default_factory=list)
    failures: list[BatchFailure] = Field(default_factory=list)

    @property
    def total_proposals(self) -> int:
        return sum(len(r.proposals) for r in self.results)


class BatchOptimizer:
    """Runs analyze + propose for many agents concurrently.

    A failure for one agent is recorded in the report and never cancels the
    others. ``max_concurrency`` bounds how many agents are processed at once.
    """

    def __init__(
        self,
        proposer: ModificationProposer,
        agents: AgentRepository,
        max_concurrency: int = 5,
    ) -> None:
        self._proposer = proposer
        self._agents = agents
        self._semaphore = asyncio.Semaphore(max_concurrency)

    async def _optimize_one(self, agent_id: str) -> SelfModificationResult:
        async with self._semaphore:
            return await self._proposer.propose_for_agent(agent_id)

    async def run(self, agent_ids: list[str] | None = None) -> BatchReport:
        if agent_ids is None:
            agent_ids = self._agents.list_ids()

        logger.info(f"Running batch optimization for {len(agent_ids)} agents")
        outcomes = await asyncio.gather(
            *(self._optimize_one(agent_id) for agent_id in agent_ids),
            return_exceptions=True,
        )

        report = BatchReport()
        for agent_id, outcome in zip(agent_ids, outcomes, strict=True):
            if isinstance(outcome, Exception):
                logger.error(f"Batch optimization failed for agent {agent_id}: {outcome}")
                report.failures.append(BatchFailure(agent_id=agent_id, error=str(outcome)))
            else:
                report.results.append(outcome)

        logger.info(
            f"Batch optimization finished: {len(report.results)} analyzed, "
            f"{len(report.failures)} failed, {report.total_proposals} proposals"
        )
        return report
