"""A/B Test Manager.

Runs the live agent configuration (A) against a candidate (B):

1. start_test() snapshots the agent as A; one running test per agent
2. select_variant() routes each run, B with probability ``traffic_split``
3. record_result() adds a score to the variant's running average
4. once both variants have ``min_sample_size`` samples and their averages
   differ by ``min_score_difference`` points, the better one wins
5. a B win writes B's configuration to the agent (100% traffic) and marks
   the linked proposal applied; while that proposal is not yet approved the
   test keeps running and B cannot be selected

Completed and cancelled tests are terminal.
"""

from __future__ import annotations

import logging
import random
from datetime import UTC, datetime

from agentloop.config import ABTestPolicy
from agentloop.errors import (
    ABTestStateError,
    InsufficientSampleError,
    InvalidProposalTransition,
    NotFoundError,
)
from agentloop.optimization.lifecycle import ProposalManager, apply_proposal
from agentloop.optimization.repository import ABTestRepository, AgentRepository
from agentloop.optimization.schemas import (
    ABTest,
    ABTestStatus,
    AgentConfig,
    ProposalStatus,
    Variant,
)

logger = logging.getLogger(__name__)


class ABTestManager:
    def __init__(
        self,
        tests: ABTestRepository,
        agents: AgentRepository,
        proposals: ProposalManager | None = None,
        policy: ABTestPolicy | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._tests = tests
        self._agents = agents
        self._proposals = proposals
        self._policy = policy or ABTestPolicy()
        self._rng = rng or random.Random()

    def _require(self, test_id: str) -> ABTest:
        test = self._tests.get(test_id)
        if test is None:
            raise NotFoundError("A/B test", test_id)
        return test

    def _require_agent(self, agent_id: str) -> AgentConfig:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        return agent

    def start_test(
        self,
        agent_id: str,
        variant_b: AgentConfig,
        traffic_split: float | None = None,
        proposal_id: str | None = None,
    ) -> ABTest:
        """Start testing ``variant_b`` against the agent's current configuration.

        Raises:
            ABTestStateError: if the agent already has a running test, or the
                linked proposal is neither pending nor approved.
        """
        split = self._policy.default_traffic_split if traffic_split is None else traffic_split
        if not 0.0 <= split <= 1.0:
            raise ValueError(f"traffic_split must be within 0..1, got {split}")
        if proposal_id and self._proposals is not None:
            proposal = self._proposals.get(proposal_id)
            if proposal.status not in (ProposalStatus.PENDING, ProposalStatus.APPROVED):
                raise ABTestStateError(
                    f"Proposal {proposal_id} is {proposal.status.value} and cannot be tested"
                )

        variant_a = self._require_agent(agent_id)
        test = ABTest(
            agent_id=agent_id,
            proposal_id=proposal_id,
            variant_a=variant_a,
            variant_b=variant_b.model_copy(update={"agent_id": agent_id}),
            traffic_split=split,
        )
        self._tests.create(test)
        logger.info(f"Started A/B test {test.test_id} for agent {agent_id} ({split:.0%} to B)")
        return test

    def start_from_proposal(self, proposal_id: str, traffic_split: float | None = None) -> ABTest:
        """Start a test whose variant B is the agent with a proposal applied.

        Only pending or approved proposals can be tested.
        """
        if self._proposals is None:
            raise RuntimeError("start_from_proposal requires a ProposalManager")
        proposal = self._proposals.get(proposal_id)
        agent = self._require_agent(proposal.agent_id)
        return self.start_test(
            proposal.agent_id,
            apply_proposal(agent, proposal),
            traffic_split=traffic_split,
            proposal_id=proposal_id,
        )

    def get_active_test(self, agent_id: str) -> ABTest | None:
        return self._tests.get_running(agent_id)

    def get_test(self, test_id: str) -> ABTest | None:
        return self._tests.get(test_id)

    def select_variant(self, test: ABTest) -> Variant:
        return Variant.B if self._rng.random() < test.traffic_split else Variant.A

    def route(self, agent_id: str) -> tuple[ABTest | None, AgentConfig]:
        """Pick the configuration to run: a test variant, or the live agent."""
        test = self.get_active_test(agent_id)
        if test is None:
            return None, self._require_agent(agent_id)
        return test, test.config_for(self.select_variant(test))

    def record_result(self, test_id: str, variant: Variant, score: float) -> ABTest:
        """Record one scored run and complete the test if a winner is clear.

        Raises:
            ABTestStateError: if the test is already completed or cancelled.
        """
        test = self._tests.record_result(test_id, Variant(variant), score)
        completed = self.check_completion(test_id)
        return completed or test

    def check_completion(self, test_id: str) -> ABTest | None:
        """Complete the test if both variants are sampled and clearly apart."""
        test = self._require(test_id)
        if not test.is_running:
            return None

        minimum = self._policy.min_sample_size
        if test.samples_a < minimum or test.samples_b < minimum:
            return None

        score_a = test.score_a or 0.0
        score_b = test.score_b or 0.0
        if abs(score_a - score_b) < self._policy.min_score_difference:
            return None

        winner = Variant.B if score_b > score_a else Variant.A
        if winner == Variant.B:
            blocker = self._rollout_blocker(test)
            if blocker:
                logger.info(f"A/B test {test_id} favours B but keeps running: {blocker}")
                return None
        logger.info(
            f"A/B test {test_id} reached significance: A={score_a:.1f} B={score_b:.1f}"
        )
        return self._complete(test, winner)

    def select_winner(self, test_id: str, variant: Variant) -> ABTest:
        """Manually pick the winner.

        Raises:
            ABTestStateError: if the test is not running, or B is picked while
                the linked proposal is not approved.
            InsufficientSampleError: if either variant is below the minimum sample.
        """
        test = self._require(test_id)
        if not test.is_running:
            raise ABTestStateError(f"A/B test {test_id} is {test.status.value}")

        minimum = self._policy.min_sample_size
        if test.samples_a < minimum or test.samples_b < minimum:
            raise InsufficientSampleError(test_id, test.samples_a, test.samples_b, minimum)
        if Variant(variant) == Variant.B:
            blocker = self._rollout_blocker(test)
            if blocker:
                raise ABTestStateError(f"Cannot roll out variant B of {test_id}: {blocker}")

        completed = self._complete(test, Variant(variant))
        logger.info(f"Manually selected winner {variant} for A/B test {test_id}")
        return completed

    def _complete(self, test: ABTest, winner: Variant) -> ABTest:
        # Agent first: a failed save leaves the test running.
        if winner == Variant.B:
            self._rollout(test)

        finished = self._tests.finish(
            test.test_id,
            ABTestStatus.COMPLETED,
            datetime.now(UTC).isoformat(),
            winner=winner,
        )
        if finished is None:
            raise ABTestStateError(f"A/B test {test.test_id} is no longer running")

        if winner == Variant.B and test.proposal_id and self._proposals is not None:
            try:
                self._proposals.mark_applied(test.proposal_id)
            except (InvalidProposalTransition, NotFoundError) as e:
                logger.warning(f"Could not mark proposal {test.proposal_id} applied: {e}")
        logger.info(f"A/B test {test.test_id} completed, winner {winner.value}")
        return finished

    def _rollout(self, test: ABTest) -> None:
        rolled_out = test.variant_b.model_copy(
            update={"agent_id": test.agent_id, "updated_at": datetime.now(UTC).isoformat()}
        )
        self._agents.save(rolled_out)
        logger.info(f"Rolled out variant B of test {test.test_id} to agent {test.agent_id}")

    def _rollout_blocker(self, test: ABTest) -> str | None:
        """Why variant B may not go live yet, or None if it may."""
        if not test.proposal_id or self._proposals is None:
            return None
        try:
            proposal = self._proposals.get(test.proposal_id)
        except NotFoundError:
            return f"proposal {test.proposal_id} no longer exists"
        if proposal.status != ProposalStatus.APPROVED:
            return f"proposal {test.proposal_id} is {proposal.status.value}, not approved"
        return None

    def cancel_test(self, test_id: str) -> ABTest:
        cancelled = self._tests.finish(
            test_id, ABTestStatus.CANCELLED, datetime.now(UTC).isoformat()
        )
        if cancelled is None:
            current = self._require(test_id)
            raise ABTestStateError(f"A/B test {test_id} is {current.status.value}")
        logger.info(f"Cancelled A/B test {test_id}")
        return cancelled

    def list_tests(self, agent_id: str, limit: int = 10) -> list[ABTest]:
        return self._tests.list_for_agent(agent_id, limit=limit)
