"""Optimization repositories.

Storage interfaces injected into the analyzer, proposer, lifecycle manager,
A/B test manager and feedback collector, each with a process-local
implementation guarded by a threading.Lock. Reads return deep copies so
callers never mutate stored records.

State changes that must not race (proposal status transitions, A/B sample
counts, A/B completion) are compare-and-set operations inside the
repository.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from agentloop.errors import ABTestStateError, NotFoundError
from agentloop.optimization.schemas import (
    ABTest,
    ABTestStatus,
    AgentConfig,
    ConversationEvaluation,
    FeedbackRecord,
    FeedbackType,
    ModificationProposal,
    ProposalStatus,
    Variant,
)


def _after(timestamp: str, since: datetime | None) -> bool:
    return since is None or datetime.fromisoformat(timestamp) >= since


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


class AgentRepository:
    """Interface for agent configuration storage."""

    def get(self, agent_id: str) -> AgentConfig | None:
        raise NotImplementedError

    def save(self, agent: AgentConfig) -> None:
        raise NotImplementedError

    def list_ids(self) -> list[str]:
        raise NotImplementedError


class InMemoryAgentRepository(AgentRepository):
    def __init__(self, agents: Iterable[AgentConfig] = ()) -> None:
        self._lock = threading.Lock()
        self._agents = {a.agent_id: a.model_copy(deep=True) for a in agents}

    def get(self, agent_id: str) -> AgentConfig | None:
        with self._lock:
            agent = self._agents.get(agent_id)
            return agent.model_copy(deep=True) if agent else None

    def save(self, agent: AgentConfig) -> None:
        with self._lock:
            self._agents[agent.agent_id] = agent.model_copy(deep=True)

    def list_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._agents)


# ---------------------------------------------------------------------------
# Conversation evaluations
# ---------------------------------------------------------------------------


def _subject(evaluation: ConversationEvaluation) -> tuple[str, str]:
    if evaluation.conversation_id:
        return ("conversation", evaluation.conversation_id)
    return ("trace", evaluation.trace_id or evaluation.evaluation_id)


class EvaluationRepository:
    """Interface for post-conversation evaluation storage."""

    def add(self, evaluation: ConversationEvaluation) -> None:
        raise NotImplementedError

    def save(self, evaluation: ConversationEvaluation) -> None:
        """Insert, replacing any earlier evaluation of the same conversation.

        Evaluations without a conversation id are keyed by their trace id.
        """
        raise NotImplementedError

    def get_for_conversation(self, conversation_id: str) -> ConversationEvaluation | None:
        raise NotImplementedError

    def list_for_agent(
        self, agent_id: str, since: datetime | None = None
    ) -> list[ConversationEvaluation]:
        raise NotImplementedError


class InMemoryEvaluationRepository(EvaluationRepository):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._evaluations: list[ConversationEvaluation] = []

    def add(self, evaluation: ConversationEvaluation) -> None:
        with self._lock:
            self._evaluations.append(evaluation.model_copy(deep=True))

    def save(self, evaluation: ConversationEvaluation) -> None:
        with self._lock:
            key = _subject(evaluation)
            self._evaluations = [e for e in self._evaluations if _subject(e) != key]
            self._evaluations.append(evaluation.model_copy(deep=True))

    def get_for_conversation(self, conversation_id: str) -> ConversationEvaluation | None:
        with self._lock:
            for e in self._evaluations:
                if e.conversation_id == conversation_id:
                    return e.model_copy(deep=True)
        return None

    def list_for_agent(
        self, agent_id: str, since: datetime | None = None
    ) -> list[ConversationEvaluation]:
        with self._lock:
            return [
                e.model_copy(deep=True)
                for e in self._evaluations
                if e.agent_id == agent_id and _after(e.evaluated_at, since)
            ]


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------


class ProposalRepository:
    """Interface for modification proposal storage. Proposals are never deleted."""

    def add(self, proposal: ModificationProposal) -> None:
        raise NotImplementedError

    def get(self, proposal_id: str) -> ModificationProposal | None:
        raise NotImplementedError

    def transition(
        self,
        proposal_id: str,
        expected: Iterable[ProposalStatus],
        target: ProposalStatus,
        **changes: Any,
    ) -> ModificationProposal | None:
        """Set ``target`` status if the current status is in ``expected``.

        Returns the updated proposal, or None if the status did not match.
        Raises NotFoundError for unknown ids.
        """
        raise NotImplementedError

    def set_error(self, proposal_id: str, error: str | None) -> None:
        raise NotImplementedError

    def list_for_agent(
        self,
        agent_id: str,
        status: ProposalStatus | None = None,
        limit: int | None = None,
    ) -> list[ModificationProposal]:
        """Proposals for one agent, newest first."""
        raise NotImplementedError


class InMemoryProposalRepository(ProposalRepository):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._proposals: dict[str, ModificationProposal] = {}

    def _require(self, proposal_id: str) -> ModificationProposal:
        proposal = self._proposals.get(proposal_id)
        if proposal is None:
            raise NotFoundError("Proposal", proposal_id)
        return proposal

    def add(self, proposal: ModificationProposal) -> None:
        with self._lock:
            if proposal.proposal_id in self._proposals:
                raise ValueError(f"Proposal {proposal.proposal_id} already exists")
            self._proposals[proposal.proposal_id] = proposal.model_copy(deep=True)

    def get(self, proposal_id: str) -> ModificationProposal | None:
        with self._lock:
            proposal = self._proposals.get(proposal_id)
            return proposal.model_copy(deep=True) if proposal else None

    def transition(
        self,
        proposal_id: str,
        expected: Iterable[ProposalStatus],
        target: ProposalStatus,
        **changes: Any,
    ) -> ModificationProposal | None:
        with self._lock:
            proposal = self._require(proposal_id)
            if proposal.status not in set(expected):
                return None
            updated = proposal.model_copy(update={"status": target, **changes}, deep=True)
            self._proposals[proposal_id] = updated
            return updated.model_copy(deep=True)

    def set_error(self, proposal_id: str, error: str | None) -> None:
        with self._lock:
            self._require(proposal_id).last_error = error

    def list_for_agent(
        self,
        agent_id: str,
        status: ProposalStatus | None = None,
        limit: int | None = None,
    ) -> list[ModificationProposal]:
        with self._lock:
            results = [
                p.model_copy(deep=True)
                for p in self._proposals.values()
                if p.agent_id == agent_id and (status is None or p.status == status)
            ]
        results.sort(key=lambda p: p.created_at, reverse=True)
        return results[:limit] if limit is not None else results


# ---------------------------------------------------------------------------
# A/B tests
# ---------------------------------------------------------------------------


class ABTestRepository:
    """Interface for A/B test storage."""

    def create(self, test: ABTest) -> None:
        """Store a new running test. Raises ABTestStateError if the agent already has one."""
        raise NotImplementedError

    def get(self, test_id: str) -> ABTest | None:
        raise NotImplementedError

    def get_running(self, agent_id: str) -> ABTest | None:
        raise NotImplementedError

    def record_result(self, test_id: str, variant: Variant, score: float) -> ABTest:
        """Add one sample to a variant's running average.

        Raises ABTestStateError if the test is not running.
        """
        raise NotImplementedError

    def finish(
        self,
        test_id: str,
        status: ABTestStatus,
        ended_at: str,
        winner: Variant | None = None,
    ) -> ABTest | None:
        """Move a running test to a terminal status; None if it was not running."""
        raise NotImplementedError

    def list_for_agent(self, agent_id: str, limit: int | None = None) -> list[ABTest]:
        raise NotImplementedError


class InMemoryABTestRepository(ABTestRepository):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tests: dict[str, ABTest] = {}

    def _require(self, test_id: str) -> ABTest:
        test = self._tests.get(test_id)
        if test is None:
            raise NotFoundError("A/B test", test_id)
        return test

    def create(self, test: ABTest) -> None:
        with self._lock:
            for existing in self._tests.values():
                if existing.agent_id == test.agent_id and existing.is_running:
                    raise ABTestStateError(
                        f"Agent {test.agent_id} already has running A/B test {existing.test_id}"
                    )
            self._tests[test.test_id] = test.model_copy(deep=True)

    def get(self, test_id: str) -> ABTest | None:
        with self._lock:
            test = self._tests.get(test_id)
            return test.model_copy(deep=True) if test else None

    def get_running(self, agent_id: str) -> ABTest | None:
        with self._lock:
            running = [t for t in self._tests.values() if t.agent_id == agent_id and t.is_running]
            if not running:
                return None
            return max(running, key=lambda t: t.started_at).model_copy(deep=True)

    def record_result(self, test_id: str, variant: Variant, score: float) -> ABTest:
        with self._lock:
            test = self._require(test_id)
            if not test.is_running:
                raise ABTestStateError(f"A/B test {test_id} is {test.status.value}")
            if variant == Variant.A:
                n = test.samples_a
                test.score_a = ((test.score_a or 0.0) * n + score) / (n + 1)
                test.samples_a = n + 1
            else:
                n = test.samples_b
                test.score_b = ((test.score_b or 0.0) * n + score) / (n + 1)
                test.samples_b = n + 1
            return test.model_copy(deep=True)

    def finish(
        self,
        test_id: str,
        status: ABTestStatus,
        ended_at: str,
        winner: Variant | None = None,
    ) -> ABTest | None:
        if status == ABTestStatus.RUNNING:
            raise ValueError("finish() requires a terminal status")
        with self._lock:
            test = self._require(test_id)
            if not test.is_running:
                return None
            test.status = status
            test.ended_at = ended_at
            test.winning_variant = winner
            return test.model_copy(deep=True)

    def list_for_agent(self, agent_id: str, limit: int | None = None) -> list[ABTest]:
        with self._lock:
            results = [t.model_copy(deep=True) for t in self._tests.values() if t.agent_id == agent_id]
        results.sort(key=lambda t: t.started_at, reverse=True)
        return results[:limit] if limit is not None else results


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------


class FeedbackRepository:
    """Interface for user feedback storage."""

    def add(self, record: FeedbackRecord) -> None:
        raise NotImplementedError

    def list_for_agent(
        self,
        agent_id: str,
        since: datetime | None = None,
        types: Iterable[FeedbackType] | None = None,
        limit: int | None = None,
    ) -> list[FeedbackRecord]:
        """Feedback for one agent, newest first."""
        raise NotImplementedError

    def count(
        self,
        agent_id: str,
        since: datetime | None = None,
        types: Iterable[FeedbackType] | None = None,
    ) -> int:
        return len(self.list_for_agent(agent_id, since=since, types=types))


class InMemoryFeedbackRepository(FeedbackRepository):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[FeedbackRecord] = []

    def add(self, record: FeedbackRecord) -> None:
        with self._lock:
            self._records.append(record.model_copy(deep=True))

    def list_for_agent(
        self,
        agent_id: str,
        since: datetime | None = None,
        types: Iterable[FeedbackType] | None = None,
        limit: int | None = None,
    ) -> list[FeedbackRecord]:
        wanted = set(types) if types is not None else None
        with self._lock:
            results = [
                r.model_copy(deep=True)
                for r in self._records
                if r.agent_id == agent_id
                and _after(r.timestamp, since)
                and (wanted is None or r.type in wanted)
            ]
        results.sort(key=lambda r: r.timestamp, reverse=True)
        return results[:limit] if limit is not None else results
