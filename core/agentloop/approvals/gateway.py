"""Approval Gateway.

Holds outputs the evaluator routed to ``needs_review`` until a human decides:

    approve           -> ActionExecutor runs the draft as written
    edit_and_approve  -> ActionExecutor runs the edited text; edit recorded as feedback
    reject            -> nothing runs; approval_reject recorded as feedback

Each approval can be actioned once. Blocked outputs can only be rejected.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import httpx
from pydantic import BaseModel, Field

from agentloop.errors import ApprovalError, NotFoundError
from agentloop.evaluation.schemas import Decision, EvalResult, UserAction
from agentloop.optimization.feedback import FeedbackCollector

logger = logging.getLogger(__name__)


class PendingApproval(BaseModel):
    run_id: str
    trace_id: str
    agent_id: str
    conversation_id: str = ""
    user_id: str = ""
    draft: str
    action: str = ""
    action_args: dict[str, Any] = Field(default_factory=dict)
    eval_result: EvalResult
    submitted_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def is_pending(self) -> bool:
        return (
            self.eval_result.final_decision == Decision.NEEDS_REVIEW
            and not self.eval_result.is_actioned
        )


class DecisionType(StrEnum):
    APPROVE = "approve"
    EDIT_AND_APPROVE = "edit_and_approve"
    REJECT = "reject"


class ApprovalDecision(BaseModel):
    """A reviewer's decision on one pending approval."""

    type: DecisionType
    reviewer: str = ""
    edited_text: str | None = None
    reason: str | None = None

    @classmethod
    def approve(cls, reviewer: str = "") -> ApprovalDecision:
        return cls(type=DecisionType.APPROVE, reviewer=reviewer)

    @classmethod
    def edit_and_approve(cls, edited_text: str, reviewer: str = "") -> ApprovalDecision:
        return cls(type=DecisionType.EDIT_AND_APPROVE, reviewer=reviewer, edited_text=edited_text)

    @classmethod
    def reject(cls, reviewer: str = "", reason: str | None = None) -> ApprovalDecision:
        return cls(type=DecisionType.REJECT, reviewer=reviewer, reason=reason)

    @property
    def user_action(self) -> UserAction:
        return {
            DecisionType.APPROVE: UserAction.APPROVED,
            DecisionType.EDIT_AND_APPROVE: UserAction.EDITED,
            DecisionType.REJECT: UserAction.REJECTED,
        }[self.type]


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class ApprovalRepository:
    """Interface for pending-approval storage."""

    def add(self, approval: PendingApproval) -> None:
        raise NotImplementedError

    def get(self, run_id: str) -> PendingApproval | None:
        raise NotImplementedError

    def claim(
        self,
        run_id: str,
        action: UserAction,
        actioned_by: str,
        actioned_at: str,
        edited_output: str | None = None,
    ) -> PendingApproval | None:
        """Record the user action if none is recorded yet; None otherwise."""
        raise NotImplementedError

    def release(self, run_id: str) -> None:
        """Clear a claimed user action so the approval can be decided again."""
        raise NotImplementedError

    def list_all(self, agent_id: str | None = None) -> list[PendingApproval]:
        raise NotImplementedError


class InMemoryApprovalRepository(ApprovalRepository):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._approvals: dict[str, PendingApproval] = {}

    def add(self, approval: PendingApproval) -> None:
        with self._lock:
            if approval.run_id in self._approvals:
                raise ValueError(f"Run {approval.run_id} already submitted for approval")
            self._approvals[approval.run_id] = approval.model_copy(deep=True)

    def get(self, run_id: str) -> PendingApproval | None:
        with self._lock:
            approval = self._approvals.get(run_id)
            return approval.model_copy(deep=True) if approval else None

    def claim(
        self,
        run_id: str,
        action: UserAction,
        actioned_by: str,
        actioned_at: str,
        edited_output: str | None = None,
    ) -> PendingApproval | None:
        with self._lock:
            approval = self._approvals.get(run_id)
            if approval is None:
                raise NotFoundError("Approval", run_id)
            result = approval.eval_result
            if result.is_actioned:
                return None
            result.user_action = action
            result.actioned_by = actioned_by
            result.actioned_at = actioned_at
            result.edited_output = edited_output
            return approval.model_copy(deep=True)

    def release(self, run_id: str) -> None:
        with self._lock:
            approval = self._approvals.get(run_id)
            if approval is None:
                raise NotFoundError("Approval", run_id)
            result = approval.eval_result
            result.user_action = None
            result.actioned_by = None
            result.actioned_at = None
            result.edited_output = None

    def list_all(self, agent_id: str | None = None) -> list[PendingApproval]:
        with self._lock:
            results = [
                a.model_copy(deep=True)
                for a in self._approvals.values()
                if agent_id is None or a.agent_id == agent_id
            ]
        results.sort(key=lambda a: a.submitted_at)
        return results


# ---------------------------------------------------------------------------
# Action execution
# ---------------------------------------------------------------------------


class ActionExecutor:
    """Interface for whatever carries out an approved action."""

    async def execute(self, approval: PendingApproval, content: str) -> bool:
        """Run the action with ``content``; return True on success."""
        raise NotImplementedError


class WebhookActionExecutor(ActionExecutor):
    """Posts approved drafts to a webhook URL."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def execute(self, approval: PendingApproval, content: str) -> bool:
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    self.url,
                    json={
                        "run_id": approval.run_id,
                        "trace_id": approval.trace_id,
                        "agent_id": approval.agent_id,
                        "action": approval.action,
                        "action_args": approval.action_args,
                        "content": content,
                        "user_action": approval.eval_result.user_action,
                    },
                    timeout=self.timeout,
                )
                return response.status_code < 400
        except httpx.HTTPError as e:
            logger.error(f"Webhook delivery for run {approval.run_id} failed: {e}")
            return False


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class ApprovalGateway:
    """Queue of outputs awaiting a human decision.

    Usage::

        gateway = ApprovalGateway(InMemoryApprovalRepository(), executor, feedback)
        gateway.submit(run_id, trace_id, agent_id, draft, "send_email", eval_result)
        for approval in gateway.list_pending(agent_id):
            await gateway.apply_decision(approval.run_id, ApprovalDecision.approve("ana"))
    """

    def __init__(
        self,
        repository: ApprovalRepository,
        executor: ActionExecutor | None = None,
        feedback: FeedbackCollector | None = None,
    ) -> None:
        self._repository = repository
        self._executor = executor
        self._feedback = feedback

    def submit(
        self,
        run_id: str,
        trace_id: str,
        agent_id: str,
        draft: str,
        action: str,
        eval_result: EvalResult,
        conversation_id: str = "",
        user_id: str = "",
        action_args: dict[str, Any] | None = None,
    ) -> PendingApproval:
        approval = PendingApproval(
            run_id=run_id,
            trace_id=trace_id,
            agent_id=agent_id,
            conversation_id=conversation_id,
            user_id=user_id,
            draft=draft,
            action=action,
            action_args=action_args or {},
            eval_result=eval_result,
        )
        self._repository.add(approval)
        logger.info(
            f"Submitted run {run_id} for approval ({eval_result.final_decision.value})"
        )
        return approval

    def get(self, run_id: str) -> PendingApproval:
        approval = self._repository.get(run_id)
        if approval is None:
            raise NotFoundError("Approval", run_id)
        return approval

    def list_pending(self, agent_id: str | None = None) -> list[PendingApproval]:
        return [a for a in self._repository.list_all(agent_id) if a.is_pending]

    async def apply_decision(self, run_id: str, decision: ApprovalDecision) -> PendingApproval:
        """Apply a reviewer's decision to a submitted run.

        Raises:
            NotFoundError: if the run was never submitted.
            ApprovalError: if the run was already actioned or auto-sent, a blocked output
                is approved, an edit carries no text, or execution fails.
        """
        approval = self.get(run_id)
        if approval.eval_result.is_actioned:
            raise ApprovalError(
                f"Run {run_id} was already {approval.eval_result.user_action.value}"
            )
        if approval.eval_result.final_decision == Decision.AUTO_SEND:
            raise ApprovalError(f"Run {run_id} was auto-sent and is not awaiting review")

        approving = decision.type != DecisionType.REJECT
        if approving and approval.eval_result.final_decision == Decision.BLOCKED:
            raise ApprovalError(f"Run {run_id} was blocked and cannot be approved")
        if decision.type == DecisionType.EDIT_AND_APPROVE and not decision.edited_text:
            raise ApprovalError("edit_and_approve requires edited text")

        claimed = self._repository.claim(
            run_id,
            decision.user_action,
            actioned_by=decision.reviewer,
            actioned_at=datetime.now(UTC).isoformat(),
            edited_output=decision.edited_text,
        )
        if claimed is None:
            raise ApprovalError(f"Run {run_id} was already actioned")

        if approving:
            await self._execute(claimed, decision.edited_text or claimed.draft)

        await self._record_feedback(claimed, decision)
        logger.info(f"Run {run_id} {decision.user_action.value} by {decision.reviewer or 'unknown'}")
        return claimed

    async def _execute(self, approval: PendingApproval, content: str) -> None:
        if self._executor is None:
            return
        try:
            ok = await self._executor.execute(approval, content)
        except Exception as e:
            logger.exception(f"Action for run {approval.run_id} failed")
            self._repository.release(approval.run_id)
            raise ApprovalError(f"Action for run {approval.run_id} failed: {e}") from e
        if not ok:
            self._repository.release(approval.run_id)
            raise ApprovalError(f"Action for run {approval.run_id} was not accepted")

    async def _record_feedback(self, approval: PendingApproval, decision: ApprovalDecision) -> None:
        if self._feedback is None:
            return
        if decision.type == DecisionType.REJECT:
            await self._feedback.record_rejection(
                approval.trace_id,
                approval.conversation_id,
                approval.user_id,
                approval.agent_id,
                approval.draft,
            )
        elif decision.type == DecisionType.EDIT_AND_APPROVE:
            await self._feedback.record_edit(
                approval.trace_id,
                approval.conversation_id,
                approval.user_id,
                approval.agent_id,
                approval.draft,
                decision.edited_text or "",
            )
