"""End-to-end tests: trace, evaluate, review, analyze, propose, apply."""

import pytest

from agentloop.approvals import ApprovalDecision
from agentloop.evaluation import (
    Assertion,
    Claim,
    Decision,
    EvalContext,
    EvalRules,
    Evaluator,
    Judge,
    JudgeVerdict,
    UserAction,
    Verdict,
)
from agentloop.optimization import (
    ConversationEvaluator,
    PerformanceAnalyzer,
    ProposalStatus,
    ProposalType,
)
from agentloop.tracing import TraceStatus, Tracer

EMAIL = (
    "Hi Ana, thank you for the update on the renewal. "
    "I have attached the signed contract and the pricing summary for your review. "
    "Please let me know if anything needs to change before Friday."
)

RULES = EvalRules(assertions=[Assertion(check="no_placeholders")])
SEND = EvalContext(action="send_email")


class StaticJudge(Judge):
    def __init__(self, verdict):
        self.verdict = verdict

    async def judge(self, output, context):
        return self.verdict


async def traced_run(trace_repo, evaluator, output, user_message):
    tracer = Tracer(trace_repo, agent_id="sdr", conversation_id="conv_1", user_id="rep_1")
    await tracer.start_trace(user_messages=[user_message])
    await tracer.record_llm_call(
        "claude-3-5-sonnet-20241022", tokens_in=900, tokens_out=250, cost=0.012, step_number=1
    )
    await tracer.record_tool_call("search", input={"q": "Acme renewal"}, step_number=1)
    result = await evaluator.evaluate_and_record(tracer, output, RULES, SEND)
    return tracer, result


class TestReviewLoop:
    @pytest.mark.asyncio
    async def test_rejections_drive_a_prompt_proposal(
        self, trace_repo, gateway, proposer, proposal_manager, agent_repo
    ):
        unsure = StaticJudge(JudgeVerdict(verdict=Verdict.FAIL, confidence=0.4))
        evaluator = Evaluator(judge=unsure)

        for i in range(3):
            tracer, result = await traced_run(
                trace_repo, evaluator, EMAIL, "The last draft was way too long"
            )
            assert result.final_decision == Decision.NEEDS_REVIEW

            gateway.submit(
                run_id=f"run_{i}",
                trace_id=tracer.trace_id,
                agent_id="sdr",
                draft=EMAIL,
                action="send_email",
                eval_result=result,
                conversation_id="conv_1",
                user_id="rep_1",
            )

        assert len(gateway.list_pending("sdr")) == 3
        for approval in gateway.list_pending("sdr"):
            decided = await gateway.apply_decision(approval.run_id, ApprovalDecision.reject("ops"))
            assert decided.eval_result.user_action == UserAction.REJECTED

        traces = trace_repo.list_for_agent("sdr")
        assert all(t.status == TraceStatus.COMPLETED for t in traces)
        assert all(t.feedback_score == 2 for t in traces)
        assert all(t.eval_summary.final_decision == "needs_review" for t in traces)

        outcome = await proposer.propose_for_agent("sdr")

        assert outcome.analysis.total_runs == 3
        assert outcome.analysis.avg_satisfaction == pytest.approx(2.0)
        assert "too_verbose" in outcome.analysis.top_complaints
        assert [p.type for p in outcome.proposals] == [ProposalType.PROMPT_REFINEMENT]

        proposal = outcome.proposals[0]
        proposal_manager.approve(proposal.proposal_id, reviewer="ops")
        updated = proposal_manager.apply(proposal.proposal_id)

        assert updated.system_prompt.startswith("You write short")
        assert agent_repo.get("sdr").system_prompt == updated.system_prompt
        assert proposal_manager.get(proposal.proposal_id).status == ProposalStatus.APPLIED

    @pytest.mark.asyncio
    async def test_approved_draft_is_executed(self, trace_repo, gateway, executor):
        evaluator = Evaluator()
        tracer, result = await traced_run(trace_repo, evaluator, EMAIL, "Send the renewal")
        gateway.submit("run_1", tracer.trace_id, "sdr", EMAIL, "send_email", result)

        await gateway.apply_decision("run_1", ApprovalDecision.approve("ops"))

        executor.execute.assert_awaited_once()
        assert executor.execute.call_args.args[1] == EMAIL
        assert gateway.list_pending() == []


class TestGate:
    @pytest.mark.asyncio
    async def test_placeholder_is_blocked_and_recorded(self, trace_repo):
        judge = StaticJudge(JudgeVerdict(verdict=Verdict.PASS, confidence=0.95))
        _, result = await traced_run(
            trace_repo, Evaluator(judge=judge), EMAIL + " Regards, [Your Name]", "Send it"
        )

        assert result.final_decision == Decision.BLOCKED
        trace = trace_repo.get(result.trace_id)
        assert trace.eval_summary.l1_passed is False
        assert trace.eval_summary.final_decision == "blocked"
        assert trace.total_cost == pytest.approx(0.012)

    @pytest.mark.asyncio
    async def test_passing_judge_auto_sends(self, trace_repo):
        judge = StaticJudge(JudgeVerdict(verdict=Verdict.PASS, confidence=0.95))
        _, result = await traced_run(trace_repo, Evaluator(judge=judge), EMAIL, "Send it")

        assert result.final_decision == Decision.AUTO_SEND
        trace = trace_repo.get(result.trace_id)
        assert trace.eval_summary.l3_triggered is True
        assert trace.eval_summary.l3_blocked is False
        assert trace.tool_successes == 1


class TestConversationLoop:
    @pytest.mark.asyncio
    async def test_gate_hallucination_reaches_analysis(self, trace_repo, evaluation_repo):
        judge = StaticJudge(
            JudgeVerdict(
                verdict=Verdict.PASS,
                confidence=0.95,
                claims=[Claim(text="Contract renews in March", grounded=False)],
            )
        )
        tracer, result = await traced_run(trace_repo, Evaluator(judge=judge), EMAIL, "Send it")
        assert result.final_decision == Decision.NEEDS_REVIEW

        evaluation = await ConversationEvaluator(trace_repo, evaluation_repo).evaluate_conversation(
            "conv_1"
        )

        assert evaluation.trace_id == tracer.trace_id
        assert evaluation.failure_modes == ["hallucination"]
        analysis = PerformanceAnalyzer(trace_repo, evaluation_repo).analyze("sdr")
        assert analysis.hallucination_rate == pytest.approx(1.0)
        assert analysis.common_failures == ["hallucination"]
