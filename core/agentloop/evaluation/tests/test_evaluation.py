"""Tests for the evaluation gate: assertions, scoring, judge, grounding and decisions."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from agentloop.config import EvaluationPolicy, L2Aggregation, L3Trigger
from agentloop.errors import EvaluationFailure
from agentloop.evaluation import (
    Assertion,
    Claim,
    CriterionScore,
    Decision,
    EvalContext,
    EvalRules,
    Evaluator,
    GroundingSource,
    GroundingVerifier,
    Judge,
    JudgeVerdict,
    LLMJudge,
    Severity,
    Verdict,
    aggregate,
    decide_final,
    evaluate_assertions,
    parse_verdict,
    score_output,
    should_trigger,
    summarize_grounding,
)
from agentloop.llm import LLMResponse
from agentloop.tracing import InMemoryTraceRepository, TraceStatus, Tracer

GOOD_EMAIL = (
    "Hi Ana, thank you for the update on the renewal. "
    "I have attached the signed contract and the pricing summary for your review. "
    "Please let me know if anything needs to change before Friday."
)


class StaticJudge(Judge):
    def __init__(self, verdict: JudgeVerdict):
        self.verdict = verdict
        self.calls = 0

    async def judge(self, output, context):
        self.calls += 1
        return self.verdict


class FailingJudge(Judge):
    async def judge(self, output, context):
        raise RuntimeError("provider unavailable")


class SlowJudge(Judge):
    async def judge(self, output, context):
        await asyncio.sleep(5)


def _decide(**overrides):
    params = dict(
        l1_passed=True,
        l2_score=90,
        l3_triggered=False,
        l3_blocked=None,
        l3_passed=None,
        confidence=0.9,
        auto_send_threshold=85,
        min_confidence=0.7,
        require_approval=False,
    )
    params.update(overrides)
    return decide_final(**params)


# ---------------------------------------------------------------------------
# L1
# ---------------------------------------------------------------------------


class TestAssertions:
    def test_placeholders_block(self):
        result = evaluate_assertions(
            "Hello {{first_name}}, welcome to [Company Name].",
            [Assertion(check="no_placeholders")],
        )

        assert result.passed is False
        assert "{{first_name}}" in result.results[0].message
        assert "[Company Name]" in result.results[0].message

    def test_recipient_first_name_is_enough(self):
        ctx = EvalContext(recipient_name="Ana Lopez")
        result = evaluate_assertions(GOOD_EMAIL, [Assertion(check="contains_recipient_name")], ctx)
        assert result.passed is True

    def test_recipient_missing(self):
        ctx = EvalContext(recipient_name="Bruno Diaz")
        result = evaluate_assertions(GOOD_EMAIL, [Assertion(check="contains_recipient_name")], ctx)
        assert result.passed is False
        assert "Bruno Diaz" in result.results[0].message

    def test_recipient_check_passes_without_name(self):
        result = evaluate_assertions("No name here.", [Assertion(check="contains_recipient_name")])
        assert result.passed is True

    def test_generic_greeting(self):
        result = evaluate_assertions(
            "To whom it may concern, please find the report attached.",
            [Assertion(check="no_generic_greeting")],
        )
        assert result.passed is False

    def test_warn_severity_does_not_fail_tier(self):
        result = evaluate_assertions(
            "Dear Sir/Madam, the invoice is attached.",
            [Assertion(check="no_generic_greeting", severity=Severity.WARN)],
        )

        assert result.passed is True
        assert len(result.warnings) == 1
        assert result.failed == []

    def test_length_params(self):
        result = evaluate_assertions(
            "x" * 30,
            [
                Assertion(check="respects_max_length", params={"max_length": 20}),
                Assertion(check="respects_min_length", params={"min_length": 5}),
            ],
        )
        assert [r.passed for r in result.results] == [False, True]

    def test_correct_language(self):
        french = "Bonjour, je suis ravi de vous écrire et nous sommes prêts."
        assert evaluate_assertions(
            french, [Assertion(check="correct_language", params={"language": "fr"})]
        ).passed
        assert not evaluate_assertions(french, [Assertion(check="correct_language")]).passed

    def test_has_valid_email_only_when_required(self):
        text = "Reach me any time."
        assert evaluate_assertions(text, [Assertion(check="has_valid_email")]).passed
        assert not evaluate_assertions(
            text, [Assertion(check="has_valid_email", params={"require_email": True})]
        ).passed
        assert evaluate_assertions(
            "Reach me at sam@example.com.",
            [Assertion(check="has_valid_email", params={"require_email": True})],
        ).passed

    def test_has_real_content(self):
        assert not evaluate_assertions(
            "Hi Ana, see you. Thanks", [Assertion(check="has_real_content")]
        ).passed
        assert evaluate_assertions(GOOD_EMAIL, [Assertion(check="has_real_content")]).passed

    def test_unknown_check_raises(self):
        with pytest.raises(EvaluationFailure, match="Unknown assertion check"):
            evaluate_assertions("text", [Assertion(check="does_not_exist")])


# ---------------------------------------------------------------------------
# L2
# ---------------------------------------------------------------------------


class TestScoring:
    def test_clean_email_scores_full_marks(self):
        result = score_output(GOOD_EMAIL)

        assert result.score == 100
        assert result.passed is True
        assert result.recommendations == []
        assert {c.criterion for c in result.breakdown} == {
            "relevance",
            "quality",
            "tone",
            "completeness",
        }

    def test_weighted_mean_normalizes_weights(self):
        breakdown = [
            CriterionScore(criterion="a", score=80, weight=1.0),
            CriterionScore(criterion="b", score=60, weight=3.0),
        ]
        assert aggregate(breakdown, L2Aggregation.WEIGHTED_MEAN) == 65

    def test_minimum_aggregation(self):
        breakdown = [
            CriterionScore(criterion="a", score=90, weight=0.5),
            CriterionScore(criterion="b", score=50, weight=0.5),
        ]
        assert aggregate(breakdown, L2Aggregation.WEIGHTED_MEAN) == 70
        assert aggregate(breakdown, L2Aggregation.MINIMUM) == 50

    def test_low_query_overlap_penalized(self):
        ctx = EvalContext(query="quarterly revenue forecast spreadsheet")
        result = score_output(GOOD_EMAIL, ctx, weights={"relevance": 1.0})

        assert result.score == 70
        assert "Low keyword overlap with query" in result.breakdown[0].issues

    def test_informal_language_penalized_for_professional_tone(self):
        result = score_output("yeah we're gonna ship it lol.", weights={"tone": 1.0})
        assert result.score == 70
        assert 'Informal language: "gonna"' in result.breakdown[0].issues

    def test_missing_required_element(self):
        ctx = EvalContext(required_elements=["invoice number"])
        result = score_output(GOOD_EMAIL, ctx, weights={"completeness": 1.0})
        assert result.score == 80

    def test_sub_scores_clamped_to_zero(self):
        text = "their is a.Bug. their is x.Yes. their are z.Zoo. your going. your gonna. your going."
        result = score_output(text, weights={"quality": 1.0})
        assert result.breakdown[0].score == 0
        assert result.score == 0

    def test_unknown_criterion_raises_key_error(self):
        with pytest.raises(KeyError):
            score_output(GOOD_EMAIL, weights={"charisma": 1.0})


# ---------------------------------------------------------------------------
# L3
# ---------------------------------------------------------------------------


class TestJudgeTrigger:
    def test_irreversible_action(self):
        policy = EvaluationPolicy()
        assert should_trigger(policy, EvalContext(action="send_email_v2"), 90, 60)
        assert not should_trigger(policy, EvalContext(action="draft_email"), 90, 60)

    def test_low_confidence(self):
        policy = EvaluationPolicy(l3_trigger=L3Trigger.ON_LOW_CONFIDENCE)
        assert should_trigger(policy, EvalContext(confidence=0.5), 90, 60)
        assert should_trigger(policy, EvalContext(), 90, 60)
        assert should_trigger(policy, EvalContext(confidence=0.9), 50, 60)
        assert not should_trigger(policy, EvalContext(confidence=0.9), 80, 60)

    def test_always_and_never(self):
        ctx = EvalContext(action="send_email")
        assert should_trigger(EvaluationPolicy(l3_trigger=L3Trigger.ALWAYS), EvalContext(), 100, 60)
        assert not should_trigger(EvaluationPolicy(l3_trigger=L3Trigger.NEVER), ctx, 10, 60)


class TestParseVerdict:
    def test_fenced_json(self):
        text = (
            "Here is my evaluation:\n```json\n"
            '{"verdict": "fail", "confidence": 0.85, "reason": "Wrong amount",'
            ' "claims": [{"text": "deal is $50k", "type": "quantitative", "grounded": false}],'
            ' "suggestions": ["Check the CRM"]}\n```'
        )
        verdict = parse_verdict(text)

        assert verdict.verdict == Verdict.FAIL
        assert verdict.confidence == pytest.approx(0.85)
        assert verdict.reason == "Wrong amount"
        assert verdict.claims[0].grounded is False
        assert verdict.suggestions == ["Check the CRM"]

    def test_should_block_form(self):
        assert parse_verdict('{"shouldBlock": true, "confidence": 0.9}').verdict == Verdict.FAIL
        assert (
            parse_verdict('{"shouldBlock": false, "score": 55, "confidence": 0.9}').verdict
            == Verdict.RETRY
        )
        assert (
            parse_verdict('{"shouldBlock": false, "score": 92, "confidence": 0.9}').verdict
            == Verdict.PASS
        )

    def test_unknown_claim_type_defaults_to_factual(self):
        verdict = parse_verdict(
            '{"verdict": "pass", "confidence": 0.9, "claims": [{"text": "x", "type": ["odd"]}]}'
        )
        assert verdict.claims[0].type == "factual"

    @pytest.mark.parametrize(
        "text",
        [
            "no json at all",
            '{"verdict": "maybe", "confidence": 0.9}',
            '{"verdict": "pass"}',
            '{"verdict": "pass", "confidence": 1.5}',
            '{"reason": "missing verdict", "confidence": 0.9}',
        ],
    )
    def test_malformed_responses_raise(self, text):
        with pytest.raises(EvaluationFailure):
            parse_verdict(text)


class TestLLMJudge:
    @pytest.mark.asyncio
    async def test_judge_uses_provider(self):
        provider = MagicMock()
        provider.acomplete = AsyncMock(
            return_value=LLMResponse(content='{"verdict": "pass", "confidence": 0.95}')
        )
        judge = LLMJudge(provider)

        verdict = await judge.judge(
            GOOD_EMAIL, EvalContext(action="send_email", recipient_name="Ana Lopez")
        )

        assert verdict.verdict == Verdict.PASS
        kwargs = provider.acomplete.call_args.kwargs
        assert "send_email" in kwargs["system"]
        assert "Ana Lopez" in kwargs["messages"][0]["content"]


class TestGrounding:
    def test_summary_excludes_unknown_from_denominator(self):
        claims = [
            Claim(text="a", grounded=True),
            Claim(text="b", grounded=False),
            Claim(text="c", grounded=True),
        ]
        result = summarize_grounding(claims, {2})

        assert result.grounded_count == 1
        assert result.ungrounded_count == 1
        assert result.unknown_count == 1
        assert result.grounding_score == 50

    def test_nothing_verifiable_scores_100(self):
        assert summarize_grounding([]).grounding_score == 100

    @pytest.mark.asyncio
    async def test_verify_extracts_then_checks(self):
        provider = MagicMock()
        provider.acomplete = AsyncMock(
            side_effect=[
                LLMResponse(
                    content='{"claims": [{"text": "deal value is $50,000", "type": "quantitative"},'
                    ' {"text": "meeting is on Friday", "type": "temporal"}]}'
                ),
                LLMResponse(
                    content='{"results": [{"index": 0, "grounded": true, "evidence": "CRM"},'
                    ' {"index": 1, "grounded": false}]}'
                ),
            ]
        )
        verifier = GroundingVerifier(provider)
        sources = [GroundingSource(type="tool_result", label="CRM", content="Deal: $50,000")]

        result = await verifier.verify(GOOD_EMAIL, "send_email", sources)

        assert result.grounded_count == 1
        assert result.ungrounded_count == 1
        assert result.grounding_score == 50
        assert provider.acomplete.await_count == 2

    @pytest.mark.asyncio
    async def test_short_content_skips_llm(self):
        provider = MagicMock()
        provider.acomplete = AsyncMock()
        verifier = GroundingVerifier(provider)

        result = await verifier.verify("Thanks!", "send_email", [])

        assert result.grounding_score == 100
        provider.acomplete.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["sorry, I cannot", '{"facts": []}'])
    async def test_unreadable_extraction_raises(self, content):
        provider = MagicMock()
        provider.acomplete = AsyncMock(return_value=LLMResponse(content=content))
        verifier = GroundingVerifier(provider)

        with pytest.raises(EvaluationFailure):
            await verifier.extract_claims(GOOD_EMAIL, "send_email")

    def test_applies_only_to_text_actions(self):
        assert GroundingVerifier.applies_to("send_email")
        assert not GroundingVerifier.applies_to("update_crm")


# ---------------------------------------------------------------------------
# Decision policy
# ---------------------------------------------------------------------------


class TestDecideFinal:
    def test_l1_failure_blocks_regardless_of_score(self):
        assert _decide(l1_passed=False, l2_score=95) == Decision.BLOCKED

    def test_l3_block_dominates(self):
        assert (
            _decide(l2_score=100, l3_triggered=True, l3_blocked=True, l3_passed=False)
            == Decision.BLOCKED
        )

    def test_auto_send(self):
        assert _decide() == Decision.AUTO_SEND
        assert _decide(l3_triggered=True, l3_blocked=False, l3_passed=True) == Decision.AUTO_SEND

    @pytest.mark.parametrize(
        "overrides",
        [
            {"l2_score": 84},
            {"confidence": 0.69},
            {"require_approval": True},
            {"l3_triggered": True, "l3_blocked": False, "l3_passed": False},
            {"l1_passed": None},
            {"l2_score": None},
            {"confidence": None},
            {"require_approval": None},
            {"l3_triggered": True, "l3_blocked": None, "l3_passed": None},
        ],
    )
    def test_needs_review(self, overrides):
        assert _decide(**overrides) == Decision.NEEDS_REVIEW


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


class TestEvaluator:
    @pytest.mark.asyncio
    async def test_clean_output_auto_sends(self):
        result = await Evaluator().evaluate(
            GOOD_EMAIL,
            EvalRules(assertions=[Assertion(check="no_placeholders")]),
            EvalContext(action="draft_reply"),
        )

        assert result.l1_passed is True
        assert result.l2_score == 100
        assert result.l3_triggered is False
        assert result.confidence == pytest.approx(1.0)
        assert result.final_decision == Decision.AUTO_SEND

    @pytest.mark.asyncio
    async def test_placeholder_blocks_and_skips_judge(self):
        judge = StaticJudge(JudgeVerdict(verdict=Verdict.PASS, confidence=0.99))
        evaluator = Evaluator(EvaluationPolicy(l3_trigger=L3Trigger.ALWAYS), judge=judge)

        result = await evaluator.evaluate(
            GOOD_EMAIL + " Regards, {sender_name}.",
            EvalRules(assertions=[Assertion(check="no_placeholders")]),
        )

        assert result.final_decision == Decision.BLOCKED
        assert result.l2_score >= 85
        assert result.l3_triggered is False
        assert judge.calls == 0

    @pytest.mark.asyncio
    async def test_confident_judge_fail_blocks(self):
        judge = StaticJudge(
            JudgeVerdict(verdict=Verdict.FAIL, confidence=0.9, reason="States the wrong price")
        )
        evaluator = Evaluator(judge=judge)

        result = await evaluator.evaluate(GOOD_EMAIL, context=EvalContext(action="send_email"))

        assert result.l3_triggered is True
        assert result.l3_blocked is True
        assert result.l3_reason == "States the wrong price"
        assert result.final_decision == Decision.BLOCKED

    @pytest.mark.asyncio
    async def test_unsure_judge_fail_needs_review(self):
        judge = StaticJudge(JudgeVerdict(verdict=Verdict.FAIL, confidence=0.5))
        evaluator = Evaluator(judge=judge)

        result = await evaluator.evaluate(GOOD_EMAIL, context=EvalContext(action="send_email"))

        assert result.l3_blocked is False
        assert result.final_decision == Decision.NEEDS_REVIEW

    @pytest.mark.asyncio
    async def test_judge_retry_needs_review(self):
        judge = StaticJudge(JudgeVerdict(verdict=Verdict.RETRY, confidence=0.9))
        result = await Evaluator(judge=judge).evaluate(
            GOOD_EMAIL, context=EvalContext(action="send_email")
        )
        assert result.final_decision == Decision.NEEDS_REVIEW

    @pytest.mark.asyncio
    async def test_judge_pass_auto_sends(self):
        judge = StaticJudge(JudgeVerdict(verdict=Verdict.PASS, confidence=0.9))
        result = await Evaluator(judge=judge).evaluate(
            GOOD_EMAIL, context=EvalContext(action="send_email")
        )

        assert result.final_decision == Decision.AUTO_SEND
        assert result.confidence == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_judge_error_needs_review_with_note(self):
        result = await Evaluator(judge=FailingJudge()).evaluate(
            GOOD_EMAIL, context=EvalContext(action="send_email")
        )

        assert result.final_decision == Decision.NEEDS_REVIEW
        assert result.l3_verdict is None
        assert any("provider unavailable" in note for note in result.system_notes)

    @pytest.mark.asyncio
    async def test_judge_timeout_needs_review(self):
        policy = EvaluationPolicy(judge_timeout_seconds=0.01)
        result = await Evaluator(policy, judge=SlowJudge()).evaluate(
            GOOD_EMAIL, context=EvalContext(action="send_email")
        )

        assert result.final_decision == Decision.NEEDS_REVIEW
        assert any("timed out" in note for note in result.system_notes)

    @pytest.mark.asyncio
    async def test_missing_judge_needs_review(self):
        result = await Evaluator().evaluate(GOOD_EMAIL, context=EvalContext(action="send_email"))

        assert result.l3_triggered is True
        assert result.final_decision == Decision.NEEDS_REVIEW
        assert result.system_notes

    @pytest.mark.asyncio
    async def test_ungrounded_judge_claim_flags_hallucination(self):
        judge = StaticJudge(
            JudgeVerdict(
                verdict=Verdict.PASS,
                confidence=0.95,
                claims=[Claim(text="Contract renews in March", grounded=False)],
            )
        )
        result = await Evaluator(judge=judge).evaluate(
            GOOD_EMAIL, context=EvalContext(action="send_email")
        )

        assert result.failure_modes == ["hallucination"]
        assert result.final_decision == Decision.NEEDS_REVIEW

    @pytest.mark.asyncio
    async def test_grounding_failures_flag_hallucination(self):
        judge = StaticJudge(JudgeVerdict(verdict=Verdict.PASS, confidence=0.95))
        grounding = MagicMock()
        grounding.verify = AsyncMock(
            return_value=summarize_grounding([Claim(text="price is $10", grounded=False)])
        )
        evaluator = Evaluator(judge=judge, grounding=grounding)
        ctx = EvalContext(
            action="send_email",
            sources=[GroundingSource(type="tool_result", label="CRM", content="price $12")],
        )

        result = await evaluator.evaluate(GOOD_EMAIL, context=ctx)

        assert result.grounding.grounding_score == 0
        assert "hallucination" in result.failure_modes
        assert result.final_decision == Decision.NEEDS_REVIEW

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "llm_call",
        [
            AsyncMock(side_effect=TimeoutError()),
            AsyncMock(side_effect=RuntimeError("provider unavailable")),
            AsyncMock(return_value=LLMResponse(content="sorry, I cannot")),
        ],
    )
    async def test_grounding_error_never_auto_sends(self, llm_call):
        judge = StaticJudge(JudgeVerdict(verdict=Verdict.PASS, confidence=0.95))
        provider = MagicMock()
        provider.acomplete = llm_call
        evaluator = Evaluator(judge=judge, grounding=GroundingVerifier(provider))
        ctx = EvalContext(
            action="send_email",
            sources=[GroundingSource(type="tool_result", label="CRM", content="Renewal signed")],
        )

        result = await evaluator.evaluate(GOOD_EMAIL, context=ctx)

        assert result.final_decision == Decision.NEEDS_REVIEW
        assert result.grounding is None
        assert any("Grounding verification could not complete" in n for n in result.system_notes)

    @pytest.mark.asyncio
    async def test_rules_override_policy(self):
        result = await Evaluator().evaluate(GOOD_EMAIL, EvalRules(require_approval=True))
        assert result.final_decision == Decision.NEEDS_REVIEW

    @pytest.mark.asyncio
    async def test_low_runtime_confidence_needs_review(self):
        result = await Evaluator().evaluate(GOOD_EMAIL, context=EvalContext(confidence=0.4))

        assert result.confidence == pytest.approx(0.4)
        assert result.final_decision == Decision.NEEDS_REVIEW

    @pytest.mark.asyncio
    async def test_unknown_criterion_raises(self):
        with pytest.raises(EvaluationFailure, match="Unknown L2 criterion"):
            await Evaluator().evaluate(GOOD_EMAIL, EvalRules(l2_weights={"charisma": 1.0}))

    @pytest.mark.asyncio
    async def test_evaluate_and_record_completes_trace(self):
        repository = InMemoryTraceRepository()
        tracer = Tracer(repository, agent_id="agent_1")
        await tracer.start_trace()

        result = await Evaluator().evaluate_and_record(
            tracer,
            GOOD_EMAIL,
            EvalRules(assertions=[Assertion(check="no_placeholders")]),
        )

        trace = repository.get(tracer.trace_id)
        assert result.trace_id == tracer.trace_id
        assert trace.status == TraceStatus.COMPLETED
        assert trace.eval_summary.final_decision == "auto_send"
        assert trace.eval_summary.l2_score == 100
        assert trace.eval_summary.l3_blocked is None
