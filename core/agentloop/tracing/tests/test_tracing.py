"""Unit tests for the tracing module."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from agentloop.errors import RunTimeout
from agentloop.tracing import (
    EvalSummary,
    InMemoryTraceRepository,
    JsonFileTraceRepository,
    ModelTier,
    StepEvent,
    ToolCall,
    Trace,
    TraceStatus,
    TraceStep,
    Tracer,
    tier_from_model,
)


@pytest.fixture
def repository():
    return InMemoryTraceRepository()


@pytest.fixture
def tracer(repository):
    return Tracer(repository, agent_id="agent_1", conversation_id="conv_1", max_steps=3)


class TestModelTier:
    def test_tier_from_model(self):
        assert tier_from_model("claude-3-5-haiku-20241022") == ModelTier.HAIKU
        assert tier_from_model("claude-3-opus-20240229") == ModelTier.OPUS
        assert tier_from_model("claude-3-5-sonnet-20241022") == ModelTier.SONNET
        assert tier_from_model("gpt-4o") == ModelTier.SONNET
        assert tier_from_model("") == ModelTier.SONNET


class TestInMemoryTraceRepository:
    def test_create_and_get_returns_copy(self, repository):
        trace = Trace(agent_id="agent_1")
        repository.create(trace)

        loaded = repository.get(trace.trace_id)
        loaded.agent_id = "mutated"

        assert repository.get(trace.trace_id).agent_id == "agent_1"

    def test_create_duplicate_raises(self, repository):
        trace = Trace(agent_id="agent_1")
        repository.create(trace)
        with pytest.raises(ValueError):
            repository.create(trace)

    def test_finalize_only_once(self, repository):
        trace = Trace(agent_id="agent_1")
        repository.create(trace)

        assert repository.finalize(trace.trace_id, TraceStatus.FAILED, "t1") is True
        assert repository.finalize(trace.trace_id, TraceStatus.COMPLETED, "t2") is False
        assert repository.get(trace.trace_id).status == TraceStatus.FAILED

    def test_finalize_rejects_running_status(self, repository):
        trace = Trace(agent_id="agent_1")
        repository.create(trace)
        with pytest.raises(ValueError):
            repository.finalize(trace.trace_id, TraceStatus.RUNNING, "t1")

    def test_list_for_agent_filters(self, repository):
        old = Trace(
            agent_id="agent_1",
            started_at=(datetime.now(UTC) - timedelta(days=40)).isoformat(),
        )
        recent = Trace(agent_id="agent_1")
        other = Trace(agent_id="agent_2")
        for trace in (old, recent, other):
            repository.create(trace)

        since = datetime.now(UTC) - timedelta(days=30)
        results = repository.list_for_agent("agent_1", since=since)

        assert [t.trace_id for t in results] == [recent.trace_id]

    def test_list_for_agent_status_filter(self, repository):
        done = Trace(agent_id="agent_1")
        running = Trace(agent_id="agent_1")
        repository.create(done)
        repository.create(running)
        repository.finalize(done.trace_id, TraceStatus.COMPLETED, "t1")

        results = repository.list_for_agent("agent_1", statuses=[TraceStatus.COMPLETED])

        assert len(results) == 1
        assert results[0].trace_id == done.trace_id


class TestJsonFileTraceRepository:
    def test_persists_counters(self, tmp_path):
        repository = JsonFileTraceRepository(tmp_path)
        trace = Trace(agent_id="agent_1")
        repository.create(trace)
        repository.increment_counters(trace.trace_id, tokens_in=10, tokens_out=5, cost=0.01)

        reopened = JsonFileTraceRepository(tmp_path)
        loaded = reopened.get(trace.trace_id)

        assert reopened.get_trace_path(trace.trace_id).exists()
        assert loaded.total_tokens == 15
        assert loaded.total_cost == pytest.approx(0.01)

    def test_missing_trace_returns_none(self, tmp_path):
        repository = JsonFileTraceRepository(tmp_path)
        assert repository.get("nope") is None

    def test_corrupt_file_is_skipped(self, tmp_path):
        repository = JsonFileTraceRepository(tmp_path)
        repository.ensure_dirs()
        (tmp_path / "traces" / "broken.json").write_text("{not json", encoding="utf-8")
        repository.create(Trace(agent_id="agent_1"))

        assert repository.get("broken") is None
        assert len(repository.list_for_agent("agent_1")) == 1


class TestTracer:
    @pytest.mark.asyncio
    async def test_start_trace_creates_running_trace(self, tracer, repository):
        outcome = await tracer.start_trace(user_messages=["hello"])

        assert outcome.ok is True
        stored = repository.get(tracer.trace_id)
        assert stored.status == TraceStatus.RUNNING
        assert stored.agent_id == "agent_1"
        assert stored.user_messages == ["hello"]

    @pytest.mark.asyncio
    async def test_record_llm_call_accumulates_totals(self, tracer, repository):
        await tracer.start_trace()
        await tracer.record_llm_call("claude-3-opus", tokens_in=100, tokens_out=50, cost=0.2)
        await tracer.record_llm_call("claude-3-haiku", tokens_in=10, tokens_out=5, cost=0.01)

        stored = repository.get(tracer.trace_id)
        assert stored.total_tokens_in == 110
        assert stored.total_tokens_out == 55
        assert stored.total_cost == pytest.approx(0.21)
        assert [e.tier for e in stored.llm_events] == [ModelTier.OPUS, ModelTier.HAIKU]

    @pytest.mark.asyncio
    async def test_concurrent_llm_calls_do_not_lose_increments(self, tracer, repository):
        await tracer.start_trace()
        await asyncio.gather(
            *[
                tracer.record_llm_call("claude-3-5-sonnet", tokens_in=1, tokens_out=1, cost=0.5)
                for _ in range(20)
            ]
        )

        stored = repository.get(tracer.trace_id)
        assert stored.total_tokens_in == 20
        assert stored.total_cost == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_record_tool_call_counts_outcomes(self, tracer, repository):
        await tracer.start_trace()
        await tracer.record_tool_call("crm_lookup", {"id": 1}, {"name": "Bob"}, success=True)
        await tracer.record_tool_call("send_email", {}, None, success=False, error="smtp")

        stored = repository.get(tracer.trace_id)
        assert stored.tool_successes == 1
        assert stored.tool_failures == 1
        assert stored.tool_events[1].error == "smtp"

    @pytest.mark.asyncio
    async def test_record_step_numbers_steps(self, tracer, repository):
        await tracer.start_trace()
        await tracer.record_step("plan")
        await tracer.record_step("draft")

        stored = repository.get(tracer.trace_id)
        assert [s.step_number for s in stored.steps] == [1, 2]
        assert stored.total_steps == 2

    @pytest.mark.asyncio
    async def test_concurrent_steps_get_distinct_numbers(self, repository):
        tracer = Tracer(repository, agent_id="agent_1", max_steps=50)
        await tracer.start_trace()

        await asyncio.gather(*(tracer.record_step(f"step {i}") for i in range(20)))

        stored = repository.get(tracer.trace_id)
        assert sorted(s.step_number for s in stored.steps) == list(range(1, 21))

    def test_repository_numbers_unnumbered_steps(self, repository):
        trace = Trace(agent_id="agent_1")
        repository.create(trace)
        repository.append_step(trace.trace_id, TraceStep(step_number=4, action="resume"))

        repository.append_step(trace.trace_id, TraceStep(step_number=0, action="next"))

        assert [s.step_number for s in repository.get(trace.trace_id).steps] == [4, 2]

    @pytest.mark.asyncio
    async def test_step_budget_exceeded_finalizes_timeout(self, tracer, repository):
        await tracer.start_trace()
        for _ in range(3):
            outcome = await tracer.record_step("loop")
            assert outcome.budget_exceeded is False

        outcome = await tracer.record_step("loop")

        assert outcome.budget_exceeded is True
        assert repository.get(tracer.trace_id).status == TraceStatus.TIMEOUT

    @pytest.mark.asyncio
    async def test_complete_trace_is_idempotent(self, tracer, repository):
        await tracer.start_trace()
        first = EvalSummary(l1_passed=True, l2_score=90, final_decision="auto_send")
        second = EvalSummary(l1_passed=False, l2_score=10, final_decision="blocked")

        outcome1 = await tracer.complete_trace(eval_summary=first, latency_ms=100)
        stored_after_first = repository.get(tracer.trace_id)
        outcome2 = await tracer.complete_trace(eval_summary=second, latency_ms=999)
        stored_after_second = repository.get(tracer.trace_id)

        assert outcome1.changed is True
        assert outcome2.ok is True
        assert outcome2.changed is False
        assert stored_after_second.status == TraceStatus.COMPLETED
        assert stored_after_second.eval_summary == stored_after_first.eval_summary
        assert stored_after_second.latency_ms == 100
        assert stored_after_second.completed_at == stored_after_first.completed_at

    @pytest.mark.asyncio
    async def test_fail_after_complete_does_not_change_status(self, tracer, repository):
        await tracer.start_trace()
        await tracer.complete_trace()
        outcome = await tracer.fail_trace(RuntimeError("late"))

        assert outcome.changed is False
        assert repository.get(tracer.trace_id).status == TraceStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_fail_trace_records_error(self, tracer, repository):
        await tracer.start_trace()
        await tracer.fail_trace(ValueError("bad input"))

        stored = repository.get(tracer.trace_id)
        assert stored.status == TraceStatus.FAILED
        assert stored.error == "ValueError: bad input"

    @pytest.mark.asyncio
    async def test_cancel_trace(self, tracer, repository):
        await tracer.start_trace()
        await tracer.cancel_trace()
        assert repository.get(tracer.trace_id).status == TraceStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_writes_after_finalization_are_rejected(self, tracer, repository):
        await tracer.start_trace()
        await tracer.complete_trace()

        outcome = await tracer.record_llm_call("claude-3-haiku", tokens_in=5)

        assert outcome.ok is False
        assert repository.get(tracer.trace_id).total_tokens_in == 0

    @pytest.mark.asyncio
    async def test_feedback_allowed_after_finalization(self, tracer, repository):
        await tracer.start_trace()
        await tracer.complete_trace()

        outcome = await tracer.record_feedback(4, "good", user_edited=True, edit_diff="{}")

        assert outcome.ok is True
        stored = repository.get(tracer.trace_id)
        assert stored.feedback_score == 4
        assert stored.user_edited is True

    @pytest.mark.asyncio
    async def test_feedback_out_of_range_is_rejected(self, tracer, repository):
        await tracer.start_trace()
        outcome = await tracer.record_feedback(7)

        assert outcome.ok is False
        assert repository.get(tracer.trace_id).feedback_score is None

    @pytest.mark.asyncio
    async def test_storage_failure_never_raises(self):
        repository = MagicMock()
        repository.create.side_effect = ConnectionError("db down")
        repository.append_llm_event.side_effect = ConnectionError("db down")
        repository.finalize.side_effect = ConnectionError("db down")
        tracer = Tracer(repository, agent_id="agent_1")

        start = await tracer.start_trace()
        call = await tracer.record_llm_call("claude-3-haiku", tokens_in=1)
        complete = await tracer.complete_trace()

        assert start.ok is False
        assert call.ok is False
        assert complete.ok is False
        assert "db down" in complete.error

    @pytest.mark.asyncio
    async def test_run_with_deadline_finalizes_timeout(self, tracer, repository):
        await tracer.start_trace()

        async def never_returns():
            await asyncio.Event().wait()

        with pytest.raises(RunTimeout):
            await tracer.run_with_deadline(never_returns(), timeout_seconds=0.05)

        stored = repository.get(tracer.trace_id)
        assert stored.status == TraceStatus.TIMEOUT
        assert "wall-clock" in stored.error

    @pytest.mark.asyncio
    async def test_run_with_deadline_returns_result(self, tracer):
        await tracer.start_trace()

        async def quick():
            return "done"

        assert await tracer.run_with_deadline(quick(), timeout_seconds=1) == "done"


class TestRunCallbacks:
    @pytest.mark.asyncio
    async def test_step_complete_records_step_and_llm_call(self, tracer, repository):
        await tracer.start_trace()
        callbacks = tracer.callbacks()

        await callbacks.on_step_start(1, "draft")
        await callbacks.on_step_complete(
            StepEvent(step_number=1, action="draft", model="claude-3-haiku", tokens_in=7, cost=0.1)
        )

        stored = repository.get(tracer.trace_id)
        assert stored.steps[0].action == "draft"
        assert stored.steps[0].llm_call.tier == ModelTier.HAIKU
        assert stored.total_tokens_in == 7

    @pytest.mark.asyncio
    async def test_tool_call_success_and_failure(self, tracer, repository):
        await tracer.start_trace()
        executor = AsyncMock(side_effect=[{"ok": True}, RuntimeError("boom")])
        callbacks = tracer.callbacks(executor)

        result = await callbacks.on_tool_call(ToolCall("crm_lookup", {"q": "bob"}, step_number=1))
        with pytest.raises(RuntimeError):
            await callbacks.on_tool_call(ToolCall("crm_lookup", {"q": "al"}, step_number=2))

        assert result == {"ok": True}
        stored = repository.get(tracer.trace_id)
        assert stored.tool_successes == 1
        assert stored.tool_failures == 1
        assert stored.tool_events[1].error == "boom"
