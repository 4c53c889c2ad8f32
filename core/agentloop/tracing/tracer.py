"""Tracer - best-effort recording of one agent run.

Every write goes through the injected TraceRepository and produces a
TraceOutcome that is logged before it is returned. Storage errors become
TracingFailure outcomes; they are never raised into the run.

Usage:
    tracer = Tracer(repository, agent_id="agent_1", conversation_id="conv_9")
    await tracer.start_trace()

    await tracer.record_llm_call(model="claude-3-5-haiku", tokens_in=120, tokens_out=80,
                                 cost=0.0004, latency_ms=310, step_number=1)
    await tracer.record_step(action="draft_email")

    result = await tracer.run_with_deadline(agent.run(...), timeout_seconds=60)
    await tracer.complete_trace(eval_summary=eval_result.to_summary())
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from agentloop.errors import RunTimeout, TracingFailure
from agentloop.tracing.repository import TraceRepository
from agentloop.tracing.schemas import (
    EvalSummary,
    LLMCallEvent,
    ToolCallEvent,
    Trace,
    TraceStatus,
    TraceStep,
    tier_from_model,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class TraceOutcome:
    """Result of a tracing operation. Logged on creation, never raised."""

    operation: str
    trace_id: str
    ok: bool = True
    changed: bool = True
    error: str | None = None
    budget_exceeded: bool = False

    def log(self) -> None:
        if not self.ok:
            logger.error(f"Tracing {self.operation} failed for trace {self.trace_id}: {self.error}")
        elif not self.changed:
            logger.info(f"Tracing {self.operation} skipped for trace {self.trace_id}: {self.error}")
        else:
            logger.debug(f"Tracing {self.operation} recorded for trace {self.trace_id}")


class Tracer:
    """Records a single run into a TraceRepository.

    One Tracer belongs to one run; only that run writes to its trace.
    """

    def __init__(
        self,
        repository: TraceRepository,
        agent_id: str,
        conversation_id: str = "",
        user_id: str = "",
        workspace_id: str = "",
        max_steps: int = 5,
        trace_id: str | None = None,
    ) -> None:
        self._repository = repository
        self._trace = Trace(
            agent_id=agent_id,
            conversation_id=conversation_id,
            user_id=user_id,
            workspace_id=workspace_id,
            max_steps=max_steps,
        )
        if trace_id:
            self._trace.trace_id = trace_id
        self._started: float | None = None

    @property
    def trace_id(self) -> str:
        return self._trace.trace_id

    @property
    def agent_id(self) -> str:
        return self._trace.agent_id

    async def _write(
        self,
        operation: str,
        fn: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> tuple[TraceOutcome, Any]:
        try:
            value = await asyncio.to_thread(fn, *args, **kwargs)
        except Exception as e:
            failure = TracingFailure(operation, self.trace_id, e)
            outcome = TraceOutcome(
                operation=operation,
                trace_id=self.trace_id,
                ok=False,
                changed=False,
                error=str(failure),
            )
            outcome.log()
            return outcome, None

        outcome = TraceOutcome(operation=operation, trace_id=self.trace_id)
        outcome.log()
        return outcome, value

    async def start_trace(self, user_messages: list[str] | None = None) -> TraceOutcome:
        """Create the trace in ``running`` status."""
        self._started = time.perf_counter()
        trace = self._trace.model_copy(deep=True)
        trace.user_messages = list(user_messages or [])
        outcome, _ = await self._write("start_trace", self._repository.create, trace)
        if outcome.ok:
            logger.info(f"Started trace {self.trace_id} for agent {self.agent_id}")
        return outcome

    async def record_step(
        self,
        action: str,
        llm_call: LLMCallEvent | None = None,
        tool_call: ToolCallEvent | None = None,
        duration_ms: int = 0,
        step_number: int | None = None,
    ) -> TraceOutcome:
        """Append a step. Exceeding ``max_steps`` finalizes the trace as timeout."""
        step = TraceStep(
            step_number=step_number if step_number is not None else 0,
            action=action,
            llm_call=llm_call,
            tool_call=tool_call,
            duration_ms=duration_ms,
        )
        outcome, count = await self._write(
            "record_step", self._repository.append_step, self.trace_id, step
        )
        if outcome.ok and count is not None and count > self._trace.max_steps:
            outcome.budget_exceeded = True
            logger.warning(
                f"Trace {self.trace_id} exceeded step budget ({count} > {self._trace.max_steps})"
            )
            await self.timeout_trace(reason=f"Exceeded step budget of {self._trace.max_steps}")
        return outcome

    async def record_llm_call(
        self,
        model: str,
        tokens_in: int = 0,
        tokens_out: int = 0,
        cost: float = 0.0,
        latency_ms: int = 0,
        step_number: int = 0,
        action: str = "",
        success: bool = True,
        error: str | None = None,
    ) -> TraceOutcome:
        """Append an LLM event; trace token and cost totals are incremented atomically."""
        event = LLMCallEvent(
            step_number=step_number,
            action=action,
            model=model,
            tier=tier_from_model(model),
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost=cost,
            latency_ms=latency_ms,
            success=success,
            error=error,
        )
        outcome, _ = await self._write(
            "record_llm_call", self._repository.append_llm_event, self.trace_id, event
        )
        return outcome

    async def record_tool_call(
        self,
        tool_name: str,
        input: dict[str, Any] | None = None,
        output: Any = None,
        success: bool = True,
        error: str | None = None,
        latency_ms: int = 0,
        step_number: int = 0,
    ) -> TraceOutcome:
        event = ToolCallEvent(
            step_number=step_number,
            tool_name=tool_name,
            input=input or {},
            output=output,
            success=success,
            error=error,
            latency_ms=latency_ms,
        )
        outcome, _ = await self._write(
            "record_tool_call", self._repository.append_tool_event, self.trace_id, event
        )
        return outcome

    async def record_user_message(self, message: str) -> TraceOutcome:
        outcome, _ = await self._write(
            "record_user_message", self._repository.append_user_message, self.trace_id, message
        )
        return outcome

    async def _finalize(
        self,
        operation: str,
        status: TraceStatus,
        latency_ms: int | None = None,
        eval_summary: EvalSummary | None = None,
        error: str | None = None,
    ) -> TraceOutcome:
        if latency_ms is None and self._started is not None:
            latency_ms = int((time.perf_counter() - self._started) * 1000)

        outcome, changed = await self._write(
            operation,
            self._repository.finalize,
            self.trace_id,
            status,
            datetime.now(UTC).isoformat(),
            latency_ms=latency_ms,
            eval_summary=eval_summary,
            error=error,
        )
        if outcome.ok and not changed:
            outcome.changed = False
            outcome.error = "trace already finalized"
            outcome.log()
        return outcome

    async def complete_trace(
        self,
        eval_summary: EvalSummary | None = None,
        latency_ms: int | None = None,
    ) -> TraceOutcome:
        """Finalize as completed and attach the evaluation summary.

        Idempotent: a second call leaves the stored trace untouched.
        """
        outcome = await self._finalize(
            "complete_trace",
            TraceStatus.COMPLETED,
            latency_ms=latency_ms,
            eval_summary=eval_summary,
        )
        if outcome.ok and outcome.changed:
            logger.info(f"Completed trace {self.trace_id}")
        return outcome

    async def fail_trace(self, error: BaseException | str) -> TraceOutcome:
        message = str(error) if isinstance(error, str) else f"{type(error).__name__}: {error}"
        outcome = await self._finalize("fail_trace", TraceStatus.FAILED, error=message)
        if outcome.changed:
            logger.error(f"Failed trace {self.trace_id}: {message}")
        return outcome

    async def timeout_trace(self, reason: str | None = None) -> TraceOutcome:
        outcome = await self._finalize(
            "timeout_trace", TraceStatus.TIMEOUT, error=reason or "Run timed out"
        )
        if outcome.changed:
            logger.warning(f"Trace {self.trace_id} timed out")
        return outcome

    async def cancel_trace(self) -> TraceOutcome:
        outcome = await self._finalize("cancel_trace", TraceStatus.CANCELLED)
        if outcome.changed:
            logger.info(f"Cancelled trace {self.trace_id}")
        return outcome

    async def record_feedback(
        self,
        score: int | None = None,
        comment: str | None = None,
        user_edited: bool = False,
        edit_diff: str | None = None,
    ) -> TraceOutcome:
        """Attach user feedback; allowed after finalization."""
        if score is not None and not 1 <= score <= 5:
            outcome = TraceOutcome(
                operation="record_feedback",
                trace_id=self.trace_id,
                ok=False,
                changed=False,
                error=f"feedback score must be within 1..5, got {score}",
            )
            outcome.log()
            return outcome

        outcome, _ = await self._write(
            "record_feedback",
            self._repository.attach_feedback,
            self.trace_id,
            score=score,
            comment=comment,
            user_edited=user_edited or None,
            edit_diff=edit_diff,
        )
        if outcome.ok and score is not None:
            logger.info(f"Recorded feedback for trace {self.trace_id}: {score}/5")
        return outcome

    async def run_with_deadline(self, run: Awaitable[T], timeout_seconds: float) -> T:
        """Await the run, finalizing the trace as timeout if the deadline passes.

        The trace is finalized even if the run never returns; the run's
        task is cancelled and RunTimeout is raised to the caller.
        """
        try:
            return await asyncio.wait_for(run, timeout=timeout_seconds)
        except TimeoutError:
            await self.timeout_trace(reason=f"Exceeded wall-clock budget of {timeout_seconds}s")
            raise RunTimeout(self.trace_id, timeout_seconds) from None

    def callbacks(
        self,
        tool_executor: Callable[[str, dict[str, Any]], Awaitable[Any]] | None = None,
    ) -> RunCallbacks:
        return RunCallbacks(self, tool_executor)


@dataclass
class StepEvent:
    """What the agent runtime reports when a step finishes."""

    step_number: int
    action: str
    model: str = ""
    tokens_in: int = 0
    tokens_out: int = 0
    cost: float = 0.0
    success: bool = True
    error: str | None = None


@dataclass
class ToolCall:
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)
    step_number: int = 0


class RunCallbacks:
    """Callback surface handed to the agent runtime.

    The runtime calls ``on_step_start`` and ``on_step_complete`` around each
    step, and routes tool invocations through ``on_tool_call`` so they are
    timed and recorded.
    """

    def __init__(
        self,
        tracer: Tracer,
        tool_executor: Callable[[str, dict[str, Any]], Awaitable[Any]] | None = None,
    ) -> None:
        self._tracer = tracer
        self._tool_executor = tool_executor
        self._step_started: dict[int, float] = {}

    async def on_step_start(self, step_number: int, action: str = "") -> None:
        self._step_started[step_number] = time.perf_counter()

    async def on_step_complete(self, event: StepEvent) -> TraceOutcome:
        started = self._step_started.pop(event.step_number, None)
        duration_ms = int((time.perf_counter() - started) * 1000) if started else 0

        llm_call = None
        if event.model:
            llm_call = LLMCallEvent(
                step_number=event.step_number,
                action=event.action,
                model=event.model,
                tier=tier_from_model(event.model),
                tokens_in=event.tokens_in,
                tokens_out=event.tokens_out,
                cost=event.cost,
                latency_ms=duration_ms,
                success=event.success,
                error=event.error,
            )
            await self._tracer.record_llm_call(
                model=event.model,
                tokens_in=event.tokens_in,
                tokens_out=event.tokens_out,
                cost=event.cost,
                latency_ms=duration_ms,
                step_number=event.step_number,
                action=event.action,
                success=event.success,
                error=event.error,
            )

        return await self._tracer.record_step(
            action=event.action,
            llm_call=llm_call,
            duration_ms=duration_ms,
            step_number=event.step_number,
        )

    async def on_tool_call(self, call: ToolCall) -> Any:
        """Execute the tool and record it. Tool errors propagate to the runtime."""
        if self._tool_executor is None:
            raise RuntimeError("No tool executor configured for this run")

        start_time = time.perf_counter()
        try:
            result = await self._tool_executor(call.tool_name, call.input)
        except Exception as e:
            await self._tracer.record_tool_call(
                tool_name=call.tool_name,
                input=call.input,
                success=False,
                error=str(e),
                latency_ms=int((time.perf_counter() - start_time) * 1000),
                step_number=call.step_number,
            )
            raise

        await self._tracer.record_tool_call(
            tool_name=call.tool_name,
            input=call.input,
            output=result,
            success=True,
            latency_ms=int((time.perf_counter() - start_time) * 1000),
            step_number=call.step_number,
        )
        return result
