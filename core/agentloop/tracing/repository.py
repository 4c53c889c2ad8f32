"""Trace repositories.

TraceRepository is the storage interface injected into the Tracer and the
Performance Analyzer. Two implementations are provided:

    InMemoryTraceRepository   # process-local, for tests and single workers
    JsonFileTraceRepository   # {base_path}/traces/{trace_id}.json

Counter updates (tokens, cost, tool outcomes) and finalization happen inside
the repository under its lock, so concurrent step recordings for the same
trace never lose increments.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from agentloop.tracing.schemas import (
    EvalSummary,
    LLMCallEvent,
    ToolCallEvent,
    Trace,
    TraceStatus,
    TraceStep,
)

logger = logging.getLogger(__name__)


class TraceRepository:
    """Interface for trace persistence."""

    def create(self, trace: Trace) -> None:
        raise NotImplementedError

    def get(self, trace_id: str) -> Trace | None:
        raise NotImplementedError

    def append_step(self, trace_id: str, step: TraceStep) -> int:
        """Append a step and return the new step count.

        A step numbered 0 is numbered after the last stored step, atomically.
        """
        raise NotImplementedError

    def append_llm_event(self, trace_id: str, event: LLMCallEvent) -> None:
        """Append an LLM event and add its tokens and cost to the trace totals."""
        raise NotImplementedError

    def append_tool_event(self, trace_id: str, event: ToolCallEvent) -> None:
        """Append a tool event and bump the success or failure counter."""
        raise NotImplementedError

    def append_user_message(self, trace_id: str, message: str) -> None:
        raise NotImplementedError

    def increment_counters(
        self,
        trace_id: str,
        tokens_in: int = 0,
        tokens_out: int = 0,
        cost: float = 0.0,
    ) -> None:
        raise NotImplementedError

    def finalize(
        self,
        trace_id: str,
        status: TraceStatus,
        completed_at: str,
        latency_ms: int | None = None,
        eval_summary: EvalSummary | None = None,
        error: str | None = None,
    ) -> bool:
        """Move a running trace to a terminal status.

        Returns False, without writing, if the trace is already terminal.
        """
        raise NotImplementedError

    def attach_feedback(
        self,
        trace_id: str,
        score: int | None = None,
        comment: str | None = None,
        user_edited: bool | None = None,
        edit_diff: str | None = None,
    ) -> None:
        raise NotImplementedError

    def list_for_agent(
        self,
        agent_id: str,
        since: datetime | None = None,
        statuses: Iterable[TraceStatus] | None = None,
        limit: int | None = None,
    ) -> list[Trace]:
        """Traces for one agent, newest first."""
        raise NotImplementedError

    def list_for_conversation(self, conversation_id: str) -> list[Trace]:
        """Traces of one conversation, oldest first."""
        raise NotImplementedError


class _LockedTraceRepository(TraceRepository):
    """Shared read-modify-write logic; subclasses provide load/store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def _load(self, trace_id: str) -> Trace | None:
        raise NotImplementedError

    def _store(self, trace: Trace) -> None:
        raise NotImplementedError

    def _all(self) -> Iterable[Trace]:
        raise NotImplementedError

    def _require(self, trace_id: str) -> Trace:
        trace = self._load(trace_id)
        if trace is None:
            raise KeyError(f"Trace {trace_id} not found")
        return trace

    def _require_running(self, trace_id: str) -> Trace:
        trace = self._require(trace_id)
        if trace.is_finalized:
            raise ValueError(f"Trace {trace_id} is already {trace.status.value}")
        return trace

    def create(self, trace: Trace) -> None:
        with self._lock:
            if self._load(trace.trace_id) is not None:
                raise ValueError(f"Trace {trace.trace_id} already exists")
            self._store(trace.model_copy(deep=True))

    def get(self, trace_id: str) -> Trace | None:
        with self._lock:
            trace = self._load(trace_id)
            return trace.model_copy(deep=True) if trace else None

    def append_step(self, trace_id: str, step: TraceStep) -> int:
        with self._lock:
            trace = self._require_running(trace_id)
            if step.step_number == 0:
                step = step.model_copy(update={"step_number": len(trace.steps) + 1})
            trace.steps.append(step)
            trace.total_steps = len(trace.steps)
            self._store(trace)
            return trace.total_steps

    def append_llm_event(self, trace_id: str, event: LLMCallEvent) -> None:
        with self._lock:
            trace = self._require_running(trace_id)
            trace.llm_events.append(event)
            trace.total_tokens_in += event.tokens_in
            trace.total_tokens_out += event.tokens_out
            trace.total_cost += event.cost
            self._store(trace)

    def append_tool_event(self, trace_id: str, event: ToolCallEvent) -> None:
        with self._lock:
            trace = self._require_running(trace_id)
            trace.tool_events.append(event)
            if event.success:
                trace.tool_successes += 1
            else:
                trace.tool_failures += 1
            self._store(trace)

    def append_user_message(self, trace_id: str, message: str) -> None:
        with self._lock:
            trace = self._require_running(trace_id)
            trace.user_messages.append(message)
            self._store(trace)

    def increment_counters(
        self,
        trace_id: str,
        tokens_in: int = 0,
        tokens_out: int = 0,
        cost: float = 0.0,
    ) -> None:
        with self._lock:
            trace = self._require_running(trace_id)
            trace.total_tokens_in += tokens_in
            trace.total_tokens_out += tokens_out
            trace.total_cost += cost
            self._store(trace)

    def finalize(
        self,
        trace_id: str,
        status: TraceStatus,
        completed_at: str,
        latency_ms: int | None = None,
        eval_summary: EvalSummary | None = None,
        error: str | None = None,
    ) -> bool:
        if not status.is_terminal:
            raise ValueError(f"Cannot finalize trace with non-terminal status {status}")
        with self._lock:
            trace = self._require(trace_id)
            if trace.is_finalized:
                return False
            trace.status = status
            trace.completed_at = completed_at
            if latency_ms is not None:
                trace.latency_ms = latency_ms
            if eval_summary is not None:
                trace.eval_summary = eval_summary
            if error is not None:
                trace.error = error
            self._store(trace)
            return True

    def attach_feedback(
        self,
        trace_id: str,
        score: int | None = None,
        comment: str | None = None,
        user_edited: bool | None = None,
        edit_diff: str | None = None,
    ) -> None:
        with self._lock:
            trace = self._require(trace_id)
            if score is not None:
                trace.feedback_score = score
            if comment is not None:
                trace.feedback_comment = comment
            if user_edited is not None:
                trace.user_edited = user_edited
            if edit_diff is not None:
                trace.edit_diff = edit_diff
            self._store(trace)

    def list_for_agent(
        self,
        agent_id: str,
        since: datetime | None = None,
        statuses: Iterable[TraceStatus] | None = None,
        limit: int | None = None,
    ) -> list[Trace]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            results = []
            for trace in self._all():
                if trace.agent_id != agent_id:
                    continue
                if since is not None and trace.started_datetime() < since:
                    continue
                if wanted is not None and trace.status not in wanted:
                    continue
                results.append(trace.model_copy(deep=True))

        results.sort(key=lambda t: t.started_at, reverse=True)
        return results[:limit] if limit is not None else results

    def list_for_conversation(self, conversation_id: str) -> list[Trace]:
        with self._lock:
            results = [
                trace.model_copy(deep=True)
                for trace in self._all()
                if trace.conversation_id == conversation_id
            ]
        results.sort(key=lambda t: t.started_at)
        return results


class InMemoryTraceRepository(_LockedTraceRepository):
    """Process-local trace storage."""

    def __init__(self) -> None:
        super().__init__()
        self._traces: dict[str, Trace] = {}

    def _load(self, trace_id: str) -> Trace | None:
        return self._traces.get(trace_id)

    def _store(self, trace: Trace) -> None:
        self._traces[trace.trace_id] = trace

    def _all(self) -> Iterable[Trace]:
        return list(self._traces.values())


class JsonFileTraceRepository(_LockedTraceRepository):
    """Trace storage as one JSON file per trace.

    Storage layout:
        {base_path}/
          traces/
            {trace_id}.json
    """

    def __init__(self, base_path: Path) -> None:
        super().__init__()
        self._base_path = Path(base_path)
        self._traces_dir = self._base_path / "traces"

    def ensure_dirs(self) -> None:
        self._traces_dir.mkdir(parents=True, exist_ok=True)

    def get_trace_path(self, trace_id: str) -> Path:
        return self._traces_dir / f"{trace_id}.json"

    def _load(self, trace_id: str) -> Trace | None:
        path = self.get_trace_path(trace_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return Trace(**data)
        except Exception as e:
            logger.warning(f"Failed to load trace {trace_id}: {e}")
            return None

    def _store(self, trace: Trace) -> None:
        self.ensure_dirs()
        path = self.get_trace_path(trace.trace_id)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(trace.model_dump_json(indent=2), encoding="utf-8")
        tmp_path.replace(path)

    def _all(self) -> Iterable[Trace]:
        self.ensure_dirs()
        traces = []
        for path in self._traces_dir.glob("*.json"):
            try:
                traces.append(Trace(**json.loads(path.read_text(encoding="utf-8"))))
            except Exception as e:
                logger.warning(f"Failed to read trace from {path}: {e}")
                continue
        return traces
