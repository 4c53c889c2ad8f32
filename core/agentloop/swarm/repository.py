"""Swarm storage.

Task completion and the swarm's completed/failed counters change together
under one lock, so the counters always match the task rows.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable

from agentloop.errors import NotFoundError
from agentloop.swarm.schemas import Swarm, SwarmStatus, SwarmTask, TaskStatus


class SwarmRepository:
    """Interface for swarm and task storage."""

    def create(self, swarm: Swarm, tasks: list[SwarmTask]) -> None:
        raise NotImplementedError

    def get(self, swarm_id: str) -> Swarm | None:
        raise NotImplementedError

    def list_tasks(self, swarm_id: str, status: TaskStatus | None = None) -> list[SwarmTask]:
        raise NotImplementedError

    def set_status(
        self,
        swarm_id: str,
        expected: Iterable[SwarmStatus],
        target: SwarmStatus,
        completed_at: str | None = None,
    ) -> bool:
        """Move the swarm to ``target`` if its status is in ``expected``."""
        raise NotImplementedError

    def start_task(self, task_id: str, started_at: str) -> bool:
        """Mark a pending task running; False if it is no longer pending."""
        raise NotImplementedError

    def finish_task(
        self,
        task_id: str,
        status: TaskStatus,
        completed_at: str,
        output: str | None = None,
        error: str | None = None,
    ) -> None:
        """Record a task result and bump the swarm's matching counter."""
        raise NotImplementedError

    def fail_pending(self, swarm_id: str, error: str, completed_at: str) -> int:
        """Fail every still-pending task of a swarm; returns how many."""
        raise NotImplementedError


class InMemorySwarmRepository(SwarmRepository):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._swarms: dict[str, Swarm] = {}
        self._tasks: dict[str, SwarmTask] = {}

    def _require(self, swarm_id: str) -> Swarm:
        swarm = self._swarms.get(swarm_id)
        if swarm is None:
            raise NotFoundError("Swarm", swarm_id)
        return swarm

    def _require_task(self, task_id: str) -> SwarmTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError("Swarm task", task_id)
        return task

    def create(self, swarm: Swarm, tasks: list[SwarmTask]) -> None:
        with self._lock:
            if swarm.swarm_id in self._swarms:
                raise ValueError(f"Swarm {swarm.swarm_id} already exists")
            stored = swarm.model_copy(update={"total_tasks": len(tasks)}, deep=True)
            self._swarms[swarm.swarm_id] = stored
            for task in tasks:
                self._tasks[task.task_id] = task.model_copy(deep=True)

    def get(self, swarm_id: str) -> Swarm | None:
        with self._lock:
            swarm = self._swarms.get(swarm_id)
            return swarm.model_copy(deep=True) if swarm else None

    def list_tasks(self, swarm_id: str, status: TaskStatus | None = None) -> list[SwarmTask]:
        with self._lock:
            return [
                t.model_copy(deep=True)
                for t in self._tasks.values()
                if t.swarm_id == swarm_id and (status is None or t.status == status)
            ]

    def set_status(
        self,
        swarm_id: str,
        expected: Iterable[SwarmStatus],
        target: SwarmStatus,
        completed_at: str | None = None,
    ) -> bool:
        with self._lock:
            swarm = self._require(swarm_id)
            if swarm.status not in set(expected):
                return False
            swarm.status = target
            if completed_at is not None:
                swarm.completed_at = completed_at
            return True

    def start_task(self, task_id: str, started_at: str) -> bool:
        with self._lock:
            task = self._require_task(task_id)
            if task.status != TaskStatus.PENDING:
                return False
            task.status = TaskStatus.RUNNING
            task.started_at = started_at
            return True

    def finish_task(
        self,
        task_id: str,
        status: TaskStatus,
        completed_at: str,
        output: str | None = None,
        error: str | None = None,
    ) -> None:
        if status not in (TaskStatus.COMPLETED, TaskStatus.FAILED):
            raise ValueError("finish_task() requires COMPLETED or FAILED")
        with self._lock:
            task = self._require_task(task_id)
            swarm = self._require(task.swarm_id)
            task.status = status
            task.completed_at = completed_at
            task.output = output
            task.error = error
            if status == TaskStatus.COMPLETED:
                swarm.completed_tasks += 1
            else:
                swarm.failed_tasks += 1

    def fail_pending(self, swarm_id: str, error: str, completed_at: str) -> int:
        with self._lock:
            swarm = self._require(swarm_id)
            count = 0
            for task in self._tasks.values():
                if task.swarm_id == swarm_id and task.status == TaskStatus.PENDING:
                    task.status = TaskStatus.FAILED
                    task.error = error
                    task.completed_at = completed_at
                    count += 1
            swarm.failed_tasks += count
            return count
