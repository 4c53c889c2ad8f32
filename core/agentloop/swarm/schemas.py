"""Swarm records: one agent configuration fanned out over many task inputs."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from agentloop.optimization.schemas import AgentConfig


def _now() -> str:
    return datetime.now(UTC).isoformat()


class SwarmStatus(StrEnum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (SwarmStatus.COMPLETED, SwarmStatus.FAILED, SwarmStatus.CANCELLED)


class TaskStatus(StrEnum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Swarm(BaseModel):
    swarm_id: str = Field(default_factory=lambda: f"swarm-{uuid4().hex[:8]}")
    agent: AgentConfig
    task_template: str
    status: SwarmStatus = SwarmStatus.PENDING
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    created_at: str = Field(default_factory=_now)
    completed_at: str | None = None


class SwarmTask(BaseModel):
    task_id: str = Field(default_factory=lambda: uuid4().hex[:12])
    swarm_id: str
    input: dict[str, Any] = Field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    output: str | None = None
    error: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
