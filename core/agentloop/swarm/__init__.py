"""Bounded-concurrency fan-out of one agent configuration over many inputs."""

from agentloop.swarm.executor import (
    CANCELLED_REASON,
    LLMTaskRunner,
    SwarmExecutor,
    TaskRunner,
    render_task,
)
from agentloop.swarm.repository import InMemorySwarmRepository, SwarmRepository
from agentloop.swarm.schemas import Swarm, SwarmStatus, SwarmTask, TaskStatus

__all__ = [
    "CANCELLED_REASON",
    "InMemorySwarmRepository",
    "LLMTaskRunner",
    "Swarm",
    "SwarmExecutor",
    "SwarmRepository",
    "SwarmStatus",
    "SwarmTask",
    "TaskRunner",
    "TaskStatus",
    "render_task",
]
