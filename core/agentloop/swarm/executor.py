"""Swarm Executor.

Runs one task template over many inputs with the same agent configuration:

1. tasks are dispatched in batches of ``batch_size`` with asyncio.gather
2. the cancellation flag is checked before each batch, never mid-batch
3. a task failure is recorded on that task and never aborts its siblings
4. the swarm ends FAILED only if every task failed, otherwise COMPLETED
   (a cancelled swarm stays CANCELLED)
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from agentloop.config import LLMSettings, SwarmPolicy
from agentloop.errors import NotFoundError, SwarmStateError
from agentloop.llm import LiteLLMProvider
from agentloop.optimization.schemas import AgentConfig
from agentloop.swarm.repository import SwarmRepository
from agentloop.swarm.schemas import Swarm, SwarmStatus, SwarmTask, TaskStatus

logger = logging.getLogger(__name__)

CANCELLED_REASON = "Swarm cancelled"

TaskRunner = Callable[[AgentConfig, str], Awaitable[str]]

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def render_task(template: str, inputs: dict[str, Any]) -> str:
    """Fill ``{{name}}`` placeholders from ``inputs``; unknown names render empty."""

    def lookup(match: re.Match[str]) -> str:
        value: Any = inputs
        for part in match.group(1).split("."):
            if not isinstance(value, dict) or part not in value:
                return ""
            value = value[part]
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(lookup, template)


class LLMTaskRunner:
    """Runs a rendered task as a single completion with the agent's prompt and model."""

    def __init__(self, settings: LLMSettings | None = None) -> None:
        self._settings = settings or LLMSettings()

    async def __call__(self, agent: AgentConfig, prompt: str) -> str:
        provider = LiteLLMProvider(
            model=agent.model,
            api_key=self._settings.api_key,
            temperature=agent.temperature,
        )
        response = await provider.acomplete(
            messages=[{"role": "user", "content": prompt}],
            system=agent.system_prompt,
            max_tokens=self._settings.max_tokens,
        )
        return response.content


def _now() -> str:
    return datetime.now(UTC).isoformat()


class SwarmExecutor:
    def __init__(
        self,
        repository: SwarmRepository,
        runner: TaskRunner | None = None,
        policy: SwarmPolicy | None = None,
    ) -> None:
        self._repository = repository
        self._runner = runner or LLMTaskRunner()
        self._policy = policy or SwarmPolicy()

    def create_swarm(
        self,
        agent: AgentConfig,
        task_template: str,
        inputs: list[dict[str, Any]],
    ) -> Swarm:
        swarm = Swarm(agent=agent, task_template=task_template)
        tasks = [SwarmTask(swarm_id=swarm.swarm_id, input=dict(i)) for i in inputs]
        self._repository.create(swarm, tasks)
        logger.info(f"Created swarm {swarm.swarm_id} with {len(tasks)} tasks")
        return self.get_swarm(swarm.swarm_id)

    def get_swarm(self, swarm_id: str) -> Swarm:
        swarm = self._repository.get(swarm_id)
        if swarm is None:
            raise NotFoundError("Swarm", swarm_id)
        return swarm

    def list_tasks(self, swarm_id: str, status: TaskStatus | None = None) -> list[SwarmTask]:
        return self._repository.list_tasks(swarm_id, status=status)

    async def execute(self, swarm_id: str) -> Swarm:
        """Run every pending task of a swarm.

        Raises:
            NotFoundError: if the swarm does not exist.
            SwarmStateError: if the swarm is not pending.
        """
        swarm = self.get_swarm(swarm_id)
        if not self._repository.set_status(swarm_id, {SwarmStatus.PENDING}, SwarmStatus.RUNNING):
            raise SwarmStateError(f"Swarm {swarm_id} is {self.get_swarm(swarm_id).status.value}")

        pending = self._repository.list_tasks(swarm_id, status=TaskStatus.PENDING)
        batch_size = max(1, self._policy.batch_size)
        logger.info(f"Executing swarm {swarm_id}: {len(pending)} tasks, batches of {batch_size}")

        for start in range(0, len(pending), batch_size):
            if self.get_swarm(swarm_id).status == SwarmStatus.CANCELLED:
                logger.info(f"Swarm {swarm_id} cancelled, stopping before task {start}")
                break
            batch = pending[start : start + batch_size]
            await asyncio.gather(*(self._run_task(swarm, task) for task in batch))

        final = self.get_swarm(swarm_id)
        if final.status != SwarmStatus.CANCELLED:
            all_failed = final.total_tasks > 0 and final.failed_tasks == final.total_tasks
            target = SwarmStatus.FAILED if all_failed else SwarmStatus.COMPLETED
            self._repository.set_status(
                swarm_id, {SwarmStatus.RUNNING}, target, completed_at=_now()
            )
            final = self.get_swarm(swarm_id)

        logger.info(
            f"Swarm {swarm_id} {final.status.value}: {final.completed_tasks} completed, "
            f"{final.failed_tasks} failed"
        )
        return final

    async def _run_task(self, swarm: Swarm, task: SwarmTask) -> None:
        if not self._repository.start_task(task.task_id, _now()):
            return

        try:
            prompt = render_task(swarm.task_template, task.input)
            run = self._runner(swarm.agent, prompt)
            timeout = self._policy.task_timeout_seconds
            output = await asyncio.wait_for(run, timeout) if timeout else await run
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.warning(f"Swarm task {task.task_id} failed: {error}")
            self._repository.finish_task(task.task_id, TaskStatus.FAILED, _now(), error=error)
            return

        self._repository.finish_task(task.task_id, TaskStatus.COMPLETED, _now(), output=output)

    def cancel_swarm(self, swarm_id: str) -> Swarm:
        """Cancel a pending or running swarm; tasks not yet started are failed.

        Tasks already running in the current batch finish normally.
        """
        self.get_swarm(swarm_id)
        cancelled = self._repository.set_status(
            swarm_id,
            {SwarmStatus.PENDING, SwarmStatus.RUNNING},
            SwarmStatus.CANCELLED,
            completed_at=_now(),
        )
        if not cancelled:
            raise SwarmStateError(f"Swarm {swarm_id} is not running")

        skipped = self._repository.fail_pending(swarm_id, CANCELLED_REASON, _now())
        logger.info(f"Cancelled swarm {swarm_id}, {skipped} pending tasks marked failed")
        return self.get_swarm(swarm_id)
