from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import TYPE_CHECKING, Any

from taskswarm.errors import CycleDetected
from taskswarm.models import ExecutionPlan, Phase, PlanResult, SpawnResult, Subtask

if TYPE_CHECKING:
    from taskswarm.decomposer import TaskDecomposer
    from taskswarm.spawner import WorkerSupervisor

logger = logging.getLogger(__name__)


def plan(subtasks: Iterable[Subtask], *, strict: bool = False) -> ExecutionPlan:
    """Level a dependency graph into maximally parallel phases.

    Each round takes every remaining subtask whose dependencies were all placed in
    earlier rounds. Whatever cannot be placed (cycles, unknown dependencies) is
    returned as ``unscheduled`` with a ``CycleDetected`` describing it; the phases
    already built stay valid. With ``strict=True`` that error is raised instead.
    """
    pending = list(subtasks)
    order: dict[str, int] = {}
    for index, subtask in enumerate(pending):
        if subtask.id in order:
            raise ValueError(f"Duplicate subtask id: {subtask.id}")
        order[subtask.id] = index

    phases: list[Phase] = []
    placed: set[str] = set()
    while pending:
        ready = [task for task in pending if all(dep in placed for dep in task.dependencies)]
        if not ready:
            break
        ready.sort(key=lambda task: (task.priority, order[task.id]))
        phases.append(Phase(number=len(phases) + 1, subtasks=ready))
        placed.update(task.id for task in ready)
        pending = [task for task in pending if task.id not in placed]

    execution_plan = ExecutionPlan(phases=phases, unscheduled=pending)
    if pending:
        missing = {
            task.id: sorted(dep for dep in task.dependencies if dep not in order)
            for task in pending
            if any(dep not in order for dep in task.dependencies)
        }
        error = CycleDetected([task.id for task in pending], missing=missing, plan=execution_plan)
        execution_plan.cycle = error
        logger.warning("%s", error)
        if strict:
            raise error
    return execution_plan


class PhaseScheduler:
    """Drives an execution plan phase by phase through the worker supervisor."""

    def __init__(
        self,
        supervisor: WorkerSupervisor,
        *,
        decomposer: TaskDecomposer | None = None,
        phase_pause_seconds: float = 2.0,
        direct_on_denied: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.supervisor = supervisor
        self.decomposer = decomposer
        self.phase_pause_seconds = phase_pause_seconds
        self.direct_on_denied = direct_on_denied
        self._sleep = sleep

    def plan(self, subtasks: Iterable[Subtask], *, strict: bool = False) -> ExecutionPlan:
        return plan(subtasks, strict=strict)

    async def execute_phase(self, phase: Phase) -> list[SpawnResult]:
        results = await self.supervisor.spawn_many(phase.subtasks)
        if not self.direct_on_denied:
            return results

        resolved: list[SpawnResult] = []
        for subtask, result in zip(phase.subtasks, results, strict=True):
            if result.status == "denied":
                logger.warning(
                    "Spawn of %s denied (%s); executing directly",
                    subtask.id,
                    "; ".join(result.reasons),
                )
                direct = await self.supervisor.execute_directly(subtask)
                direct.reasons = list(result.reasons)
                resolved.append(direct)
            else:
                resolved.append(result)
        return resolved

    async def execute(self, execution_plan: ExecutionPlan) -> PlanResult:
        outcome = PlanResult(unscheduled=[task.id for task in execution_plan.unscheduled])
        phases = execution_plan.phases
        for index, phase in enumerate(phases):
            logger.info("Phase %d: %s", phase.number, phase.description)
            results = await self.execute_phase(phase)
            outcome.phases_run += 1
            for result in results:
                outcome.results[result.subtask_id] = result
                if result.ok:
                    outcome.succeeded.append(result.subtask_id)
                else:
                    outcome.failed.append(result.subtask_id)

            phase_failed = [result.subtask_id for result in results if not result.ok]
            if phase_failed:
                logger.error(
                    "Phase %d failed for %s; stopping execution",
                    phase.number,
                    ", ".join(phase_failed),
                )
                for later in phases[index + 1 :]:
                    outcome.skipped.extend(later.subtask_ids)
                break

            if index < len(phases) - 1 and self.phase_pause_seconds > 0:
                await self._sleep(self.phase_pause_seconds)
        return outcome

    async def run_task(
        self,
        description: str,
        project_context: dict[str, Any] | None = None,
    ) -> tuple[ExecutionPlan, PlanResult]:
        if self.decomposer is None:
            raise RuntimeError("PhaseScheduler.run_task requires a decomposer.")
        self.supervisor.sessions.reconcile()
        self.supervisor.sessions.ensure(description)
        execution_plan = self.decomposer.decompose(description, project_context)
        result = await self.execute(execution_plan)
        return execution_plan, result
