from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from itertools import combinations
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from taskswarm.config import MonitorConfig
from taskswarm.decisions import Decision, DecisionBroker, DecisionRequest
from taskswarm.errors import ProcessNotFound
from taskswarm.models import (
    AgentRecord,
    EventHook,
    SpawnResult,
    SubtaskContext,
    parse_timestamp,
    utcnow,
)
from taskswarm.specialists import specialist_for
from taskswarm.state import ACTIVE_STATUSES
from taskswarm.timer import PeriodicTimer

if TYPE_CHECKING:
    from taskswarm.spawner import WorkerSupervisor

logger = logging.getLogger(__name__)

HealthState = Literal["healthy", "stuck", "memory_excessive", "dead"]
ConflictKind = Literal["file_conflict", "dependency_deadlock", "resource_contention"]

AGENT_ACTIONS = ["restart", "kill", "debug", "continue"]
CONFLICT_OPTIONS: dict[str, tuple[list[str], str]] = {
    "file_conflict": (["pause", "merge", "restart", "continue"], "pause"),
    "dependency_deadlock": (["restart", "kill", "continue"], "restart"),
    "resource_contention": (["pause", "kill", "continue"], "pause"),
}
ERROR_SUGGESTIONS: list[tuple[re.Pattern[str], list[str]]] = [
    (
        re.compile(r"timeout|timed out"),
        ["Restart the agent with a longer timeout", "Check network connectivity"],
    ),
    (
        re.compile(r"permission denied"),
        ["Check file permissions", "Run with appropriate privileges"],
    ),
    (
        re.compile(r"no such file"),
        ["Verify file paths and dependencies", "Regenerate missing files"],
    ),
    (re.compile(r"memory|out of space"), ["Run taskswarm cleanup", "Increase available memory"]),
    (re.compile(r"git"), ["Fix git repository state", "Reset to clean state"]),
]
FALLBACK_SUGGESTIONS = ["Restart the agent", "Check logs for more details"]

ActivitySource = Callable[[AgentRecord], datetime | None]


def log_activity_time(record: AgentRecord) -> datetime | None:
    """Latest modification time of an agent's log files."""
    if not record.log_path:
        return None
    stdout = Path(record.log_path)
    candidates = [stdout, stdout.with_name(stdout.name.replace(".out.log", ".err.log"))]
    latest: float | None = None
    for path in candidates:
        try:
            mtime = path.stat().st_mtime
        except OSError:
            continue
        latest = mtime if latest is None else max(latest, mtime)
    if latest is None:
        return None
    return datetime.fromtimestamp(latest, tz=UTC)


@dataclass(slots=True)
class HealthAssessment:
    agent_id: str
    pid: int | None
    state: HealthState
    idle_seconds: float = 0.0
    memory_mb: float = 0.0
    detail: str = ""

    @property
    def healthy(self) -> bool:
        return self.state == "healthy"

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "pid": self.pid,
            "state": self.state,
            "idle_seconds": round(self.idle_seconds, 1),
            "memory_mb": round(self.memory_mb, 1),
            "detail": self.detail,
        }


@dataclass(slots=True)
class Conflict:
    kind: ConflictKind
    agent_ids: list[str]
    files: list[str] = field(default_factory=list)
    detail: str = ""

    @property
    def key(self) -> tuple[str, frozenset[str], frozenset[str]]:
        return (self.kind, frozenset(self.agent_ids), frozenset(self.files))


@dataclass(slots=True)
class InterventionOutcome:
    action: str
    agent_ids: list[str]
    timed_out: bool = False
    detail: dict[str, Any] = field(default_factory=dict)
    respawned: list[SpawnResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "agent_ids": list(self.agent_ids),
            "timed_out": self.timed_out,
            "detail": dict(self.detail),
            "respawned": [result.to_dict() for result in self.respawned],
        }


def _oldest_first(records: list[AgentRecord]) -> list[AgentRecord]:
    def started(record: AgentRecord) -> float:
        parsed = parse_timestamp(record.start_time)
        return parsed.timestamp() if parsed else 0.0

    return sorted(records, key=started)


def _tail(path: Path, lines: int = 20) -> list[str]:
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return []
    return content.splitlines()[-lines:]


class InterruptController:
    """Applies operator decisions to unhealthy or conflicting agents."""

    def __init__(
        self,
        supervisor: WorkerSupervisor,
        broker: DecisionBroker,
        config: MonitorConfig,
        *,
        event_hook: EventHook | None = None,
    ) -> None:
        self.supervisor = supervisor
        self.sessions = supervisor.sessions
        self.inspector = supervisor.inspector
        self.cleanup = supervisor.cleanup
        self.broker = broker
        self.config = config
        self.event_hook = event_hook
        self.paused: set[str] = set()

    def _notify(self, event: dict[str, Any]) -> None:
        logger.warning("Intervention: %s", event.get("message", event.get("event")))
        if self.event_hook:
            self.event_hook(event)

    async def _decide(
        self,
        kind: str,
        message: str,
        options: list[str],
        default: str,
        agent_ids: list[str],
        context: dict[str, Any] | None = None,
    ) -> Decision:
        self._notify(
            {
                "event": "intervention_needed",
                "kind": kind,
                "message": message,
                "agent_ids": agent_ids,
                "options": options,
            }
        )
        request = DecisionRequest(
            kind=kind,
            message=message,
            options=options,
            default=default if default in options else options[-1],
            agent_ids=agent_ids,
            context=context or {},
        )
        return await self.broker.ask(request, timeout=self.config.decision_timeout_seconds)

    # single-agent alerts

    async def handle(
        self, assessment: HealthAssessment, record: AgentRecord
    ) -> InterventionOutcome | None:
        if assessment.state == "stuck":
            return await self.handle_stuck(record, assessment)
        if assessment.state == "memory_excessive":
            return await self.handle_memory(record, assessment)
        if assessment.state == "dead":
            return await self.handle_dead(record)
        return None

    async def handle_stuck(
        self, record: AgentRecord, assessment: HealthAssessment
    ) -> InterventionOutcome:
        minutes = int(assessment.idle_seconds // 60)
        decision = await self._decide(
            "stuck",
            f"Agent {record.id} ({record.role}) has shown no activity for {minutes} minutes",
            AGENT_ACTIONS,
            self.config.default_action,
            [record.id],
            assessment.to_dict(),
        )
        return await self.apply(decision, record)

    async def handle_memory(
        self, record: AgentRecord, assessment: HealthAssessment
    ) -> InterventionOutcome:
        decision = await self._decide(
            "memory_excessive",
            f"Agent {record.id} ({record.role}) is using {assessment.memory_mb:.0f}MB "
            f"(limit {self.config.memory_threshold_mb:.0f}MB)",
            AGENT_ACTIONS,
            self.config.default_action,
            [record.id],
            assessment.to_dict(),
        )
        return await self.apply(decision, record)

    async def handle_dead(self, record: AgentRecord) -> InterventionOutcome:
        updated = await asyncio.to_thread(
            self.sessions.update_agent, record.id, expected_status="running", status="stopped"
        )
        if updated is not None:
            self._notify(
                {
                    "event": "agent_exited",
                    "agent_id": record.id,
                    "message": f"Agent {record.id} ({record.role}) exited unexpectedly",
                    "suggestions": [
                        f"taskswarm spawn --role {record.role}",
                        "Check system resources",
                    ],
                }
            )
        return InterventionOutcome("reconciled", [record.id])

    def handle_critical_error(
        self, error: BaseException | str, *, agent: AgentRecord | None = None
    ) -> dict[str, Any]:
        message = str(error)
        lowered = message.lower()
        suggestions = FALLBACK_SUGGESTIONS
        for pattern, hints in ERROR_SUGGESTIONS:
            if pattern.search(lowered):
                suggestions = hints
                break
        report = {
            "event": "agent_failed",
            "agent_id": agent.id if agent else None,
            "role": agent.role if agent else None,
            "message": message,
            "suggestions": list(suggestions),
        }
        self._notify(report)
        return report

    async def apply(self, decision: Decision, record: AgentRecord) -> InterventionOutcome:
        action = decision.action
        logger.info("Applying %s to agent %s", action, record.id)
        if action == "restart":
            result = await self.restart(record)
            return InterventionOutcome(action, [record.id], decision.timed_out, respawned=[result])
        if action == "kill":
            await self.kill(record)
            return InterventionOutcome(action, [record.id], decision.timed_out)
        if action == "debug":
            detail = self.debug(record)
            return InterventionOutcome(action, [record.id], decision.timed_out, detail=detail)
        return InterventionOutcome("continue", [record.id], decision.timed_out)

    # actions

    async def restart(
        self, record: AgentRecord, context: SubtaskContext | None = None
    ) -> SpawnResult:
        """Terminate, release the workspace, then resubmit the same subtask."""
        if record.pid is not None:
            outcome = await asyncio.to_thread(
                self.cleanup.stop_process, record.pid, self.config.kill_grace_seconds
            )
            logger.info("Agent %s stop for restart: %s", record.id, outcome)
        await asyncio.to_thread(self.sessions.update_agent, record.id, status="stopped")
        await asyncio.to_thread(self.supervisor.release_workspace, record)
        subtask = self.supervisor.subtask_for(record)
        if context is not None:
            subtask = replace(subtask, context=context)
        result = await self.supervisor.spawn(subtask)
        if result.status == "denied" and self.supervisor.config.spawn.direct_on_denied:
            result = await self.supervisor.execute_directly(subtask)
        return result

    async def kill(self, record: AgentRecord) -> None:
        if record.pid is not None:
            try:
                await asyncio.to_thread(self.inspector.kill, record.pid)
            except ProcessNotFound:
                logger.info("Agent %s was already gone", record.id)
        await asyncio.to_thread(self.supervisor.release_workspace, record)
        await asyncio.to_thread(self.sessions.update_agent, record.id, status="failed")
        self._notify(
            {
                "event": "agent_killed",
                "agent_id": record.id,
                "message": f"Agent {record.id} ({record.role}) terminated by operator",
            }
        )

    def debug(self, record: AgentRecord) -> dict[str, Any]:
        report: dict[str, Any] = {
            "agent": record.to_dict(),
            "alive": record.pid is not None and self.inspector.is_alive(record.pid),
            "memory_mb": round(self.inspector.memory_mb(record.pid), 1) if record.pid else 0.0,
            "recent_output": _tail(Path(record.log_path)) if record.log_path else [],
            "changed_files": [],
        }
        workspaces = self.supervisor.workspaces
        path = Path(record.workspace_path) if record.workspace_path else None
        if path is not None and workspaces is not None and path.exists():
            report["changed_files"] = workspaces.changed_files(path)
        return report

    def pause(self, record: AgentRecord) -> bool:
        if record.pid is None:
            return False
        try:
            self.inspector.suspend(record.pid)
        except ProcessNotFound:
            return False
        self.paused.add(record.id)
        logger.info("Paused agent %s", record.id)
        return True

    def resume(self, record: AgentRecord) -> bool:
        if record.pid is None or record.id not in self.paused:
            return False
        try:
            self.inspector.resume(record.pid)
        except ProcessNotFound:
            pass
        self.paused.discard(record.id)
        logger.info("Resumed agent %s", record.id)
        return True

    # conflicts

    def detect_conflicts(self, records: list[AgentRecord]) -> list[Conflict]:
        active = [record for record in records if record.status in ACTIVE_STATUSES]
        conflicts: list[Conflict] = []

        workspaces = self.supervisor.workspaces
        if workspaces is not None:
            changed: dict[str, set[str]] = {}
            for record in active:
                if record.workspace_path and Path(record.workspace_path).exists():
                    changed[record.id] = set(workspaces.changed_files(Path(record.workspace_path)))
            for left, right in combinations(sorted(changed), 2):
                overlap = sorted(changed[left] & changed[right])
                if overlap:
                    conflicts.append(
                        Conflict(
                            "file_conflict",
                            [left, right],
                            overlap,
                            f"{left} and {right} both modified {', '.join(overlap)}",
                        )
                    )

        everyone = self.sessions.all_agents()
        for record in active:
            subtask = self.supervisor.subtask_for(record)
            for dependency in subtask.dependencies:
                attempts = [agent for agent in everyone if agent.subtask_id == dependency]
                if attempts and all(agent.status in {"stopped", "failed"} for agent in attempts):
                    conflicts.append(
                        Conflict(
                            "dependency_deadlock",
                            [record.id],
                            detail=f"{subtask.id} depends on {dependency}, which never completed",
                        )
                    )

        limit = self.supervisor.governor.limits.max_memory_mb
        with_pid = [record for record in active if record.pid is not None]
        total = sum(self.inspector.memory_mb(record.pid) for record in with_pid)
        if len(with_pid) > 1 and total >= limit:
            conflicts.append(
                Conflict(
                    "resource_contention",
                    [record.id for record in with_pid],
                    detail=f"agents use {total:.0f}MB of {limit}MB memory",
                )
            )
        return conflicts

    async def handle_conflict(self, conflict: Conflict) -> InterventionOutcome:
        options, default = CONFLICT_OPTIONS[conflict.kind]
        decision = await self._decide(
            conflict.kind,
            conflict.detail or f"{conflict.kind} between {', '.join(conflict.agent_ids)}",
            options,
            default,
            list(conflict.agent_ids),
            {"files": list(conflict.files)},
        )
        records = [
            record
            for record in (self.sessions.find_by_id(agent_id) for agent_id in conflict.agent_ids)
            if record is not None and record.status in ACTIVE_STATUSES
        ]
        ordered = _oldest_first(records)
        outcome = InterventionOutcome(decision.action, list(conflict.agent_ids), decision.timed_out)

        if decision.action == "pause":
            # The oldest agent keeps running so the group can make progress.
            outcome.detail["paused"] = [record.id for record in ordered[1:] if self.pause(record)]
        elif decision.action == "merge":
            outcome.detail["branches"] = [record.branch for record in ordered if record.branch]
            outcome.detail["files"] = list(conflict.files)
            self._notify(
                {
                    "event": "manual_merge_requested",
                    "message": "Resolve overlapping changes by hand: " + ", ".join(conflict.files),
                    "agent_ids": list(conflict.agent_ids),
                    "branches": outcome.detail["branches"],
                }
            )
        elif decision.action == "restart":
            for record in ordered:
                others = [agent.id for agent in ordered if agent.id != record.id]
                context = self._coordinated_context(record, others, conflict)
                outcome.respawned.append(await self.restart(record, context))
        elif decision.action == "kill":
            targets = ordered if conflict.kind == "dependency_deadlock" else ordered[1:]
            for record in targets:
                await self.kill(record)
            outcome.detail["killed"] = [record.id for record in targets]
        return outcome

    def _coordinated_context(
        self, record: AgentRecord, others: list[str], conflict: Conflict
    ) -> SubtaskContext:
        subtask = self.supervisor.subtask_for(record)
        base = subtask.context or specialist_for(subtask.role).context(
            self.supervisor.config.project.type
        )
        note = base.coordination_note
        addition = "Another agent was restarted alongside you"
        if others:
            addition = f"Coordinate with {', '.join(others)}"
        if conflict.files:
            addition += f"; do not both edit {', '.join(conflict.files)}"
        return replace(base, coordination_note=f"{note} {addition}.".strip())


class HealthMonitor:
    """Polls active agents and hands unhealthy ones to the controller.

    Polling only reads until a threshold is crossed. ``cancel`` stops the
    polling loop and nothing else; running workers are left alone.
    """

    def __init__(
        self,
        supervisor: WorkerSupervisor,
        controller: InterruptController,
        config: MonitorConfig,
        *,
        activity_source: ActivitySource = log_activity_time,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.supervisor = supervisor
        self.sessions = supervisor.sessions
        self.inspector = supervisor.inspector
        self.controller = controller
        self.config = config
        self.activity_source = activity_source
        self.clock = clock
        self.timer = PeriodicTimer(
            config.poll_interval_seconds, self.poll_once, name="health-monitor"
        )
        self._acknowledged: dict[str, datetime] = {}
        self._alerted_conflicts: set[tuple[str, frozenset[str], frozenset[str]]] = set()

    def assess(self, record: AgentRecord) -> HealthAssessment:
        if record.pid is None:
            return HealthAssessment(record.id, None, "healthy", detail="executed directly")
        if not self.inspector.is_alive(record.pid):
            return HealthAssessment(record.id, record.pid, "dead", detail="process not found")

        memory = self.inspector.memory_mb(record.pid)
        now = self.clock()
        last = self.activity_source(record) or parse_timestamp(record.start_time) or now
        idle = max(0.0, (now - last).total_seconds())
        if memory > self.config.memory_threshold_mb:
            detail = f"{memory:.0f}MB over {self.config.memory_threshold_mb:.0f}MB"
            return HealthAssessment(
                record.id, record.pid, "memory_excessive", idle, memory, detail
            )
        if idle > self.config.stuck_threshold_seconds:
            return HealthAssessment(
                record.id, record.pid, "stuck", idle, memory, f"idle for {idle:.0f}s"
            )
        return HealthAssessment(record.id, record.pid, "healthy", idle, memory)

    def _suppressed(self, record: AgentRecord) -> bool:
        acknowledged = self._acknowledged.get(record.id)
        if acknowledged is None:
            return False
        if (self.clock() - acknowledged).total_seconds() < self.config.stuck_threshold_seconds:
            return True
        del self._acknowledged[record.id]
        return False

    async def poll_once(self) -> list[HealthAssessment]:
        records = await asyncio.to_thread(self.sessions.active_agents)
        assessments: list[HealthAssessment] = []
        for record in records:
            assessment = self.assess(record)
            assessments.append(assessment)
            if assessment.healthy:
                continue
            if assessment.state != "dead" and self._suppressed(record):
                logger.debug("Alert for %s suppressed after continue", record.id)
                continue
            outcome = await self.controller.handle(assessment, record)
            if outcome is not None and outcome.action == "continue":
                self._acknowledged[record.id] = self.clock()

        if self.config.detect_conflicts:
            live = [
                record
                for record, item in zip(records, assessments, strict=True)
                if item.state != "dead"
            ]
            for conflict in await asyncio.to_thread(self.controller.detect_conflicts, live):
                if conflict.key in self._alerted_conflicts:
                    continue
                self._alerted_conflicts.add(conflict.key)
                await self.controller.handle_conflict(conflict)
        return assessments

    def start(self) -> asyncio.Task[None]:
        logger.info("Health monitor polling every %.0fs", self.config.poll_interval_seconds)
        return self.timer.start()

    def cancel(self) -> None:
        self.timer.cancel()

    async def wait(self) -> None:
        await self.timer.wait()
