from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from taskswarm.errors import CycleDetected

Role = Literal["backend", "frontend", "qa", "ux", "general"]
AgentStatus = Literal["starting", "running", "stopped", "completed", "failed"]
SessionStatus = Literal["active", "completed"]
SpawnStatus = Literal["spawned", "direct", "denied", "failed"]

ROLES: tuple[str, ...] = ("backend", "frontend", "qa", "ux", "general")
FINISHED_STATUSES = frozenset({"stopped", "completed", "failed"})

EventHook = Callable[[dict[str, Any]], None]


def utcnow() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


def utcnow_iso() -> str:
    return utcnow().isoformat()


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(slots=True)
class SubtaskContext:
    role_focus: str
    responsibilities: list[str] = field(default_factory=list)
    best_practices: list[str] = field(default_factory=list)
    coordination_note: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "role_focus": self.role_focus,
            "responsibilities": list(self.responsibilities),
            "best_practices": list(self.best_practices),
            "coordination_note": self.coordination_note,
        }


@dataclass(slots=True)
class Subtask:
    id: str
    role: Role
    description: str
    dependencies: list[str] = field(default_factory=list)
    priority: int = 1
    context: SubtaskContext | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "description": self.description,
            "dependencies": list(self.dependencies),
            "priority": self.priority,
            "context": self.context.to_dict() if self.context else None,
        }


PHASE_DESCRIPTIONS: dict[frozenset[str], str] = {
    frozenset({"backend"}): "Backend Development Phase",
    frozenset({"frontend"}): "Frontend Development Phase",
    frozenset({"qa"}): "Quality Assurance Phase",
    frozenset({"backend", "frontend"}): "Parallel Development Phase",
}


@dataclass(slots=True)
class Phase:
    number: int
    subtasks: list[Subtask] = field(default_factory=list)

    @property
    def description(self) -> str:
        roles = frozenset(subtask.role for subtask in self.subtasks)
        return PHASE_DESCRIPTIONS.get(roles, "Integration & Coordination Phase")

    @property
    def subtask_ids(self) -> list[str]:
        return [subtask.id for subtask in self.subtasks]

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase_number": self.number,
            "description": self.description,
            "tasks": [subtask.to_dict() for subtask in self.subtasks],
        }


@dataclass(slots=True)
class ExecutionPlan:
    phases: list[Phase] = field(default_factory=list)
    unscheduled: list[Subtask] = field(default_factory=list)
    cycle: CycleDetected | None = None
    task_type: str | None = None

    @property
    def complete(self) -> bool:
        return not self.unscheduled

    @property
    def total_tasks(self) -> int:
        return sum(len(phase.subtasks) for phase in self.phases) + len(self.unscheduled)

    def phase_of(self, subtask_id: str) -> int | None:
        for phase in self.phases:
            if subtask_id in phase.subtask_ids:
                return phase.number
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_type": self.task_type,
            "total_tasks": self.total_tasks,
            "phases": [phase.to_dict() for phase in self.phases],
            "unscheduled": [subtask.id for subtask in self.unscheduled],
            "cycle": str(self.cycle) if self.cycle else None,
        }


@dataclass(slots=True)
class AgentRecord:
    id: str
    role: str
    pid: int | None
    workspace_path: str | None
    task: str
    status: AgentStatus = "starting"
    start_time: str = field(default_factory=utcnow_iso)
    completion_time: str | None = None
    subtask_id: str | None = None
    branch: str | None = None
    log_path: str | None = None
    executed_directly: bool = False
    workspace_released: bool = False

    @property
    def finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "pid": self.pid,
            "workspace_path": self.workspace_path,
            "task": self.task,
            "start_time": self.start_time,
            "status": self.status,
            "completion_time": self.completion_time,
            "subtask_id": self.subtask_id,
            "branch": self.branch,
            "log_path": self.log_path,
            "executed_directly": self.executed_directly,
            "workspace_released": self.workspace_released,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AgentRecord:
        pid = payload.get("pid")
        return cls(
            id=str(payload.get("id") or f"{payload.get('role', 'agent')}-{pid}"),
            role=str(payload.get("role", "general")),
            pid=int(pid) if pid is not None else None,
            workspace_path=payload.get("workspace_path"),
            task=str(payload.get("task") or ""),
            status=payload.get("status", "running"),
            start_time=str(payload.get("start_time") or utcnow_iso()),
            completion_time=payload.get("completion_time"),
            subtask_id=payload.get("subtask_id"),
            branch=payload.get("branch"),
            log_path=payload.get("log_path"),
            executed_directly=bool(payload.get("executed_directly", False)),
            workspace_released=bool(payload.get("workspace_released", False)),
        )


@dataclass(slots=True)
class Session:
    session_id: str
    start_time: str
    task_description: str | None = None
    status: SessionStatus = "active"
    agents: list[AgentRecord] = field(default_factory=list)
    end_time: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "session_id": self.session_id,
            "start_time": self.start_time,
            "task_description": self.task_description,
            "status": self.status,
            "agents": [agent.to_dict() for agent in self.agents],
        }
        if self.end_time:
            payload["end_time"] = self.end_time
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Session:
        agents = payload.get("agents", [])
        if not isinstance(agents, list):
            raise ValueError("'agents' must be a list")
        return cls(
            session_id=str(payload["session_id"]),
            start_time=str(payload.get("start_time") or utcnow_iso()),
            task_description=payload.get("task_description"),
            status=payload.get("status", "active"),
            agents=[AgentRecord.from_dict(item) for item in agents if isinstance(item, dict)],
            end_time=payload.get("end_time"),
        )


@dataclass(slots=True)
class ResourceSnapshot:
    active_agents: int
    max_agents: int
    memory_usage_mb: float
    disk_usage_mb: float
    system_load: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "active_agents": self.active_agents,
            "max_agents": self.max_agents,
            "memory_usage_mb": round(self.memory_usage_mb, 1),
            "disk_usage_mb": round(self.disk_usage_mb, 1),
            "system_load": round(self.system_load, 2),
        }


@dataclass(slots=True)
class AdmissionDecision:
    allowed: bool
    reasons: list[str] = field(default_factory=list)

    @property
    def categories(self) -> set[str]:
        return {reason.split(":", 1)[0] for reason in self.reasons}


@dataclass(slots=True)
class SpawnResult:
    subtask_id: str
    role: str
    status: SpawnStatus
    record: AgentRecord | None = None
    reasons: list[str] = field(default_factory=list)
    error: str | None = None
    output: str = ""

    @property
    def ok(self) -> bool:
        if self.status == "spawned":
            return True
        if self.status == "direct":
            return self.error is None
        return False

    @property
    def executed_directly(self) -> bool:
        return self.status == "direct"

    def to_dict(self) -> dict[str, Any]:
        return {
            "subtask_id": self.subtask_id,
            "role": self.role,
            "status": self.status,
            "ok": self.ok,
            "executed_directly": self.executed_directly,
            "pid": self.record.pid if self.record else None,
            "workspace_path": self.record.workspace_path if self.record else None,
            "reasons": list(self.reasons),
            "error": self.error,
        }


@dataclass(slots=True)
class PlanResult:
    phases_run: int = 0
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    results: dict[str, SpawnResult] = field(default_factory=dict)
    unscheduled: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped and not self.unscheduled

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "phases_run": self.phases_run,
            "succeeded": list(self.succeeded),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
            "unscheduled": list(self.unscheduled),
            "results": {key: value.to_dict() for key, value in self.results.items()},
        }
