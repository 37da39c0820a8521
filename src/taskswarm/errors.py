from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskswarm.models import ExecutionPlan


class SwarmError(RuntimeError):
    """Base class for orchestration failures."""


class AdmissionDenied(SwarmError):
    """Raised when resource limits refuse a new worker."""

    def __init__(self, reasons: list[str]) -> None:
        super().__init__("Spawn denied: " + "; ".join(reasons))
        self.reasons = list(reasons)


class WorkspaceCreationFailed(SwarmError):
    """Raised when an isolated workspace cannot be created."""


class SpawnFailed(SwarmError):
    """Raised when a detached worker process cannot be launched."""


class ProcessNotFound(SwarmError):
    """Raised when a signalled process no longer exists."""

    def __init__(self, pid: int) -> None:
        super().__init__(f"Process not found: {pid}")
        self.pid = pid


class DecisionTimeout(SwarmError):
    """Raised when no operator answered within the decision window."""


class CycleDetected(SwarmError):
    """Raised when part of a dependency graph cannot be scheduled."""

    def __init__(
        self,
        remaining: list[str],
        *,
        missing: dict[str, list[str]] | None = None,
        plan: ExecutionPlan | None = None,
    ) -> None:
        message = "Unschedulable subtasks: " + ", ".join(remaining)
        if missing:
            details = ", ".join(
                f"{task_id} -> {'/'.join(deps)}" for task_id, deps in sorted(missing.items())
            )
            message += f" (unknown dependencies: {details})"
        super().__init__(message)
        self.remaining = list(remaining)
        self.missing = dict(missing or {})
        self.plan = plan


class SessionCorrupt(SwarmError):
    """Raised when the session document cannot be parsed."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Session document {path} is corrupt: {reason}")
        self.path = path
        self.reason = reason
