from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from taskswarm.config import STATE_DIRNAME, CleanupConfig
from taskswarm.errors import ProcessNotFound, SwarmError
from taskswarm.models import AgentRecord
from taskswarm.process import ProcessInspector
from taskswarm.state import ACTIVE_STATUSES, SessionStore
from taskswarm.workspace import WorkspaceBackend

logger = logging.getLogger(__name__)

StepOutcome = Literal["success", "timeout", "failed"]


@dataclass(slots=True)
class CleanupStep:
    name: str
    action: Callable[[], Any]


@dataclass(slots=True)
class StepResult:
    name: str
    outcome: StepOutcome
    detail: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.name,
            "status": self.outcome,
            "detail": self.detail,
            "error": self.error,
        }


@dataclass(slots=True)
class CleanupReport:
    operation: str
    steps: list[StepResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(step.outcome == "success" for step in self.steps)

    def outcome_of(self, name: str) -> StepOutcome | None:
        for step in self.steps:
            if step.name == name:
                return step.outcome
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "ok": self.ok,
            "steps": [step.to_dict() for step in self.steps],
        }


class CleanupManager:
    """Best-effort reclamation of workspaces, branches, temp files and processes.

    Every step runs in its own daemon thread bounded by ``step_timeout_seconds``;
    a step that times out or raises is reported and the remaining steps still run.
    """

    def __init__(
        self,
        repo_root: Path,
        sessions: SessionStore,
        workspaces: WorkspaceBackend | None,
        inspector: ProcessInspector,
        config: CleanupConfig | None = None,
        *,
        kill_grace_seconds: float = 2.0,
    ) -> None:
        self.repo_root = repo_root
        self.sessions = sessions
        self.workspaces = workspaces
        self.inspector = inspector
        self.config = config or CleanupConfig()
        self.kill_grace_seconds = kill_grace_seconds

    def run_steps(self, steps: list[CleanupStep], *, operation: str = "cleanup") -> CleanupReport:
        report = CleanupReport(operation=operation)
        timeout = self.config.step_timeout_seconds
        for step in steps:
            box: dict[str, Any] = {}

            def _target(step: CleanupStep = step, box: dict[str, Any] = box) -> None:
                try:
                    box["value"] = step.action()
                except Exception as exc:  # reported as a failed step
                    box["error"] = exc

            worker = threading.Thread(target=_target, name=f"cleanup-{step.name}", daemon=True)
            worker.start()
            worker.join(timeout)
            if worker.is_alive():
                logger.warning("Cleanup step %s timed out after %.0fs", step.name, timeout)
                report.steps.append(
                    StepResult(step.name, "timeout", error=f"timed out after {timeout:.0f}s")
                )
            elif "error" in box:
                logger.error("Cleanup step %s failed: %s", step.name, box["error"])
                report.steps.append(StepResult(step.name, "failed", error=str(box["error"])))
            else:
                report.steps.append(StepResult(step.name, "success", detail=box.get("value")))
        return report

    # individual actions

    def release_workspace(self, record: AgentRecord) -> bool:
        """Remove an agent's workspace. Only the first caller per record does the work."""
        if not record.workspace_path or self.workspaces is None:
            return False
        if not self.sessions.claim_workspace_release(record.id):
            return False
        try:
            self.workspaces.remove_workspace(Path(record.workspace_path))
        except BaseException:
            # Hand the claim back so a later sweep retries the removal.
            self.sessions.update_agent(record.id, workspace_released=False)
            raise
        logger.info("Released workspace %s of agent %s", record.workspace_path, record.id)
        return True

    def stop_process(self, pid: int, grace_seconds: float | None = None) -> str:
        grace = self.kill_grace_seconds if grace_seconds is None else grace_seconds
        try:
            self.inspector.terminate(pid)
        except ProcessNotFound:
            return "not_found"
        if self.inspector.wait_gone(pid, grace):
            return "terminated"
        try:
            self.inspector.kill(pid)
        except ProcessNotFound:
            return "terminated"
        logger.info("Force killed process %d", pid)
        return "force_killed"

    def remove_temp_files(self, patterns: list[str]) -> list[str]:
        removed: list[str] = []
        for pattern in patterns:
            candidate = Path(pattern)
            if candidate.is_absolute():
                matches = [candidate] if candidate.exists() else []
            else:
                matches = sorted(self.repo_root.glob(pattern))
            for path in matches:
                if path.is_file():
                    path.unlink(missing_ok=True)
                    removed.append(str(path))
        return removed

    def _remove_path(self, path: Path) -> str:
        if self.workspaces is None:
            raise SwarmError("No workspace backend configured.")
        if not path.exists():
            self.workspaces.remove_workspace(path)
            return "not_found"
        self.workspaces.remove_workspace(path)
        return "removed"

    def _delete_branch(self, name: str) -> str:
        if self.workspaces is None:
            raise SwarmError("No workspace backend configured.")
        if name not in self.workspaces.list_branches():
            return "not_found"
        self.workspaces.delete_branch(name)
        return "deleted"

    def _sweep_temp_files(self) -> list[str]:
        # Session writes stage their temp file in the state dir.
        with self.sessions.locked():
            return self.remove_temp_files(self.config.temp_patterns)

    # entry points

    def cleanup_failed_operation(
        self,
        operation_id: str,
        *,
        workspace_path: Path | None = None,
        branch: str | None = None,
        temp_files: list[str] | None = None,
        pid: int | None = None,
    ) -> CleanupReport:
        logger.info("Cleaning up failed operation %s", operation_id)
        steps: list[CleanupStep] = []
        if pid is not None:
            steps.append(CleanupStep("process", lambda: self.stop_process(pid)))
        if workspace_path is not None:
            steps.append(CleanupStep("workspace", lambda: self._remove_path(Path(workspace_path))))
        if branch:
            steps.append(CleanupStep("branch", lambda: self._delete_branch(branch)))
        if temp_files:
            steps.append(CleanupStep("temp_files", lambda: self.remove_temp_files(temp_files)))
        return self.run_steps(steps, operation=operation_id)

    def prompt_file_for(self, agent_id: str) -> Path:
        return self.repo_root / STATE_DIRNAME / "prompts" / f"{agent_id}.md"

    def cleanup_agent(self, record: AgentRecord) -> CleanupReport:
        steps: list[CleanupStep] = []
        if record.pid is not None and self.inspector.is_alive(record.pid):
            steps.append(CleanupStep("process", lambda: self.stop_process(record.pid)))
        if record.workspace_path and not record.workspace_released:
            steps.append(CleanupStep("workspace", lambda: self.release_workspace(record)))
        prompt_file = self.prompt_file_for(record.id)
        steps.append(
            CleanupStep("prompt_file", lambda: self.remove_temp_files([str(prompt_file)]))
        )
        return self.run_steps(steps, operation=f"agent-{record.id}")

    def sweep(self) -> CleanupReport:
        """Reclaim everything stale: finished workspaces, orphan worktrees and processes."""
        agents = self.sessions.all_agents()
        active = [agent for agent in agents if agent.status in ACTIVE_STATUSES]
        active_ids = {agent.id for agent in active}
        active_paths = {
            str(Path(agent.workspace_path).resolve()) for agent in active if agent.workspace_path
        }
        kept_branches = {
            agent.branch
            for agent in agents
            if agent.branch and (agent.status in ACTIVE_STATUSES or agent.status == "completed")
        }

        steps: list[CleanupStep] = []
        for agent in agents:
            if agent.finished and agent.workspace_path and not agent.workspace_released:
                steps.append(
                    CleanupStep(
                        f"workspace:{agent.id}",
                        lambda agent=agent: self.release_workspace(agent),
                    )
                )
        if self.workspaces is not None:
            released = {
                str(Path(agent.workspace_path).resolve())
                for agent in agents
                if agent.finished and agent.workspace_path
            }
            for path in self.workspaces.list_workspaces():
                resolved = str(path.resolve())
                if resolved in active_paths or resolved in released:
                    continue
                steps.append(
                    CleanupStep(f"worktree:{path.name}", lambda path=path: self._remove_path(path))
                )
            for branch in self.workspaces.list_branches():
                if branch in kept_branches:
                    continue
                steps.append(
                    CleanupStep(
                        f"branch:{branch}", lambda branch=branch: self._delete_branch(branch)
                    )
                )
        session = self.sessions.current()
        session_id = session.session_id if session else None
        for proc in self.inspector.find_agent_processes():
            if proc.agent_id in active_ids or not proc.belongs_to(session_id, self.repo_root):
                continue
            steps.append(
                CleanupStep(f"process:{proc.pid}", lambda pid=proc.pid: self.stop_process(pid))
            )
        steps.append(CleanupStep("temp_files", self._sweep_temp_files))
        return self.run_steps(steps, operation="sweep")

    def archive_session(self, *, force: bool = False) -> Path | None:
        """Archive the session document, then delete it. Refuses while agents run."""
        active = self.sessions.active_agents()
        if active and not force:
            raise SwarmError(
                f"{len(active)} agents still active; stop them or pass force to archive."
            )
        return self.sessions.cleanup()
