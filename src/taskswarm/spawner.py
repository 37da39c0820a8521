from __future__ import annotations

import asyncio
import logging
import os
import random
import threading
import uuid
from collections.abc import Awaitable, Callable
from pathlib import Path
from shutil import which
from typing import Any

from taskswarm.backends.worker import WorkerBackend, WorkerProcess, WorkerRequest
from taskswarm.cleanup import CleanupManager
from taskswarm.config import STATE_DIRNAME, SwarmConfig
from taskswarm.errors import ProcessNotFound, SpawnFailed, SwarmError, WorkspaceCreationFailed
from taskswarm.governor import ResourceGovernor
from taskswarm.models import AgentRecord, EventHook, SpawnResult, Subtask, utcnow, utcnow_iso
from taskswarm.process import AGENT_ENV_MARKER, SESSION_ENV_MARKER, ProcessInspector
from taskswarm.review import ReviewReport, review_workspaces
from taskswarm.specialists import PromptEnvironment, sanitize_role, specialist_for
from taskswarm.state import SessionStore
from taskswarm.workspace import Workspace, WorkspaceBackend, is_git_repo

logger = logging.getLogger(__name__)


class WorkerSupervisor:
    """Turns subtasks into running workers.

    ``spawn`` checks admission, creates an isolated workspace, renders the
    role prompt, launches a detached worker and registers it. When the launch
    itself fails the subtask runs to completion in-process instead.
    """

    def __init__(
        self,
        repo_root: Path,
        config: SwarmConfig,
        sessions: SessionStore,
        governor: ResourceGovernor,
        workers: WorkerBackend,
        inspector: ProcessInspector,
        *,
        workspaces: WorkspaceBackend | None = None,
        cleanup: CleanupManager | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.config = config
        self.sessions = sessions
        self.governor = governor
        self.workers = workers
        self.inspector = inspector
        self.workspaces = workspaces
        self.cleanup = cleanup or CleanupManager(
            self.repo_root,
            sessions,
            workspaces,
            inspector,
            config.cleanup,
            kill_grace_seconds=config.monitor.kill_grace_seconds,
        )
        self.event_hook = event_hook
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._inflight: set[str] = set()
        self._subtasks: dict[str, Subtask] = {}
        self._reapers: dict[str, threading.Thread] = {}

    @property
    def state_dir(self) -> Path:
        return self.repo_root / STATE_DIRNAME

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _jitter(self, index: int) -> float:
        low = self.config.spawn.jitter_min_seconds
        high = max(low, self.config.spawn.jitter_max_seconds)
        return sum(self._rng.uniform(low, high) for _ in range(index))

    @staticmethod
    def new_agent_id(role: str) -> str:
        return f"{role}-{utcnow():%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:4]}"

    def _environment(self, working_directory: Path, session_id: str | None) -> PromptEnvironment:
        project = self.config.project
        return PromptEnvironment(
            project_name=project.name,
            technology_stack=list(project.technology_stack),
            test_command=project.test_command,
            code_standards=list(project.code_standards),
            working_directory=working_directory,
            session_id=session_id,
        )

    def build_request(
        self,
        agent_id: str,
        subtask: Subtask,
        working_directory: Path,
        session_id: str | None,
    ) -> WorkerRequest:
        role = sanitize_role(subtask.role)
        profile = specialist_for(role)
        env = self._environment(working_directory, session_id)
        log_dir = self.state_dir / "logs" / role
        worker_env = {
            "TASKSWARM_ROLE": role,
            "TASKSWARM_WORKSPACE": str(working_directory),
            "TASKSWARM_SUBTASK": subtask.id,
            AGENT_ENV_MARKER: agent_id,
        }
        if session_id:
            worker_env[SESSION_ENV_MARKER] = session_id
        return WorkerRequest(
            agent_id=agent_id,
            role=role,
            prompt=profile.render_prompt(subtask, env),
            system_prompt=profile.system_prompt(env),
            working_directory=working_directory,
            stdout_path=log_dir / f"{agent_id}.out.log",
            stderr_path=log_dir / f"{agent_id}.err.log",
            prompt_path=self.cleanup.prompt_file_for(agent_id),
            env=worker_env,
            model=self.config.agents.model or None,
        )

    def _create_workspace(self, key: str) -> Workspace | None:
        if self.workspaces is None or not self.config.spawn.worktree_enabled:
            return None
        return self.workspaces.create_isolated_workspace(key)

    # spawning

    async def spawn(self, subtask: Subtask, *, jitter_index: int = 0) -> SpawnResult:
        if jitter_index > 0:
            await self._sleep(self._jitter(jitter_index))

        decision = self.governor.can_spawn(pending=len(self._inflight))
        if not decision.allowed:
            logger.warning("Spawn of %s denied: %s", subtask.id, "; ".join(decision.reasons))
            self._emit(
                {"event": "spawn_denied", "subtask": subtask.id, "reasons": decision.reasons}
            )
            return SpawnResult(subtask.id, subtask.role, "denied", reasons=list(decision.reasons))

        role = sanitize_role(subtask.role)
        agent_id = self.new_agent_id(role)
        # Admitted but not yet registered; counted as pending by the governor.
        self._inflight.add(agent_id)
        try:
            return await self._spawn_admitted(subtask, role, agent_id)
        finally:
            self._inflight.discard(agent_id)

    async def _spawn_admitted(self, subtask: Subtask, role: str, agent_id: str) -> SpawnResult:
        self._subtasks[subtask.id] = subtask
        session = await asyncio.to_thread(self.sessions.ensure)

        try:
            workspace = await asyncio.to_thread(self._create_workspace, agent_id)
        except WorkspaceCreationFailed as exc:
            logger.error("Workspace for %s could not be created: %s", subtask.id, exc)
            return SpawnResult(subtask.id, role, "failed", error=str(exc))

        working_directory = workspace.path if workspace else self.repo_root
        request = self.build_request(agent_id, subtask, working_directory, session.session_id)
        try:
            process = await asyncio.to_thread(self.workers.launch, request)
        except SpawnFailed as exc:
            logger.warning("%s; executing %s directly", exc, subtask.id)
            return await self._run_direct(subtask, agent_id, request, workspace)

        record = AgentRecord(
            id=agent_id,
            role=role,
            pid=process.pid,
            workspace_path=str(workspace.path) if workspace else None,
            task=subtask.description,
            status="running",
            subtask_id=subtask.id,
            branch=workspace.branch if workspace else None,
            log_path=str(request.stdout_path),
        )
        try:
            await asyncio.to_thread(self.sessions.add_agent, record)
        except (SwarmError, OSError) as exc:
            logger.error("Could not register agent %s: %s", agent_id, exc)
            await asyncio.to_thread(
                self.cleanup.cleanup_failed_operation,
                agent_id,
                workspace_path=workspace.path if workspace else None,
                branch=workspace.branch if workspace else None,
                temp_files=[str(request.prompt_path)],
                pid=process.pid,
            )
            return SpawnResult(subtask.id, role, "failed", error=str(exc))

        self._inflight.discard(agent_id)
        self._start_reaper(record, process)
        logger.info("Spawned %s agent %s (pid %d) for %s", role, agent_id, process.pid, subtask.id)
        self._emit(
            {
                "event": "agent_spawned",
                "agent_id": agent_id,
                "subtask": subtask.id,
                "pid": process.pid,
                "workspace": record.workspace_path,
            }
        )
        return SpawnResult(subtask.id, role, "spawned", record=record)

    async def spawn_many(self, subtasks: list[Subtask]) -> list[SpawnResult]:
        return list(
            await asyncio.gather(
                *(self.spawn(subtask, jitter_index=index) for index, subtask in enumerate(subtasks))
            )
        )

    async def execute_directly(
        self, subtask: Subtask, workspace: Workspace | None = None
    ) -> SpawnResult:
        """Run a subtask to completion in this process, without admission checks."""
        role = sanitize_role(subtask.role)
        agent_id = self.new_agent_id(role)
        self._subtasks[subtask.id] = subtask
        session = await asyncio.to_thread(self.sessions.ensure)
        working_directory = workspace.path if workspace else self.repo_root
        request = self.build_request(agent_id, subtask, working_directory, session.session_id)
        return await self._run_direct(subtask, agent_id, request, workspace)

    async def _run_direct(
        self,
        subtask: Subtask,
        agent_id: str,
        request: WorkerRequest,
        workspace: Workspace | None,
    ) -> SpawnResult:
        record = AgentRecord(
            id=agent_id,
            role=request.role,
            pid=None,
            workspace_path=str(workspace.path) if workspace else None,
            task=subtask.description,
            status="running",
            subtask_id=subtask.id,
            branch=workspace.branch if workspace else None,
            log_path=str(request.stdout_path),
            executed_directly=True,
        )
        await asyncio.to_thread(self.sessions.add_agent, record)
        self._inflight.discard(agent_id)
        self._emit({"event": "direct_execution_start", "agent_id": agent_id, "subtask": subtask.id})

        outcome = await self.workers.run_direct(request)
        status = "completed" if outcome.ok else "failed"
        updated = await asyncio.to_thread(self.sessions.update_agent, agent_id, status=status)
        logger.info("Direct execution of %s finished: %s", subtask.id, status)
        self._emit(
            {
                "event": "direct_execution_end",
                "agent_id": agent_id,
                "subtask": subtask.id,
                "status": status,
            }
        )
        return SpawnResult(
            subtask.id,
            request.role,
            "direct",
            record=updated or record,
            error=outcome.error if not outcome.ok else None,
            output=outcome.output,
        )

    # reaping

    def _start_reaper(self, record: AgentRecord, process: WorkerProcess) -> None:
        thread = threading.Thread(
            target=self._reap,
            args=(record.id, process),
            name=f"reaper-{record.id}",
            daemon=True,
        )
        self._reapers[record.id] = thread
        thread.start()

    def _reap(self, agent_id: str, process: WorkerProcess) -> None:
        try:
            code = process.wait()
        except OSError as exc:
            logger.error("Lost track of agent %s: %s", agent_id, exc)
            return
        status = "completed" if code == 0 else "failed"
        try:
            updated = self.sessions.update_agent(agent_id, expected_status="running", status=status)
        except SwarmError as exc:
            logger.error("Could not record exit of agent %s: %s", agent_id, exc)
            return
        if updated is not None:
            logger.info("Agent %s exited with code %s", agent_id, code)

    def wait_for_workers(self, timeout: float | None = None) -> None:
        for thread in list(self._reapers.values()):
            thread.join(timeout)

    # control

    def stop(self, pid: int) -> bool:
        try:
            self.inspector.terminate(pid)
        except ProcessNotFound:
            logger.info("Process %d already gone", pid)
        except PermissionError as exc:
            logger.error("Failed to stop process %d: %s", pid, exc)
            return False
        self.sessions.update_status(pid, "stopped")
        logger.info("Stopped agent process %d", pid)
        return True

    def stop_all(self) -> int:
        stopped = 0
        for agent in self.sessions.active_agents():
            if agent.pid is not None and self.stop(agent.pid):
                stopped += 1
        return stopped

    def release_workspace(self, record: AgentRecord) -> bool:
        return self.cleanup.release_workspace(record)

    def review_workspaces(self) -> ReviewReport:
        if self.workspaces is None:
            return ReviewReport(generated_at=utcnow_iso())
        return review_workspaces(self.workspaces, self.sessions.all_agents())

    def running_agents(self) -> list[AgentRecord]:
        self.sessions.reconcile()
        return self.sessions.active_agents()

    def subtask_for(self, record: AgentRecord) -> Subtask:
        """The subtask an agent was working on, rebuilt from its record if needed."""
        if record.subtask_id and record.subtask_id in self._subtasks:
            return self._subtasks[record.subtask_id]
        role = sanitize_role(record.role)
        return Subtask(
            id=record.subtask_id or record.id,
            role=role,  # type: ignore[arg-type]
            description=record.task,
            context=specialist_for(role).context(self.config.project.type),
        )

    def preflight(self) -> list[dict[str, Any]]:
        git_found = which("git") is not None
        in_repo = git_found and is_git_repo(self.repo_root)
        worker_ok = self.workers.available()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        return [
            {
                "check": "git",
                "ok": git_found,
                "required": self.config.spawn.worktree_enabled,
                "detail": "git found" if git_found else "git not on PATH",
            },
            {
                "check": "repository",
                "ok": True,
                "required": False,
                "detail": "git worktrees" if in_repo else "directory copies",
            },
            {
                "check": "worker",
                "ok": worker_ok,
                "required": False,
                "detail": "detached workers" if worker_ok else "binary missing; running directly",
            },
            {
                "check": "state_dir",
                "ok": os.access(self.state_dir, os.W_OK),
                "required": True,
                "detail": str(self.state_dir),
            },
        ]
