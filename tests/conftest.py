import itertools
import random
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from taskswarm.backends.worker import DirectRunResult, WorkerBackend, WorkerRequest
from taskswarm.config import SwarmConfig
from taskswarm.errors import ProcessNotFound, SpawnFailed, WorkspaceCreationFailed
from taskswarm.governor import ResourceGovernor
from taskswarm.process import AgentProcess, ProcessInspector
from taskswarm.spawner import WorkerSupervisor
from taskswarm.state import SessionStore
from taskswarm.workspace import Workspace, WorkspaceBackend


class FakeInspector(ProcessInspector):
    def __init__(self) -> None:
        self.alive: set[int] = set()
        self.memory: dict[int, float] = {}
        self.load = 0.0
        self.cpus = 4
        self.create_times: dict[int, float] = {}
        self.disk = 0.0
        self.agent_processes: list[AgentProcess] = []
        self.denied: set[int] = set()
        self.survives_terminate: set[int] = set()
        self.terminated: list[int] = []
        self.killed: list[int] = []
        self.suspended: list[int] = []
        self.resumed: list[int] = []

    def _require(self, pid: int) -> None:
        if pid in self.denied:
            raise PermissionError(f"Not permitted to signal process {pid}")
        if pid not in self.alive:
            raise ProcessNotFound(pid)

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def memory_mb(self, pid: int) -> float:
        return self.memory.get(pid, 0.0)

    def terminate(self, pid: int) -> None:
        self._require(pid)
        self.terminated.append(pid)
        if pid not in self.survives_terminate:
            self.alive.discard(pid)

    def kill(self, pid: int) -> None:
        self._require(pid)
        self.killed.append(pid)
        self.alive.discard(pid)

    def suspend(self, pid: int) -> None:
        self._require(pid)
        self.suspended.append(pid)

    def resume(self, pid: int) -> None:
        self._require(pid)
        self.resumed.append(pid)

    def create_time(self, pid: int) -> float | None:
        return self.create_times.get(pid)

    def load_average(self) -> float:
        return self.load

    def cpu_count(self) -> int:
        return self.cpus

    def disk_usage_mb(self, path: Path) -> float:
        return self.disk

    def find_agent_processes(self) -> list[AgentProcess]:
        return list(self.agent_processes)


class FakeProcess:
    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self._done = threading.Event()

    def wait(self, timeout: float | None = None) -> int:
        self._done.wait(timeout)
        return self.returncode if self.returncode is not None else -1

    def finish(self, code: int = 0) -> None:
        self.returncode = code
        self._done.set()


class FakeWorkerBackend(WorkerBackend):
    def __init__(self, inspector: FakeInspector) -> None:
        self.inspector = inspector
        self.fail_launch = False
        self.direct_ok = True
        self.launches: list[WorkerRequest] = []
        self.processes: list[FakeProcess] = []
        self.direct_runs: list[WorkerRequest] = []
        self._pids = itertools.count(4000)

    def launch(self, request: WorkerRequest) -> FakeProcess:
        if self.fail_launch:
            raise SpawnFailed("claude binary not found")
        process = FakeProcess(next(self._pids))
        self.inspector.alive.add(process.pid)
        self.launches.append(request)
        self.processes.append(process)
        return process

    async def run_direct(self, request: WorkerRequest) -> DirectRunResult:
        self.direct_runs.append(request)
        if self.direct_ok:
            return DirectRunResult(ok=True, output=f"done: {request.agent_id}")
        return DirectRunResult(ok=False, error="backend exploded")


class FakeWorkspaceBackend(WorkspaceBackend):
    def __init__(self, repo_root: Path) -> None:
        super().__init__(repo_root)
        self.fail = False
        self.fail_removals = 0
        self.created: list[str] = []
        self.removed: list[Path] = []
        self.branches: list[str] = []
        self.deleted_branches: list[str] = []
        self.changed: dict[str, list[str]] = {}
        self.commits: dict[str, list[str]] = {}
        self.conflicts: dict[str, list[str]] = {}

    def create_isolated_workspace(self, key: str) -> Workspace:
        if self.fail:
            raise WorkspaceCreationFailed(f"Could not create worktree {key}: disk full")
        path = self.path_for(key)
        path.mkdir(parents=True)
        branch = f"swarm/{key}"
        self.created.append(key)
        self.branches.append(branch)
        return Workspace(key=key, path=path, branch=branch)

    def remove_workspace(self, path: Path) -> None:
        if self.fail_removals:
            self.fail_removals -= 1
            raise OSError(f"Device or resource busy: {path}")
        self.removed.append(Path(path))
        shutil.rmtree(path, ignore_errors=True)

    def delete_branch(self, name: str) -> None:
        self.branches.remove(name)
        self.deleted_branches.append(name)

    def list_branches(self) -> list[str]:
        return list(self.branches)

    def changed_files(self, path: Path) -> list[str]:
        return list(self.changed.get(Path(path).name, []))

    def commits_ahead(self, path: Path) -> list[str]:
        return list(self.commits.get(Path(path).name, []))

    def conflicted_files(self, path: Path) -> list[str]:
        return list(self.conflicts.get(Path(path).name, []))


@dataclass
class Swarm:
    root: Path
    config: SwarmConfig
    inspector: FakeInspector
    sessions: SessionStore
    workspaces: FakeWorkspaceBackend
    workers: FakeWorkerBackend
    governor: ResourceGovernor
    supervisor: WorkerSupervisor
    sleeps: list[float] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)

    def event_names(self) -> list[str]:
        return [event["event"] for event in self.events]


@pytest.fixture
def inspector() -> FakeInspector:
    return FakeInspector()


@pytest.fixture
def swarm(tmp_path: Path, inspector: FakeInspector) -> Swarm:
    config = SwarmConfig.default()
    state_dir = tmp_path / ".taskswarm"
    sessions = SessionStore(state_dir, inspector)
    workspaces = FakeWorkspaceBackend(tmp_path)
    workers = FakeWorkerBackend(inspector)
    governor = ResourceGovernor(sessions, inspector, config.limits, work_dir=state_dir)
    sleeps: list[float] = []
    events: list[dict[str, Any]] = []

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    supervisor = WorkerSupervisor(
        tmp_path,
        config,
        sessions,
        governor,
        workers,
        inspector,
        workspaces=workspaces,
        sleep=_sleep,
        rng=random.Random(7),
        event_hook=events.append,
    )
    return Swarm(
        root=tmp_path.resolve(),
        config=config,
        inspector=inspector,
        sessions=sessions,
        workspaces=workspaces,
        workers=workers,
        governor=governor,
        supervisor=supervisor,
        sleeps=sleeps,
        events=events,
    )
