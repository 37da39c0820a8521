from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import psutil

from taskswarm.errors import ProcessNotFound

logger = logging.getLogger(__name__)

AGENT_ENV_MARKER = "TASKSWARM_AGENT_ID"
SESSION_ENV_MARKER = "TASKSWARM_SESSION"


@dataclass(slots=True)
class AgentProcess:
    pid: int
    agent_id: str
    session_id: str | None
    create_time: float
    ppid: int | None = None
    cwd: str | None = None

    def belongs_to(self, session_id: str | None, repo_root: Path) -> bool:
        """True for processes of this session or running inside this repository."""
        if session_id and self.session_id == session_id:
            return True
        if not self.cwd:
            return False
        try:
            Path(self.cwd).resolve().relative_to(repo_root.resolve())
        except ValueError:
            return False
        return True


def agent_roots(processes: list[AgentProcess]) -> list[AgentProcess]:
    """Collapse marked processes to one per agent, oldest first.

    Children inherit the agent marker, so only a process whose parent belongs to a
    different agent (or to nobody) stands for the agent; the oldest such root wins.
    """
    by_pid = {proc.pid: proc for proc in processes}
    roots: dict[str, AgentProcess] = {}
    for proc in processes:
        parent = by_pid.get(proc.ppid) if proc.ppid is not None else None
        if parent is not None and parent.agent_id == proc.agent_id:
            continue
        current = roots.get(proc.agent_id)
        if current is None or proc.create_time < current.create_time:
            roots[proc.agent_id] = proc
    return sorted(roots.values(), key=lambda proc: (proc.create_time, proc.pid))


class ProcessInspector(ABC):
    """Read and signal OS processes on behalf of the orchestrator."""

    @abstractmethod
    def is_alive(self, pid: int) -> bool: ...

    @abstractmethod
    def memory_mb(self, pid: int) -> float: ...

    @abstractmethod
    def terminate(self, pid: int) -> None:
        """Send a graceful stop signal. Raises ProcessNotFound when already gone."""

    @abstractmethod
    def kill(self, pid: int) -> None:
        """Force-kill. Raises ProcessNotFound when already gone."""

    @abstractmethod
    def suspend(self, pid: int) -> None: ...

    @abstractmethod
    def resume(self, pid: int) -> None: ...

    @abstractmethod
    def load_average(self) -> float: ...

    @abstractmethod
    def cpu_count(self) -> int: ...

    @abstractmethod
    def disk_usage_mb(self, path: Path) -> float: ...

    @abstractmethod
    def find_agent_processes(self) -> list[AgentProcess]: ...

    def create_time(self, pid: int) -> float | None:
        """Process start as a Unix timestamp, or None when it cannot be read."""
        return None

    def wait_gone(self, pid: int, timeout: float) -> bool:
        return not self.is_alive(pid)


class PsutilProcessInspector(ProcessInspector):
    def _process(self, pid: int) -> psutil.Process:
        try:
            return psutil.Process(pid)
        except psutil.NoSuchProcess as exc:
            raise ProcessNotFound(pid) from exc

    def is_alive(self, pid: int) -> bool:
        try:
            process = psutil.Process(pid)
            return process.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # Exists but owned by someone else.
            return True

    def memory_mb(self, pid: int) -> float:
        try:
            return psutil.Process(pid).memory_info().rss / (1024 * 1024)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return 0.0

    def create_time(self, pid: int) -> float | None:
        try:
            return psutil.Process(pid).create_time()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None

    def _signal(self, pid: int, action: str) -> None:
        process = self._process(pid)
        try:
            getattr(process, action)()
        except psutil.NoSuchProcess as exc:
            raise ProcessNotFound(pid) from exc
        except psutil.AccessDenied as exc:
            raise PermissionError(f"Not permitted to {action} process {pid}") from exc

    def terminate(self, pid: int) -> None:
        self._signal(pid, "terminate")

    def kill(self, pid: int) -> None:
        self._signal(pid, "kill")

    def suspend(self, pid: int) -> None:
        self._signal(pid, "suspend")

    def resume(self, pid: int) -> None:
        self._signal(pid, "resume")

    def wait_gone(self, pid: int, timeout: float) -> bool:
        try:
            process = psutil.Process(pid)
        except psutil.NoSuchProcess:
            return True
        gone, _alive = psutil.wait_procs([process], timeout=timeout)
        return bool(gone) or not self.is_alive(pid)

    def load_average(self) -> float:
        return float(psutil.getloadavg()[0])

    def cpu_count(self) -> int:
        return psutil.cpu_count() or 1

    def disk_usage_mb(self, path: Path) -> float:
        if not path.exists():
            return 0.0
        total = 0
        for root, _dirs, files in os.walk(path):
            for name in files:
                try:
                    total += (Path(root) / name).lstat().st_size
                except OSError:
                    continue
        return total / (1024 * 1024)

    def find_agent_processes(self) -> list[AgentProcess]:
        found: list[AgentProcess] = []
        own_pid = os.getpid()
        for proc in psutil.process_iter(["pid", "ppid", "create_time", "cwd"]):
            if proc.pid == own_pid:
                continue
            try:
                environ = proc.environ()
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
            agent_id = environ.get(AGENT_ENV_MARKER)
            if not agent_id:
                continue
            found.append(
                AgentProcess(
                    pid=proc.pid,
                    agent_id=agent_id,
                    session_id=environ.get(SESSION_ENV_MARKER),
                    create_time=float(proc.info.get("create_time") or 0.0),
                    ppid=proc.info.get("ppid"),
                    cwd=proc.info.get("cwd"),
                )
            )
        logger.debug("Found %d agent processes", len(found))
        return found
