from __future__ import annotations

import logging
from pathlib import Path

from taskswarm.config import LimitsConfig
from taskswarm.errors import ProcessNotFound
from taskswarm.models import AdmissionDecision, ResourceSnapshot, parse_timestamp
from taskswarm.process import ProcessInspector, agent_roots
from taskswarm.state import ACTIVE_STATUSES, SessionStore

logger = logging.getLogger(__name__)


class ResourceGovernor:
    """Admission control for new workers.

    ``can_spawn`` and ``snapshot`` only read; repeated calls against the same
    external state give the same answer.
    """

    def __init__(
        self,
        sessions: SessionStore,
        inspector: ProcessInspector,
        limits: LimitsConfig,
        *,
        work_dir: Path,
        repo_root: Path | None = None,
    ) -> None:
        self.sessions = sessions
        self.inspector = inspector
        self.limits = limits
        self.work_dir = work_dir
        self.repo_root = repo_root or work_dir.parent

    def snapshot(self, *, pending: int = 0) -> ResourceSnapshot:
        agents = self.sessions.active_agents()
        memory = sum(self.inspector.memory_mb(agent.pid) for agent in agents if agent.pid)
        return ResourceSnapshot(
            active_agents=len(agents) + max(0, pending),
            max_agents=self.limits.max_concurrent_agents,
            memory_usage_mb=memory,
            disk_usage_mb=self.inspector.disk_usage_mb(self.work_dir),
            system_load=self.inspector.load_average(),
        )

    def load_limit(self) -> float:
        return self.inspector.cpu_count() * self.limits.load_factor

    def can_spawn(self, *, pending: int = 0) -> AdmissionDecision:
        """Check every limit and report all violations.

        ``pending`` counts admitted spawns that have not registered yet.
        """
        snap = self.snapshot(pending=pending)
        reasons: list[str] = []
        if snap.active_agents >= snap.max_agents:
            reasons.append(
                "concurrency: Maximum concurrent agents reached "
                f"({snap.active_agents}/{snap.max_agents})"
            )
        if snap.memory_usage_mb >= self.limits.max_memory_mb:
            reasons.append(
                f"memory: Agent memory usage {snap.memory_usage_mb:.0f}MB "
                f"reached limit {self.limits.max_memory_mb}MB"
            )
        if snap.disk_usage_mb >= self.limits.max_disk_mb:
            reasons.append(
                f"disk: Working area uses {snap.disk_usage_mb:.0f}MB "
                f"of {self.limits.max_disk_mb}MB"
            )
        load_limit = self.load_limit()
        if snap.system_load >= load_limit:
            reasons.append(
                f"load: System load {snap.system_load:.2f} reached limit {load_limit:.2f}"
            )
        return AdmissionDecision(allowed=not reasons, reasons=reasons)

    def _started(self, pid: int, start_time: str) -> float:
        created = self.inspector.create_time(pid)
        if created is not None:
            return created
        parsed = parse_timestamp(start_time)
        return parsed.timestamp() if parsed else 0.0

    def _candidates(self) -> list[tuple[float, int]]:
        """One pid per live agent, oldest first.

        Session agents count once each. Untracked agent processes count only when
        they belong to this session or repository, collapsed to one root per agent.
        """
        session = self.sessions.current()
        agents = session.agents if session else []
        session_id = session.session_id if session else None
        known_ids = {agent.id for agent in agents}
        candidates: dict[int, float] = {}
        for agent in agents:
            if agent.pid is None or agent.status not in ACTIVE_STATUSES:
                continue
            candidates[agent.pid] = self._started(agent.pid, agent.start_time)
        for proc in agent_roots(self.inspector.find_agent_processes()):
            if proc.agent_id in known_ids or proc.pid in candidates:
                continue
            if not proc.belongs_to(session_id, self.repo_root):
                continue
            candidates[proc.pid] = proc.create_time
        return sorted((started, pid) for pid, started in candidates.items())

    def enforce_limits(self) -> list[int]:
        """Terminate the oldest agents beyond the concurrency cap. Returns their pids."""
        candidates = self._candidates()
        excess = len(candidates) - self.limits.max_concurrent_agents
        if excess <= 0:
            return []
        logger.warning(
            "Agent limit exceeded: %d/%d", len(candidates), self.limits.max_concurrent_agents
        )
        terminated: list[int] = []
        for _started, pid in candidates[:excess]:
            try:
                self.inspector.terminate(pid)
            except ProcessNotFound:
                logger.info("Agent process %d already exited", pid)
            except PermissionError as exc:
                logger.error("Failed to terminate agent process %d: %s", pid, exc)
                continue
            self.sessions.update_status(pid, "stopped")
            terminated.append(pid)
            logger.info("Terminated agent process %d", pid)
        return terminated
