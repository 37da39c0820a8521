from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from taskswarm.errors import SessionCorrupt, SwarmError
from taskswarm.models import FINISHED_STATUSES, AgentRecord, Session, utcnow_iso
from taskswarm.process import ProcessInspector, PsutilProcessInspector

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"starting", "running"})


class SessionStore:
    """Durable registry of the agents spawned for one orchestration run.

    Every mutation is a locked read-modify-write of ``session.json`` that lands via
    write-temp, fsync, rename. The lock is a process-local ``RLock`` plus an
    ``O_EXCL`` lock file so separate CLI invocations serialize too.
    """

    def __init__(
        self,
        state_dir: Path,
        inspector: ProcessInspector | None = None,
        *,
        lock_timeout_seconds: float = 5.0,
    ) -> None:
        self.state_dir = state_dir
        self.session_file = state_dir / "session.json"
        self.archives_dir = state_dir / "archives"
        self.lock_file = state_dir / ".session.lock"
        self.inspector = inspector or PsutilProcessInspector()
        self.lock_timeout_seconds = lock_timeout_seconds
        self.last_corruption: SessionCorrupt | None = None
        self._lock = threading.RLock()
        self._depth = 0

    # locking

    def _lock_owner_alive(self) -> bool:
        try:
            raw = self.lock_file.read_text(encoding="utf-8").strip()
            age = time.time() - self.lock_file.stat().st_mtime
        except OSError:
            return True
        if not raw.isdigit():
            # Owner may not have written its pid yet.
            return age < self.lock_timeout_seconds
        owner = int(raw)
        if owner == os.getpid():
            return True
        return self.inspector.is_alive(owner)

    def _acquire_file_lock(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                return
            except FileExistsError as exc:
                if not self._lock_owner_alive():
                    logger.warning("Breaking stale session lock %s", self.lock_file)
                    try:
                        self.lock_file.unlink()
                    except FileNotFoundError:
                        pass
                    continue
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise SwarmError("Timed out waiting for session lock.") from exc
                time.sleep(0.02)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._lock:
            if self._depth == 0:
                self._acquire_file_lock()
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
                if self._depth == 0:
                    try:
                        self.lock_file.unlink()
                    except FileNotFoundError:
                        pass

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the session lock across several operations."""
        with self._locked():
            yield

    # persistence

    def _load(self) -> Session | None:
        if not self.session_file.exists():
            return None
        try:
            payload = json.loads(self.session_file.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise SessionCorrupt(self.session_file, str(exc)) from exc
        if not isinstance(payload, dict):
            raise SessionCorrupt(self.session_file, "document is not a JSON object")
        try:
            return Session.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise SessionCorrupt(self.session_file, f"invalid field {exc}") from exc

    def _write(self, session: Session) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        serialized = json.dumps(session.to_dict(), ensure_ascii=False, indent=2)
        fd, temp_name = tempfile.mkstemp(prefix=".session-", suffix=".tmp", dir=self.state_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, self.session_file)
        except BaseException:
            try:
                os.unlink(temp_name)
            except FileNotFoundError:
                pass
            raise

    def _quarantine(self, error: SessionCorrupt) -> None:
        stamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
        target = self.session_file.with_name(f"{self.session_file.name}.corrupt-{stamp}")
        logger.error("%s; moving it to %s and starting a fresh session", error, target)
        self.last_corruption = error
        try:
            os.replace(self.session_file, target)
        except FileNotFoundError:
            pass

    def _read(self) -> Session | None:
        try:
            return self._load()
        except SessionCorrupt as exc:
            self._quarantine(exc)
            session = self._new_session(None)
            self._write(session)
            return session

    @staticmethod
    def _new_session(task_description: str | None) -> Session:
        stamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
        return Session(
            session_id=f"{stamp}_{uuid.uuid4().hex[:6]}",
            start_time=utcnow_iso(),
            task_description=task_description,
        )

    # session lifecycle

    def create(self, task_description: str | None = None) -> Session:
        with self._locked():
            existing = self._read()
            if existing is not None:
                self._archive_locked(existing)
            session = self._new_session(task_description)
            self._write(session)
        logger.info("Created session %s", session.session_id)
        return session

    def current(self) -> Session | None:
        with self._locked():
            return self._read()

    def ensure(self, task_description: str | None = None) -> Session:
        with self._locked():
            session = self._read()
            if session is not None and session.status == "active":
                if task_description and not session.task_description:
                    session.task_description = task_description
                    self._write(session)
                return session
            return self.create(task_description)

    def close(self) -> Session | None:
        with self._locked():
            session = self._read()
            if session is None:
                return None
            session.status = "completed"
            session.end_time = utcnow_iso()
            self._write(session)
            return session

    def archive(self) -> Path | None:
        with self._locked():
            session = self._read()
            if session is None:
                return None
            return self._archive_locked(session)

    def _archive_locked(self, session: Session) -> Path:
        self.archives_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
        target = self.archives_dir / f"session_{session.session_id}_{stamp}.json"
        serialized = json.dumps(session.to_dict(), ensure_ascii=False, indent=2)
        target.write_text(serialized, encoding="utf-8")
        logger.info("Archived session %s to %s", session.session_id, target)
        return target

    def cleanup(self) -> Path | None:
        """Archive the session, then delete the active document."""
        with self._locked():
            session = self._read()
            if session is None:
                return None
            archived = self._archive_locked(session)
            self.session_file.unlink(missing_ok=True)
            return archived

    # agents

    def add_agent(self, record: AgentRecord) -> AgentRecord:
        with self._locked():
            session = self._read() or self._new_session(None)
            if record.pid is not None and record.status in ACTIVE_STATUSES:
                for other in session.agents:
                    if other.pid == record.pid and other.status in ACTIVE_STATUSES:
                        logger.warning(
                            "PID %d reused; marking stale agent %s stopped", record.pid, other.id
                        )
                        other.status = "stopped"
                        other.completion_time = other.completion_time or utcnow_iso()
            session.agents.append(record)
            self._write(session)
            return record

    def _finish_fields(self, agent: AgentRecord, status: str, completion_time: str | None) -> None:
        agent.status = status  # type: ignore[assignment]
        if completion_time:
            agent.completion_time = completion_time
        elif status in FINISHED_STATUSES and not agent.completion_time:
            agent.completion_time = utcnow_iso()

    def update_status(self, pid: int, status: str, completion_time: str | None = None) -> bool:
        with self._locked():
            session = self._read()
            if session is None:
                return False
            matches = [agent for agent in session.agents if agent.pid == pid]
            if not matches:
                return False
            active = [agent for agent in matches if agent.status in ACTIVE_STATUSES]
            target = (active or matches)[-1]
            self._finish_fields(target, status, completion_time)
            self._write(session)
            return True

    def update_agent(
        self,
        agent_id: str,
        *,
        expected_status: str | None = None,
        **fields: Any,
    ) -> AgentRecord | None:
        """Update one record; with ``expected_status`` only if it still holds."""
        with self._locked():
            session = self._read()
            if session is None:
                return None
            for agent in session.agents:
                if agent.id != agent_id:
                    continue
                if expected_status is not None and agent.status != expected_status:
                    return None
                status = fields.pop("status", None)
                completion_time = fields.pop("completion_time", None)
                for key, value in fields.items():
                    if not hasattr(agent, key):
                        raise AttributeError(f"AgentRecord has no field {key!r}")
                    setattr(agent, key, value)
                if status is not None:
                    self._finish_fields(agent, status, completion_time)
                elif completion_time is not None:
                    agent.completion_time = completion_time
                self._write(session)
                return agent
            return None

    def remove_agent(self, pid: int) -> bool:
        with self._locked():
            session = self._read()
            if session is None:
                return False
            kept = [agent for agent in session.agents if agent.pid != pid]
            if len(kept) == len(session.agents):
                return False
            session.agents = kept
            self._write(session)
            return True

    def claim_workspace_release(self, agent_id: str) -> bool:
        """Atomically mark a workspace released. True only for the first caller."""
        with self._locked():
            session = self._read()
            if session is None:
                return False
            for agent in session.agents:
                if agent.id == agent_id:
                    if agent.workspace_released or not agent.workspace_path:
                        return False
                    agent.workspace_released = True
                    self._write(session)
                    return True
            return False

    def all_agents(self) -> list[AgentRecord]:
        session = self.current()
        return list(session.agents) if session else []

    def active_agents(self) -> list[AgentRecord]:
        return [agent for agent in self.all_agents() if agent.status in ACTIVE_STATUSES]

    def find_by_pid(self, pid: int) -> AgentRecord | None:
        matches = [agent for agent in self.all_agents() if agent.pid == pid]
        active = [agent for agent in matches if agent.status in ACTIVE_STATUSES]
        candidates = active or matches
        return candidates[-1] if candidates else None

    def find_by_id(self, agent_id: str) -> AgentRecord | None:
        for agent in self.all_agents():
            if agent.id == agent_id:
                return agent
        return None

    def reconcile(self) -> list[AgentRecord]:
        """Mark running agents whose process is gone as stopped.

        Safe to call repeatedly; returns only the records changed by this call.
        """
        changed: list[AgentRecord] = []
        with self._locked():
            session = self._read()
            if session is None:
                return changed
            now = utcnow_iso()
            for agent in session.agents:
                if agent.status not in ACTIVE_STATUSES or agent.pid is None:
                    continue
                if self.inspector.is_alive(agent.pid):
                    continue
                agent.status = "stopped"
                agent.completion_time = agent.completion_time or now
                changed.append(agent)
            if changed:
                self._write(session)
        for agent in changed:
            logger.info("Agent %s (pid %s) is no longer running", agent.id, agent.pid)
        return changed

    def status(self) -> dict[str, Any]:
        session = self.current()
        if session is None:
            return {"active": False, "session_id": None, "agents": 0}
        counts: dict[str, int] = {}
        for agent in session.agents:
            counts[agent.status] = counts.get(agent.status, 0) + 1
        return {
            "active": session.status == "active",
            "session_id": session.session_id,
            "status": session.status,
            "start_time": session.start_time,
            "end_time": session.end_time,
            "task_description": session.task_description,
            "agents": len(session.agents),
            "active_agents": sum(counts.get(status, 0) for status in ACTIVE_STATUSES),
            "by_status": counts,
        }
